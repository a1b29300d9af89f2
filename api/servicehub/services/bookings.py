"""Booking lifecycle for customers, providers and admins.

Permission rules live here; legality of a status change lives in the state
machine. Notifications go out only after the write has committed.
"""

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from servicehub.core.errors import Forbidden, InvalidState, NotFound, ValidationFailed
from servicehub.domain.booking import Address, Booking, BookingStatus, CancelledBy, Pricing, StatusChange
from servicehub.domain.caller import Caller, Role
from servicehub.repositories.bookings import BookingRepository, apply_change, load_booking
from servicehub.repositories.directory import Directory
from servicehub.services import booking_state
from servicehub.services.access import ensure_can_view, is_assigned_provider, is_customer, provider_id_for
from servicehub.services.notifications import NotificationEvent, NotificationSink, notify
from servicehub.services.pricing import DEFAULT_TAX_RATE, compute_totals

logger = logging.getLogger(__name__)

MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 1440
MAX_PAGE_SIZE = 50
BOOKING_CREATED = "Booking created"


class BookingService:
    def __init__(
        self,
        repository: BookingRepository,
        directory: Directory,
        notifier: NotificationSink,
        *,
        tax_rate: float = DEFAULT_TAX_RATE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._directory = directory
        self._notifier = notifier
        self._tax_rate = tax_rate
        self._clock = clock or (lambda: datetime.now(UTC))

    async def _provider_user(self, booking: Booking) -> str | None:
        provider = await self._directory.get_provider(booking.provider_id)
        return provider.user_id if provider else None

    async def _notify_both(self, event: NotificationEvent, booking: Booking, **extra: Any) -> None:
        notify(self._notifier, booking.customer_id, event, booking, **extra)
        provider_user = await self._provider_user(booking)
        if provider_user:
            notify(self._notifier, provider_user, event, booking, **extra)

    async def create_booking(
        self,
        caller: Caller,
        provider_id: str,
        service_id: str,
        scheduled_date: datetime,
        address: Address,
        contact_phone: str,
        special_instructions: str | None = None,
    ) -> Booking:
        if caller.role != Role.CUSTOMER:
            raise Forbidden("Only customers can create bookings")

        provider = await self._directory.get_provider(provider_id)
        if provider is None:
            raise NotFound("Service provider not found")
        if not provider.is_available:
            raise InvalidState("Service provider is not available")

        service = await self._directory.get_service(service_id)
        if service is None:
            raise NotFound("Service not found")
        if not service.is_active:
            raise InvalidState("Service is not available")
        if not provider.offers(service_id):
            raise InvalidState("Provider does not offer this service")

        now = self._clock()
        if scheduled_date.tzinfo is None:
            scheduled_date = scheduled_date.replace(tzinfo=UTC)
        if scheduled_date <= now:
            raise ValidationFailed("Scheduled date must be in the future")

        duration = service.duration_minutes
        if not MIN_DURATION_MINUTES <= duration <= MAX_DURATION_MINUTES:
            raise ValidationFailed(
                f"Duration must be between {MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES} minutes"
            )

        totals = compute_totals(service.base_price, tax_rate=self._tax_rate)
        booking = Booking(
            booking_number=booking_state.generate_booking_number(now),
            customer_id=caller.identity,
            provider_id=provider.id,
            service_id=service.id,
            scheduled_date=scheduled_date,
            estimated_duration=duration,
            address=address,
            contact_phone=contact_phone,
            special_instructions=special_instructions,
            pricing=Pricing(
                base_amount=service.base_price,
                tax_amount=totals.tax_amount,
                total_amount=totals.total_amount,
            ),
            status_history=(
                StatusChange(
                    status=BookingStatus.PENDING,
                    changed_by=caller.identity,
                    changed_at=now,
                    reason=BOOKING_CREATED,
                ),
            ),
        )
        booking = await self._repository.add(booking)
        await self._notify_both(NotificationEvent.BOOKING_CREATED, booking)
        return booking

    async def get_booking(self, caller: Caller, booking_id: int) -> Booking:
        booking = await load_booking(self._repository, booking_id)
        await ensure_can_view(self._directory, caller, booking)
        return booking

    async def list_bookings(
        self,
        caller: Caller,
        status: BookingStatus | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Booking], int]:
        """Bookings visible to the caller, latest scheduled first."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        page = max(1, page)
        filters: dict[str, Any] = {}
        if caller.role == Role.PROVIDER:
            provider_id = await provider_id_for(self._directory, caller)
            if provider_id is None:
                return [], 0
            filters["provider_id"] = provider_id
        elif not caller.is_admin:
            filters["customer_id"] = caller.identity
        return await self._repository.find(**filters, status=status, offset=(page - 1) * limit, limit=limit)

    async def update_status(
        self,
        caller: Caller,
        booking_id: int,
        status: BookingStatus,
        reason: str | None = None,
        comments: str | None = None,
    ) -> Booking:
        status = BookingStatus(status)
        booking = await load_booking(self._repository, booking_id)
        if not caller.is_admin and not await is_assigned_provider(self._directory, caller, booking):
            if not is_customer(caller, booking):
                raise Forbidden("Access denied")
            if status != BookingStatus.CANCELLED:
                raise Forbidden("Customers can only cancel bookings")

        def plan(current: Booking) -> booking_state.BookingChange:
            return booking_state.transition(current, status, caller.identity, reason, comments, now=self._clock())

        updated, _ = await apply_change(self._repository, booking_id, plan)
        logger.info("Booking %s: %s -> %s by %s", updated.booking_number, booking.status, status, caller.identity)

        if status == BookingStatus.COMPLETED:
            await self._directory.record_completed_booking(updated.provider_id)
        notify(self._notifier, updated.customer_id, NotificationEvent.BOOKING_STATUS_CHANGED, updated, reason=reason)
        return updated

    async def cancel_booking(self, caller: Caller, booking_id: int, reason: str | None = None) -> Booking:
        booking = await load_booking(self._repository, booking_id)
        await ensure_can_view(self._directory, caller, booking)
        cancelled_by = CancelledBy(caller.role.value)

        def plan(current: Booking) -> booking_state.BookingChange:
            return booking_state.cancel(current, caller.identity, cancelled_by, reason, now=self._clock())

        updated, _ = await apply_change(self._repository, booking_id, plan)
        logger.info(
            "Booking %s cancelled by %s, refund due %s", updated.booking_number, cancelled_by, updated.refund_amount
        )
        await self._notify_both(NotificationEvent.BOOKING_CANCELLED, updated, reason=reason)
        return updated

    async def add_work_summary(self, caller: Caller, booking_id: int, fields: Mapping[str, Any]) -> Booking:
        booking = await load_booking(self._repository, booking_id)
        if not caller.is_admin and not await is_assigned_provider(self._directory, caller, booking):
            raise Forbidden("Only the assigned provider can add a work summary")

        updated, _ = await apply_change(
            self._repository, booking_id, lambda current: booking_state.add_work_summary(current, fields)
        )
        return updated
