"""Booking routes: create, list, view, status changes, cancellation and work summaries."""

from fastapi import APIRouter, Body, Depends, Query, status

from servicehub.core.dependencies import get_booking_service, get_caller
from servicehub.domain.booking import Address, BookingStatus
from servicehub.domain.caller import Caller
from servicehub.schemas import (
    ApiResponse,
    BookingCreate,
    BookingList,
    BookingOut,
    CancelRequest,
    Pagination,
    StatusUpdate,
    WorkSummaryIn,
)
from servicehub.services.bookings import MAX_PAGE_SIZE, BookingService

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=ApiResponse[BookingOut], status_code=status.HTTP_201_CREATED)
async def create_booking(
    body: BookingCreate,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    booking = await service.create_booking(
        caller,
        provider_id=body.provider_id,
        service_id=body.service_id,
        scheduled_date=body.scheduled_date,
        address=Address(**body.address.model_dump()),
        contact_phone=body.contact_phone,
        special_instructions=body.special_instructions,
    )
    return ApiResponse(message="Booking created successfully", data=BookingOut.model_validate(booking))


@router.get("", response_model=ApiResponse[BookingList])
async def list_bookings(
    status_filter: BookingStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    limit = min(limit, MAX_PAGE_SIZE)
    bookings, total = await service.list_bookings(caller, status_filter, page, limit)
    data = BookingList(
        bookings=[BookingOut.model_validate(b) for b in bookings],
        pagination=Pagination.build(page, limit, total),
    )
    return ApiResponse(message="Bookings retrieved successfully", data=data)


@router.get("/{booking_id}", response_model=ApiResponse[BookingOut])
async def get_booking(
    booking_id: int,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    booking = await service.get_booking(caller, booking_id)
    return ApiResponse(message="Booking retrieved successfully", data=BookingOut.model_validate(booking))


@router.put("/{booking_id}/status", response_model=ApiResponse[BookingOut])
async def update_booking_status(
    booking_id: int,
    body: StatusUpdate,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    booking = await service.update_status(caller, booking_id, body.status, body.reason, body.comments)
    return ApiResponse(message="Booking status updated successfully", data=BookingOut.model_validate(booking))


@router.delete("/{booking_id}", response_model=ApiResponse[BookingOut])
async def cancel_booking(
    booking_id: int,
    body: CancelRequest | None = Body(None),
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    reason = body.reason if body else None
    booking = await service.cancel_booking(caller, booking_id, reason)
    return ApiResponse(message="Booking cancelled successfully", data=BookingOut.model_validate(booking))


@router.put("/{booking_id}/work-summary", response_model=ApiResponse[BookingOut])
async def add_work_summary(
    booking_id: int,
    body: WorkSummaryIn,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    booking = await service.add_work_summary(caller, booking_id, body.model_dump(exclude_unset=True))
    return ApiResponse(message="Work summary updated successfully", data=BookingOut.model_validate(booking))
