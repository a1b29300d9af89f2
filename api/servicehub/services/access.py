"""Who may see or act on a booking."""

from servicehub.core.errors import Forbidden
from servicehub.domain.booking import Booking
from servicehub.domain.caller import Caller, Role
from servicehub.repositories.directory import Directory


async def provider_id_for(directory: Directory, caller: Caller) -> str | None:
    """The provider profile id of a provider caller, or None."""
    if caller.role != Role.PROVIDER:
        return None
    profile = await directory.provider_for_user(caller.identity)
    return profile.id if profile else None


def is_customer(caller: Caller, booking: Booking) -> bool:
    return caller.identity == booking.customer_id


async def is_assigned_provider(directory: Directory, caller: Caller, booking: Booking) -> bool:
    provider_id = await provider_id_for(directory, caller)
    return provider_id is not None and provider_id == booking.provider_id


async def ensure_can_view(directory: Directory, caller: Caller, booking: Booking) -> None:
    if caller.is_admin or is_customer(caller, booking):
        return
    if await is_assigned_provider(directory, caller, booking):
        return
    raise Forbidden("Access denied")


def ensure_customer(caller: Caller, booking: Booking) -> None:
    if not is_customer(caller, booking):
        raise Forbidden("Access denied")
