"""FastAPI dependencies for injection into route handlers."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from servicehub.core.auth import caller_from_token
from servicehub.core.config import settings
from servicehub.core.database import async_session_factory
from servicehub.domain.caller import Caller
from servicehub.repositories.bookings import BookingRepository, SqlBookingRepository
from servicehub.repositories.directory import Directory, SqlDirectory
from servicehub.services.bookings import BookingService
from servicehub.services.gateway import RazorpayGateway
from servicehub.services.notifications import CeleryNotificationSink, NotificationSink
from servicehub.services.reconciliation import ReconciliationService

bearer_scheme = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


async def get_caller(credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme)) -> Caller:
    """Resolve the caller from the JWT bearer token."""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        return caller_from_token(credentials.credentials)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from None


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


def get_booking_repository() -> BookingRepository:
    return SqlBookingRepository(async_session_factory)


def get_directory() -> Directory:
    return SqlDirectory(async_session_factory)


def get_gateway(request: Request) -> RazorpayGateway:
    """The gateway adapter built once at startup (see ``main.lifespan``)."""
    return request.app.state.gateway


def get_notifier() -> NotificationSink:
    return CeleryNotificationSink()


def get_booking_service(
    repository: BookingRepository = Depends(get_booking_repository),
    directory: Directory = Depends(get_directory),
    notifier: NotificationSink = Depends(get_notifier),
) -> BookingService:
    return BookingService(repository, directory, notifier, tax_rate=settings.tax_rate)


def get_reconciliation_service(
    repository: BookingRepository = Depends(get_booking_repository),
    gateway: RazorpayGateway = Depends(get_gateway),
    notifier: NotificationSink = Depends(get_notifier),
    directory: Directory = Depends(get_directory),
) -> ReconciliationService:
    return ReconciliationService(
        repository, gateway, notifier, directory, webhook_secret=settings.gateway_webhook_secret
    )
