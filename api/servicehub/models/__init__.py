"""All models imported here for metadata discovery (create_all / migrations)."""

from servicehub.models.base import Base
from servicehub.models.booking import BookingRecord, StatusChangeRecord
from servicehub.models.directory import Service, ServiceProvider, UserAccount, provider_services

__all__ = [
    "Base",
    "BookingRecord",
    "StatusChangeRecord",
    "UserAccount",
    "ServiceProvider",
    "Service",
    "provider_services",
]
