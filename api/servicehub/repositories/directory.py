"""Lookups for the customers, providers and services a booking refers to."""

from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from servicehub.models.directory import Service, ServiceProvider, UserAccount


@dataclass(frozen=True)
class ProviderProfile:
    id: str
    user_id: str
    is_available: bool
    service_ids: frozenset[str] = frozenset()

    def offers(self, service_id: str) -> bool:
        return service_id in self.service_ids


@dataclass(frozen=True)
class ServiceOffer:
    id: str
    name: str
    base_price: int
    duration_minutes: int
    is_active: bool = True


@dataclass(frozen=True)
class Contact:
    user_id: str
    name: str
    email: str
    phone: str | None = None


class Directory(Protocol):
    async def get_provider(self, provider_id: str) -> ProviderProfile | None: ...

    async def provider_for_user(self, user_id: str) -> ProviderProfile | None: ...

    async def get_service(self, service_id: str) -> ServiceOffer | None: ...

    async def get_contact(self, user_id: str) -> Contact | None: ...

    async def record_completed_booking(self, provider_id: str) -> None: ...


def _profile(provider: ServiceProvider) -> ProviderProfile:
    return ProviderProfile(
        id=provider.id,
        user_id=provider.user_id,
        is_available=provider.is_available,
        service_ids=frozenset(s.id for s in provider.services),
    )


class SqlDirectory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_provider(self, provider_id: str) -> ProviderProfile | None:
        async with self._session_factory() as db:
            provider = await db.get(ServiceProvider, provider_id)
            return _profile(provider) if provider else None

    async def provider_for_user(self, user_id: str) -> ProviderProfile | None:
        async with self._session_factory() as db:
            result = await db.execute(select(ServiceProvider).where(ServiceProvider.user_id == user_id))
            provider = result.scalar_one_or_none()
            return _profile(provider) if provider else None

    async def get_service(self, service_id: str) -> ServiceOffer | None:
        async with self._session_factory() as db:
            service = await db.get(Service, service_id)
            if service is None:
                return None
            return ServiceOffer(
                id=service.id,
                name=service.name,
                base_price=service.base_price,
                duration_minutes=service.duration_minutes,
                is_active=service.is_active,
            )

    async def get_contact(self, user_id: str) -> Contact | None:
        async with self._session_factory() as db:
            user = await db.get(UserAccount, user_id)
            if user is None or not user.is_active:
                return None
            return Contact(user_id=user.id, name=user.name, email=user.email, phone=user.phone)

    async def record_completed_booking(self, provider_id: str) -> None:
        async with self._session_factory() as db, db.begin():
            await db.execute(
                update(ServiceProvider)
                .where(ServiceProvider.id == provider_id)
                .values(completed_bookings=ServiceProvider.completed_bookings + 1)
            )
