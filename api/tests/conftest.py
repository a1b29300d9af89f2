"""Shared test fixtures.

Everything runs against in-memory collaborators; the API client swaps them in
through FastAPI dependency overrides, so no database, broker or gateway is
needed.
"""

import pytest
from fakes import (
    NOW,
    WEBHOOK_SECRET,
    FakeGateway,
    InMemoryBookingRepository,
    InMemoryDirectory,
    RecordingNotifier,
)
from httpx import ASGITransport, AsyncClient

from servicehub.core import dependencies
from servicehub.main import app
from servicehub.services.bookings import BookingService
from servicehub.services.reconciliation import ReconciliationService


@pytest.fixture
def repository():
    return InMemoryBookingRepository()


@pytest.fixture
def directory():
    return InMemoryDirectory()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def booking_service(repository, directory, notifier):
    return BookingService(repository, directory, notifier, tax_rate=0.18, clock=lambda: NOW)


@pytest.fixture
def reconciliation(repository, gateway, notifier, directory):
    return ReconciliationService(
        repository, gateway, notifier, directory, webhook_secret=WEBHOOK_SECRET, clock=lambda: NOW
    )


@pytest.fixture
async def client(repository, directory, gateway, notifier, booking_service, reconciliation):
    app.dependency_overrides[dependencies.get_booking_repository] = lambda: repository
    app.dependency_overrides[dependencies.get_directory] = lambda: directory
    app.dependency_overrides[dependencies.get_gateway] = lambda: gateway
    app.dependency_overrides[dependencies.get_notifier] = lambda: notifier
    app.dependency_overrides[dependencies.get_booking_service] = lambda: booking_service
    app.dependency_overrides[dependencies.get_reconciliation_service] = lambda: reconciliation
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
