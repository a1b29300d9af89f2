"""Seed the database with a small service catalogue and test accounts.

Run with: python -m scripts.seed
Creates the services, three users (customer, provider, admin), a provider
profile offering every service, and prints a bearer token for each user.
"""

import asyncio

from sqlalchemy import select

from servicehub.core.auth import create_access_token
from servicehub.core.database import async_session_factory, engine
from servicehub.domain.caller import Role
from servicehub.models import Base, Service, ServiceProvider, UserAccount

# Prices in whole rupees, before GST.
SERVICES = [
    {"name": "AC Service", "category": "appliance-repair", "base_price": 599, "duration_minutes": 60},
    {"name": "Deep Home Cleaning", "category": "cleaning", "base_price": 2499, "duration_minutes": 240},
    {"name": "Tap & Mixer Repair", "category": "plumbing", "base_price": 249, "duration_minutes": 30},
    {"name": "Switchboard Installation", "category": "electrical", "base_price": 349, "duration_minutes": 45},
    {"name": "Sofa Cleaning (5 seats)", "category": "cleaning", "base_price": 999, "duration_minutes": 120},
]

USERS = [
    {"name": "Test Customer", "email": "customer@example.com", "phone": "9876543210", "role": Role.CUSTOMER},
    {"name": "Test Provider", "email": "provider@example.com", "phone": "9876501234", "role": Role.PROVIDER},
    {"name": "Test Admin", "email": "admin@servicehub.in", "phone": None, "role": Role.ADMIN},
]


async def seed():
    # Create tables (in dev; production uses migrations)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_factory() as db:
        # Check if already seeded
        result = await db.execute(select(UserAccount).where(UserAccount.email == USERS[0]["email"]))
        if result.scalar_one_or_none():
            print("Database already seeded - skipping.")
            return

        services = [Service(**data) for data in SERVICES]
        db.add_all(services)

        users = {}
        for data in USERS:
            user = UserAccount(**{**data, "role": str(data["role"])})
            db.add(user)
            users[data["role"]] = user
        await db.flush()

        provider = ServiceProvider(user_id=users[Role.PROVIDER].id, services=services)
        db.add(provider)
        await db.commit()

        print(f"Seeded: {len(services)} services, {len(users)} users")
        print(f"  provider id: {provider.id}")
        for service in services:
            print(f"  service {service.id}: {service.name} (Rs. {service.base_price})")
        print("  bearer tokens:")
        for role, user in users.items():
            print(f"    {role} ({user.email}): {create_access_token(user.id, role)}")


if __name__ == "__main__":
    asyncio.run(seed())
