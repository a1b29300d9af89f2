"""Directory tables: the people, providers and services a booking refers to.

Accounts are owned by the identity service; this table mirrors the fields the
booking core needs (contact details for notifications). Providers link an
account to the services it offers.
"""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Table, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from servicehub.models.base import Base, TimestampMixin


def _new_id() -> str:
    return uuid.uuid4().hex


provider_services = Table(
    "provider_services",
    Base.metadata,
    Column("provider_id", ForeignKey("service_providers.id"), primary_key=True),
    Column("service_id", ForeignKey("services.id"), primary_key=True),
)


class UserAccount(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(254), unique=True, nullable=False, index=True)
    phone: Mapped[str | None] = mapped_column(String(20))
    role: Mapped[str] = mapped_column(String(20), default="customer", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<UserAccount {self.email}>"


class ServiceProvider(TimestampMixin, Base):
    __tablename__ = "service_providers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), unique=True, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    completed_bookings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    user: Mapped["UserAccount"] = relationship(lazy="raise")
    services: Mapped[list["Service"]] = relationship(secondary=provider_services, lazy="selectin")

    def __repr__(self) -> str:
        return f"<ServiceProvider {self.id} user={self.user_id}>"


class Service(TimestampMixin, Base):
    __tablename__ = "services"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str | None] = mapped_column(String(50))
    description: Mapped[str | None] = mapped_column(Text)
    base_price: Mapped[int] = mapped_column(Integer, nullable=False)  # whole rupees
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Service {self.name}>"
