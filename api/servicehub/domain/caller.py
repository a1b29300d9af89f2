"""The authenticated caller, as supplied by the auth layer."""

import enum
from dataclasses import dataclass


class Role(enum.StrEnum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"


@dataclass(frozen=True)
class Caller:
    identity: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


# Actor recorded in status history for changes driven by the payment gateway.
SYSTEM_ACTOR = "system"
