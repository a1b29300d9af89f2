"""Bearer token handling.

Token issuance belongs to the identity service; this API only decodes the
access token to obtain the caller's identity and role. ``create_access_token``
exists for scripts and tests.
"""

from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from servicehub.core.config import settings
from servicehub.domain.caller import Caller, Role


def create_access_token(subject: str, role: Role | str, extra: dict | None = None) -> str:
    expire = datetime.now(UTC) + timedelta(minutes=settings.access_token_expire_minutes)
    payload = {"sub": subject, "role": str(role), "exp": expire, "type": "access"}
    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Raises JWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


def caller_from_token(token: str) -> Caller:
    """Build the Caller for an access token.

    Raises JWTError for anything that is not a well-formed access token.
    """
    payload = decode_token(token)
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    try:
        return Caller(identity=str(payload["sub"]), role=Role(payload.get("role", Role.CUSTOMER)))
    except (KeyError, ValueError) as exc:
        raise JWTError("Invalid token claims") from exc
