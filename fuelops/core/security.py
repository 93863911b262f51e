from datetime import datetime, timedelta, timezone
from typing import Optional, Any
import uuid

from jose import JWTError, jwt

from fuelops.config import settings
from fuelops.core.permissions import ActorContext, ActorRole


def create_access_token(
    subject: str | uuid.UUID,
    role: str,
    expires_delta: Optional[timedelta] = None,
    additional_claims: Optional[dict[str, Any]] = None
) -> str:
    """
    Create a JWT access token.

    Tokens are normally issued by the identity service; this helper exists for
    service-to-service calls and tests.

    Args:
        subject: The subject of the token (user ID)
        role: Dashboard role (admin, omc, dealer, station_manager, attendant)
        expires_delta: Optional custom expiration time
        additional_claims: Optional scope claims (omc_id, dealer_id, station_id)

    Returns:
        Encoded JWT token string
    """
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=30))

    to_encode = {
        "sub": str(subject),
        "role": role,
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "jti": str(uuid.uuid4()),
        "type": "access"
    }

    if additional_claims:
        to_encode.update({k: str(v) if isinstance(v, uuid.UUID) else v for k, v in additional_claims.items()})

    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate a JWT token.

    Returns:
        Decoded token payload or None if invalid
    """
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None


def _optional_uuid(value: Any) -> Optional[uuid.UUID]:
    if not value:
        return None
    return uuid.UUID(str(value))


def actor_from_token(token: str) -> Optional[ActorContext]:
    """
    Verify an access token and build the caller's ActorContext.

    Returns None when the token is invalid, expired, not an access token,
    names an unknown role, or carries malformed scope identifiers.
    """
    payload = decode_token(token)
    if payload is None or payload.get("type") != "access":
        return None

    subject = payload.get("sub")
    role = payload.get("role")
    if not subject or role not in {r.value for r in ActorRole}:
        return None

    try:
        return ActorContext(
            user_id=str(subject),
            role=role,
            omc_id=_optional_uuid(payload.get("omc_id")),
            dealer_id=_optional_uuid(payload.get("dealer_id")),
            station_id=_optional_uuid(payload.get("station_id")),
        )
    except ValueError:
        return None
