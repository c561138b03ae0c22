"""JWT creation and validation, and the realm-keyed credential digest stored on User."""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt
from passlib.hash import htdigest

from filehub.config import AuthSettings


def hash_credential(username: str, password: str, realm: str) -> str:
    """HA1 digest md5(username:realm:password) for storage; the password itself is never kept."""
    return htdigest.hash(password, user=username, realm=realm)


def verify_credential(username: str, password: str, realm: str, ha1: str) -> bool:
    """Check a plain password against a stored HA1 digest."""
    if not ha1:
        return False
    try:
        return htdigest.verify(password, ha1, user=username, realm=realm)
    except ValueError:
        # Malformed stored digest
        return False


def _encode(subject: str, token_type: str, expire: datetime, settings: AuthSettings) -> str:
    to_encode: dict[str, Any] = {"sub": subject, "exp": expire, "type": token_type}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(
    subject: str, settings: AuthSettings, expires_delta: Optional[timedelta] = None
) -> str:
    """Create a short-lived access JWT. Subject is the username."""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    return _encode(subject, "access", expire, settings)


def create_refresh_token(subject: str, settings: AuthSettings) -> str:
    """Create a refresh JWT for obtaining new access tokens."""
    expire = datetime.now(timezone.utc) + timedelta(days=settings.refresh_token_expire_days)
    return _encode(subject, "refresh", expire, settings)


def decode_token(token: str, settings: AuthSettings) -> Optional[dict[str, Any]]:
    """Decode and validate a JWT; return payload or None."""
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def get_subject_from_access(token: str, settings: AuthSettings) -> Optional[str]:
    """Return subject (username) if token is a valid access token."""
    payload = decode_token(token, settings)
    if not payload or payload.get("type") != "access":
        return None
    return payload.get("sub")


def get_subject_from_refresh(token: str, settings: AuthSettings) -> Optional[str]:
    """Return subject (username) if token is a valid refresh token."""
    payload = decode_token(token, settings)
    if not payload or payload.get("type") != "refresh":
        return None
    return payload.get("sub")
