"""JWT verification. Tokens are issued by the external auth service."""

from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from pantrychef.config import get_settings

settings = get_settings()


def create_access_token(user_id: int, email: str | None = None) -> str:
    """Create a JWT access token (used by tooling and tests)."""
    expire = datetime.now(UTC) + timedelta(minutes=settings.jwt_expiration_minutes)
    to_encode = {
        "sub": str(user_id),
        "email": email,
        "exp": expire,
    }
    encoded_jwt = jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return encoded_jwt


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        return payload
    except JWTError:
        return None
