from typing import Any, Dict

from jose import JWTError, jwt
from pydantic import ValidationError

from agrichat.core.config import settings
from agrichat.core.errors import AuthFailed
from agrichat.schemas.auth import TokenPayload


def decode_access_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise AuthFailed() from exc


def verify_token(token: str) -> str:
    """Return the user id carried by a bearer token issued by the identity service."""
    if not token:
        raise AuthFailed("Missing token")
    payload = decode_access_token(token)
    try:
        return TokenPayload(**payload).sub
    except ValidationError as exc:
        raise AuthFailed("Token has no subject") from exc
