"""Identity session tokens shared with the sign-in service."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "caption_session"


@dataclass(frozen=True)
class SessionClaims:
    identity_id: str
    email: Optional[str]
    expires_at: int


def issue_session_token(identity_id: str, email: Optional[str] = None, ttl_hours: Optional[int] = None) -> str:
    """Sign a session token; the sign-in service and tests mint tokens this way."""
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(hours=max(int(ttl_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    claims = {
        "sub": identity_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + lifetime).timestamp()),
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_session_token(token: str) -> SessionClaims:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise ValueError("Session expired, sign in again.") from exc
    except JWTError as exc:
        raise ValueError("Invalid session token.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    identity_id = str(payload.get("sub") or "").strip()
    if not identity_id:
        raise ValueError("Session token has no identity.")

    return SessionClaims(
        identity_id=identity_id,
        email=(str(payload.get("email") or "").strip() or None),
        expires_at=int(payload.get("exp") or 0),
    )
