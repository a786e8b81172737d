"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.errors import AuthRequired, ScopeMismatch
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise ScopeMismatch()
    return auth_user_id


def _context_from_token(token: str) -> AuthContext:
    claims = decode_session_token(token)
    return AuthContext(user_id=claims.identity_id, email=claims.email)


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise AuthRequired("Missing Bearer session token.")

    try:
        return _context_from_token(credentials.credentials)
    except ValueError as exc:
        raise AuthRequired(str(exc)) from exc


async def get_optional_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> Optional[AuthContext]:
    """Like ``get_auth_context`` but yields ``None`` so callers can surface a sign-in prompt."""
    if not credentials or credentials.scheme.lower() != "bearer":
        return None
    try:
        return _context_from_token(credentials.credentials)
    except ValueError:
        return None
