"""Authentication dependencies for API account scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.errors import Unauthorized
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    account_id: str
    email: Optional[str] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the authenticated account from a Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise Unauthorized("Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise Unauthorized(str(exc)) from exc

    return AuthContext(
        account_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )
