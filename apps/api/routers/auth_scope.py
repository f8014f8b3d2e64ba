"""Authentication dependencies resolving the current user id."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(status_code=401, detail={"error": "UNAUTHORIZED", "message": message})


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthorized("Sign in required.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise _unauthorized(str(exc)) from exc

    return AuthContext(user_id=claims.user_id, email=claims.email)
