"""Session tokens: the sign-in bridge hands the API a signed user id.

The identity provider itself is outside this service. All the ledger needs is
a stable ``user_id`` (and the email Stripe pre-fills at checkout), so tokens
carry exactly those, scoped to this API by type and issuer.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "hongbao_session"
SESSION_TOKEN_ISSUER = "hongbao-cover-api"


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    email: Optional[str]
    expires_at: datetime


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iss": SESSION_TOKEN_ISSUER,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + lifetime).timestamp()),
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": claims["exp"],
    }


def decode_session_token(token: str) -> SessionClaims:
    """Validate signature, expiry, issuer and token type; ``ValueError`` on any failure."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=SESSION_TOKEN_ISSUER,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        raise ValueError("Session token missing subject.")

    return SessionClaims(
        user_id=user_id,
        email=str(payload.get("email") or "").strip() or None,
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
    )
