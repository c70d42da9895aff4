"""Bearer session tokens accepted by the credit engine API.

Tokens are signed JWTs carrying the account id in ``sub``. Issuer and audience
are pinned, so a token minted for another service that shares the signing
secret is refused.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "credit_engine_session"


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
    """Sign a session token for ``user_id``."""
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email

    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {
        "token": token,
        "expires_at": int(expires_at.timestamp()),
    }


def decode_session_token(token: str) -> SessionClaims:
    """Verify ``token`` and return the claims the API scopes requests by.

    Raises ValueError with a client-safe message on any failure.
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={"require_exp": True, "require_sub": True},
        )
    except ExpiredSignatureError as exc:
        raise ValueError("Session token expired.") from exc
    except JWTError as exc:
        raise ValueError("Invalid session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    email = str(payload.get("email") or "").strip()
    return SessionClaims(
        user_id=subject,
        email=email or None,
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
    )
