"""Authentication dependencies for API user scoping."""

import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    expires_at: Optional[datetime] = None


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(user_id=claims.user_id, email=claims.email, expires_at=claims.expires_at)


def _require_shared_secret(
    supplied: Optional[str],
    expected: str,
    *,
    disabled_detail: str,
    invalid_detail: str,
) -> None:
    if not expected:
        raise HTTPException(status_code=503, detail=disabled_detail)
    if not supplied or not hmac.compare_digest(supplied, expected):
        raise HTTPException(status_code=403, detail=invalid_detail)


async def require_admin_token(x_admin_token: Optional[str] = Header(default=None)) -> None:
    """Guard operator endpoints with the shared ``X-Admin-Token`` secret."""
    _require_shared_secret(
        x_admin_token,
        (settings.ADMIN_API_TOKEN or "").strip(),
        disabled_detail="Admin API is disabled. Configure ADMIN_API_TOKEN to enable it.",
        invalid_detail="Invalid admin token.",
    )


async def require_webhook_secret(x_webhook_secret: Optional[str] = Header(default=None)) -> None:
    """Accept payment provider deliveries only with the shared ``X-Webhook-Secret``."""
    _require_shared_secret(
        x_webhook_secret,
        (settings.PAYMENT_WEBHOOK_SECRET or "").strip(),
        disabled_detail="Payment webhooks are disabled. Configure PAYMENT_WEBHOOK_SECRET to enable them.",
        invalid_detail="Invalid webhook secret.",
    )
