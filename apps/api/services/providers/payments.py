"""Payment provider client."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from services.providers.types import (
    CancelResult,
    ProviderSubscription,
    ProviderTerminalFailure,
    ProviderTransientError,
    SubscriptionStatus,
)


def normalize_subscription_status(status: Optional[str]) -> SubscriptionStatus:
    """Map provider spellings (trialling, cancelled, ended, ...) to local statuses."""
    value = str(status or "").strip().lower()
    if not value:
        return "active"
    if "trial" in value:
        return "trialing"
    if "cancel" in value:
        return "canceled"
    if "past" in value or "unpaid" in value:
        return "past_due"
    if "expired" in value or "ended" in value:
        return "expired"
    return "active"


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class BasePaymentProvider(ABC):
    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        raise NotImplementedError

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str) -> CancelResult:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class HttpPaymentProvider(BasePaymentProvider):
    """Subscription API client keyed by provider subscription ids."""

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: float) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"x-api-key": api_key},
            timeout=timeout_seconds,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise ProviderTransientError(f"Payment provider unreachable: {exc}") from exc
        if response.status_code >= 500 or response.status_code == 429:
            raise ProviderTransientError(f"Payment provider returned HTTP {response.status_code}")
        return response

    async def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        response = await self._request("GET", "/v1/subscriptions", params={"subscription_id": subscription_id})
        if response.status_code >= 400:
            raise ProviderTerminalFailure(f"Subscription {subscription_id} lookup failed ({response.status_code})")
        payload: Dict[str, Any] = response.json()
        product = payload.get("product") if isinstance(payload.get("product"), dict) else {}
        return ProviderSubscription(
            subscription_id=str(payload.get("id") or subscription_id),
            status=normalize_subscription_status(payload.get("status")),
            created_at=_parse_datetime(payload.get("created_at")),
            plan=product.get("id") or payload.get("plan"),
            period_end=_parse_datetime(payload.get("current_period_end_date")),
        )

    async def cancel_subscription(self, subscription_id: str) -> CancelResult:
        response = await self._request("POST", f"/v1/subscriptions/{subscription_id}/cancel")
        if response.status_code < 400:
            return CancelResult(subscription_id=subscription_id, canceled=True)
        body = response.text.lower()
        if "already" in body and "cancel" in body:
            return CancelResult(subscription_id=subscription_id, canceled=False, already_canceled=True)
        raise ProviderTerminalFailure(f"Cancel of subscription {subscription_id} failed ({response.status_code})")

    async def aclose(self) -> None:
        await self._client.aclose()
