"""Payment provider webhook router."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import require_webhook_secret
from routers.deps import get_providers
from services.providers import ProviderBundle
from services.subscriptions import NormalizedPaymentEvent, process_webhook_event

router = APIRouter()
logger = logging.getLogger(__name__)


class PaymentWebhookPayload(BaseModel):
    event_id: str = Field(min_length=1, max_length=200)
    type: str = Field(min_length=1, max_length=80)
    user_id: str = Field(min_length=1, max_length=200)
    plan: Optional[str] = None
    interval: Optional[str] = None
    credits: Optional[int] = Field(default=None, ge=1)
    pack_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None


@router.post("/payments", dependencies=[Depends(require_webhook_secret)])
async def payment_webhook(
    payload: PaymentWebhookPayload,
    db: AsyncSession = Depends(get_db),
    providers: ProviderBundle = Depends(get_providers),
):
    """Acknowledge every validated delivery; failures are recorded, not retried."""
    event = NormalizedPaymentEvent(**payload.model_dump())
    result = await process_webhook_event(db, event, providers.payments)
    if result.status == "error":
        logger.error("Payment webhook %s recorded as error: %s", event.event_id, result.message)
    return {"received": True, **result.to_dict()}
