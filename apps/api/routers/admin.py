"""Operator endpoints: credit adjustments, subscription sync, recovery runs."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import require_admin_token
from routers.deps import get_providers
from services.credits import adjust_user_credits, ensure_user
from services.providers import ProviderBundle
from services.recovery import list_cron_executions, trigger_recovery_now
from services.subscriptions import force_sync_user_subscriptions

router = APIRouter(dependencies=[Depends(require_admin_token)])
logger = logging.getLogger(__name__)


class CreditAdjustmentRequest(BaseModel):
    new_balance: int = Field(ge=0)
    reason: str = Field(min_length=3, max_length=500)
    request_id: Optional[str] = Field(default=None, max_length=120)


@router.post("/users/{user_id}/credits")
async def adjust_credits(
    user_id: str,
    request: CreditAdjustmentRequest,
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, user_id)
    try:
        result = await adjust_user_credits(
            db,
            user_id,
            request.new_balance,
            request.reason,
            request_id=request.request_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {
        "user_id": user_id,
        "applied": result.applied,
        "balance_before": result.balance_before,
        "balance_after": result.balance_after,
        "delta": result.delta,
        "transaction_id": result.transaction.id,
        "reference_id": result.transaction.reference_id,
    }


@router.post("/users/{user_id}/subscriptions/sync")
async def sync_subscriptions(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    providers: ProviderBundle = Depends(get_providers),
):
    result = await force_sync_user_subscriptions(db, user_id, providers.payments)
    return result.to_dict()


@router.post("/recovery/run")
async def run_recovery(providers: ProviderBundle = Depends(get_providers)):
    result = await trigger_recovery_now(providers)
    return result.to_dict()


@router.get("/recovery/executions")
async def recovery_executions(
    limit: int = Query(default=20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    return await list_cron_executions(db, limit=limit)
