"""Generation request and status router."""

from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.deps import get_providers
from routers.rate_limit import enforce_quota, generation_quota
from services.credits import ensure_user
from services.generation import (
    get_generation_task,
    request_generation,
    serialize_generation_task,
    settle_generation_task,
)
from services.generation_queue import enqueue_generation_poll_job
from services.providers import ProviderBundle
from services.providers.types import ProviderTransientError

router = APIRouter()
logger = logging.getLogger(__name__)


class GenerationRequest(BaseModel):
    user_id: Optional[str] = None
    kind: Literal["image", "video"] = "image"
    prompt: str = Field(min_length=1, max_length=4000)
    model: Optional[str] = Field(default=None, max_length=120)
    options: Dict[str, Any] = Field(default_factory=dict)


@router.post("")
async def create_generation(
    request: GenerationRequest,
    http_request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    providers: ProviderBundle = Depends(get_providers),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await enforce_quota(
        http_request,
        f"generation_{request.kind}",
        scoped_user_id,
        limit=generation_quota(request.kind),
        window_seconds=3600,
    )
    await ensure_user(db, scoped_user_id, email=auth.email)

    task = await request_generation(
        db,
        scoped_user_id,
        kind=request.kind,
        prompt=request.prompt,
        model=request.model,
        options=request.options,
        providers=providers,
    )

    try:
        enqueue_generation_poll_job(task.id)
    except Exception as exc:
        # The provider already has the job; the status endpoint and recovery still settle it.
        logger.warning("Could not enqueue poll job for generation task %s: %s", task.id, exc)

    return serialize_generation_task(task)


@router.get("/{task_id}")
async def get_generation(
    task_id: str,
    user_id: Optional[str] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    providers: ProviderBundle = Depends(get_providers),
):
    """Return task status, settling it first if the provider has finished."""
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    task = await get_generation_task(db, task_id, user_id=scoped_user_id)
    if not task:
        raise HTTPException(status_code=404, detail="Generation task not found")

    if task.status == "processing":
        try:
            await settle_generation_task(db, task.id, providers=providers, settled_by="status_poll")
        except ProviderTransientError as exc:
            logger.info("Status poll for task %s deferred: %s", task.id, exc)
        task = await get_generation_task(db, task_id, user_id=scoped_user_id)

    return serialize_generation_task(task)
