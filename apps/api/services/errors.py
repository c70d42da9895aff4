"""Service-level errors surfaced to API callers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException


class InsufficientCreditsError(HTTPException):
    """Spend or freeze denied because available credits are too low."""

    def __init__(self, required: int, available: int) -> None:
        self.required = int(required)
        self.available = int(available)
        super().__init__(
            status_code=402,
            detail=(
                f"Insufficient credits. Required: {self.required}, available: {self.available}. "
                "Earn more credits or upgrade your plan to continue."
            ),
        )


class GenerationInProgressError(HTTPException):
    """Another generation request for the same user and kind holds the request lock."""

    def __init__(self, kind: str) -> None:
        super().__init__(
            status_code=409,
            detail=f"A {kind} generation request is already being submitted. Wait for it to finish and retry.",
        )


@dataclass(frozen=True)
class ReconciliationMismatch:
    """Local subscription status corrected to match the payment provider."""

    subscription_id: str
    local_status: str
    provider_status: str
    note: Optional[str] = None
