"""External provider contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Literal, Optional


ProviderTaskState = Literal["pending", "processing", "success", "fail"]
SubscriptionStatus = Literal["active", "trialing", "past_due", "canceled", "expired"]


class ProviderTransientError(RuntimeError):
    """Ambiguous provider failure (timeout, reset, 5xx); the outcome is still unknown."""


class ProviderTerminalFailure(RuntimeError):
    """Provider rejected the request or reported a permanent failure."""


@dataclass(frozen=True)
class GenerationJobSpec:
    kind: str
    model: str
    prompt: str
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubmittedJob:
    external_task_id: str


@dataclass(frozen=True)
class ProviderTaskStatus:
    state: ProviderTaskState
    result_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in ("success", "fail")


@dataclass(frozen=True)
class StoredObject:
    key: str
    url: str


@dataclass(frozen=True)
class ProviderSubscription:
    subscription_id: str
    status: SubscriptionStatus
    created_at: Optional[datetime] = None
    plan: Optional[str] = None
    period_end: Optional[datetime] = None


@dataclass(frozen=True)
class CancelResult:
    subscription_id: str
    canceled: bool
    already_canceled: bool = False
