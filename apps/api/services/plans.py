"""Plan catalog and the subscription transition resolver."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class Plan:
    plan_id: str
    tier: int
    monthly_credits: int


@dataclass(frozen=True)
class CreditPack:
    pack_id: str
    credits: int


PLANS: Dict[str, Plan] = {
    "free": Plan(plan_id="free", tier=0, monthly_credits=0),
    "pro": Plan(plan_id="pro", tier=1, monthly_credits=500),
    "proplus": Plan(plan_id="proplus", tier=2, monthly_credits=900),
}

CREDIT_PACKS: Dict[str, CreditPack] = {
    "pack-1000": CreditPack(pack_id="pack-1000", credits=1000),
    "pack-2000": CreditPack(pack_id="pack-2000", credits=2000),
    "pack-5000": CreditPack(pack_id="pack-5000", credits=5000),
    "pack-10000": CreditPack(pack_id="pack-10000", credits=10000),
}

INTERVAL_RANK = {"month": 0, "year": 1}
EVENT_KINDS = ("change", "renewal", "cancellation", "reactivation")


@dataclass(frozen=True)
class TransitionDecision:
    granted: int
    timing: str  # "immediate" | "scheduled"


def get_plan(plan_id: Optional[str]) -> Plan:
    key = (plan_id or "free").strip().lower()
    if key not in PLANS:
        raise ValueError(f"Unknown plan: {plan_id}")
    return PLANS[key]


def normalize_interval(interval: Optional[str]) -> Optional[str]:
    if interval is None:
        return None
    value = str(interval).strip().lower()
    if value in ("month", "monthly", "every-month"):
        return "month"
    if value in ("year", "yearly", "annual", "every-year"):
        return "year"
    raise ValueError(f"Unknown billing interval: {interval}")


def allotment(plan_id: Optional[str], interval: Optional[str]) -> int:
    """Credits granted per billing period; yearly periods get twelve months at once."""
    plan = get_plan(plan_id)
    if plan.monthly_credits <= 0:
        return 0
    return plan.monthly_credits * 12 if normalize_interval(interval) == "year" else plan.monthly_credits


def get_credit_pack(pack_id: str) -> CreditPack:
    if pack_id not in CREDIT_PACKS:
        raise ValueError(f"Unknown credit pack: {pack_id}")
    return CREDIT_PACKS[pack_id]


def resolve_transition(
    from_plan: Optional[str],
    from_interval: Optional[str],
    to_plan: Optional[str],
    to_interval: Optional[str],
    event_kind: str,
) -> TransitionDecision:
    """Decide how many credits a subscription event grants and when.

    Downgrades keep the current entitlement until the period ends; the grant
    for the new plan is applied by the renewal that starts the next period.
    """
    if event_kind not in EVENT_KINDS:
        raise ValueError(f"Unknown transition event: {event_kind}")

    source = get_plan(from_plan)
    target = get_plan(to_plan)
    source_interval = normalize_interval(from_interval)
    target_interval = normalize_interval(to_interval)

    if event_kind == "cancellation" or target.plan_id == "free":
        return TransitionDecision(granted=0, timing="immediate")
    if event_kind == "reactivation":
        return TransitionDecision(granted=0, timing="immediate")
    if event_kind == "renewal":
        return TransitionDecision(granted=allotment(target.plan_id, target_interval), timing="immediate")

    if source.plan_id == "free":
        return TransitionDecision(granted=allotment(target.plan_id, target_interval), timing="immediate")
    if source.plan_id == target.plan_id and source_interval == target_interval:
        return TransitionDecision(granted=0, timing="immediate")

    source_rank = INTERVAL_RANK.get(source_interval or "month", 0)
    target_rank = INTERVAL_RANK.get(target_interval or "month", 0)
    if target.tier > source.tier or (target.tier == source.tier and target_rank > source_rank):
        return TransitionDecision(granted=allotment(target.plan_id, target_interval), timing="immediate")
    return TransitionDecision(granted=allotment(target.plan_id, target_interval), timing="scheduled")
