"""Payment webhook processing and subscription reconciliation."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.subscription import Subscription
from services.credits import earn, ensure_user, get_transaction_by_reference
from services.errors import ReconciliationMismatch
from services.idempotency import (
    get_processed_event,
    purchase_reference,
    record_processed_event,
    renewal_reference,
    webhook_reference,
)
from services.plans import allotment, get_credit_pack, get_plan, normalize_interval, resolve_transition
from services.providers.payments import BasePaymentProvider, normalize_subscription_status
from services.providers.types import ProviderTerminalFailure, ProviderTransientError
from services.referrals import award_referral_reward


logger = logging.getLogger(__name__)

LIVE_STATUSES = ("active", "trialing", "past_due")
EVENT_ALIASES = {
    "checkout.completed": "subscription.created",
    "payment.failed": "subscription.past_due",
}
# A period starting within this margin before the initial grant is the same period.
INITIAL_GRANT_TOLERANCE = timedelta(days=1)
SHORTEST_PERIOD_DAYS = {"month": 28, "year": 365}


@dataclass(frozen=True)
class NormalizedPaymentEvent:
    event_id: str
    type: str
    user_id: str
    plan: Optional[str] = None
    interval: Optional[str] = None
    credits: Optional[int] = None
    pack_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None


@dataclass
class AppliedResult:
    event_id: str
    event_type: str
    status: str
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    credits_granted: int = 0
    timing: Optional[str] = None
    message: Optional[str] = None
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], *, duplicate: bool = False) -> "AppliedResult":
        known = {name: payload.get(name) for name in cls.__dataclass_fields__ if name in payload}
        known["duplicate"] = duplicate
        return cls(**known)


@dataclass
class ReconciliationResult:
    user_id: str
    checked: int = 0
    updated: int = 0
    mismatches: List[ReconciliationMismatch] = field(default_factory=list)
    kept_subscription_id: Optional[str] = None
    canceled_subscription_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def _get_subscription(db: AsyncSession, subscription_id: str) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.id == subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _user_subscriptions(db: AsyncSession, user_id: str) -> List[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def _require_subscription_id(event: NormalizedPaymentEvent) -> str:
    if not event.subscription_id:
        raise ValueError(f"{event.type} event {event.event_id} has no subscription_id")
    return event.subscription_id


async def _upsert_subscription(
    db: AsyncSession,
    event: NormalizedPaymentEvent,
    default_status: str,
) -> Tuple[Subscription, bool]:
    subscription_id = _require_subscription_id(event)
    subscription = await _get_subscription(db, subscription_id)
    created = subscription is None
    if subscription is None:
        subscription = Subscription(
            id=subscription_id,
            user_id=event.user_id,
            plan=get_plan(event.plan).plan_id,
            interval=normalize_interval(event.interval),
            status=normalize_subscription_status(event.status) if event.status else default_status,
            cancel_at_period_end=bool(event.cancel_at_period_end),
        )
        db.add(subscription)
    if event.period_start is not None:
        subscription.period_start = event.period_start
    if event.period_end is not None:
        subscription.period_end = event.period_end
    return subscription, created


async def _grant(
    db: AsyncSession,
    event: NormalizedPaymentEvent,
    amount: int,
    reference_id: str,
    description: str,
    source: str = "subscription",
) -> int:
    if amount <= 0:
        return 0
    result = await earn(
        db,
        event.user_id,
        amount,
        source=source,
        reference_id=reference_id,
        metadata={"event_id": event.event_id, "event_type": event.type, "subscription_id": event.subscription_id},
        description=description,
    )
    return amount if result.applied else 0


def _period_reference(subscription: Subscription, fallback: str) -> str:
    if subscription.period_start is not None:
        return renewal_reference(subscription.id, _as_utc(subscription.period_start))
    return fallback


def _initial_reference(subscription_id: str) -> str:
    return f"subscription:{subscription_id}:initial"


async def _initial_grant_covers_period(db: AsyncSession, subscription: Subscription) -> bool:
    """True when the grant made without a known period already paid for this one.

    Without ``period_start`` the initial grant is assumed to cover payments
    arriving before the shortest possible next period could begin.
    """
    initial = await get_transaction_by_reference(db, _initial_reference(subscription.id))
    if initial is None:
        return False
    granted_at = _as_utc(initial.created_at)
    if subscription.period_start is not None:
        return granted_at >= _as_utc(subscription.period_start) - INITIAL_GRANT_TOLERANCE
    shortest = timedelta(days=SHORTEST_PERIOD_DAYS.get(subscription.interval, 28))
    return datetime.now(timezone.utc) - granted_at < shortest - INITIAL_GRANT_TOLERANCE


async def _handle_created(
    db: AsyncSession,
    event: NormalizedPaymentEvent,
    payments: Optional[BasePaymentProvider],
) -> AppliedResult:
    subscription, _ = await _upsert_subscription(db, event, default_status="active")
    if event.status:
        subscription.status = normalize_subscription_status(event.status)
    await db.commit()

    result = AppliedResult(
        event_id=event.event_id,
        event_type=event.type,
        status="applied",
        user_id=event.user_id,
        subscription_id=subscription.id,
        timing="immediate",
    )
    if subscription.status == "trialing":
        result.message = "trialing: credits granted when the trial ends"
    else:
        decision = resolve_transition("free", None, subscription.plan, subscription.interval, "change")
        result.credits_granted = await _grant(
            db,
            event,
            decision.granted,
            _period_reference(subscription, _initial_reference(subscription.id)),
            f"{subscription.plan} subscription started",
        )

    if payments is not None:
        kept, canceled, errors = await enforce_single_subscription(db, event.user_id, payments)
        if canceled:
            result.message = f"canceled duplicate subscriptions: {', '.join(canceled)}"
        if errors:
            logger.error("Duplicate subscription cleanup incomplete for user %s: %s", event.user_id, errors)
    return result


async def _handle_updated(db: AsyncSession, event: NormalizedPaymentEvent) -> AppliedResult:
    subscription = await _get_subscription(db, _require_subscription_id(event))
    if subscription is None:
        subscription, _ = await _upsert_subscription(db, event, default_status="active")
        await db.commit()
        return AppliedResult(
            event_id=event.event_id,
            event_type=event.type,
            status="applied",
            user_id=event.user_id,
            subscription_id=subscription.id,
            message="subscription record created from update; no credits granted",
        )

    previous_status = subscription.status
    previous_cancel = bool(subscription.cancel_at_period_end)
    target_plan = get_plan(event.plan or subscription.plan).plan_id
    target_interval = normalize_interval(event.interval) if event.interval else subscription.interval
    new_status = normalize_subscription_status(event.status) if event.status else subscription.status

    result = AppliedResult(
        event_id=event.event_id,
        event_type=event.type,
        status="applied",
        user_id=event.user_id,
        subscription_id=subscription.id,
    )

    if event.period_start is not None:
        subscription.period_start = event.period_start
    if event.period_end is not None:
        subscription.period_end = event.period_end
    if event.cancel_at_period_end is not None:
        subscription.cancel_at_period_end = bool(event.cancel_at_period_end)

    plan_changed = target_plan != subscription.plan or target_interval != subscription.interval
    reactivated = new_status == "active" and (
        previous_status in ("canceled", "expired") or (previous_cancel and event.cancel_at_period_end is False)
    )

    if plan_changed:
        decision = resolve_transition(subscription.plan, subscription.interval, target_plan, target_interval, "change")
        result.timing = decision.timing
        if decision.timing == "scheduled":
            subscription.scheduled_plan = target_plan
            subscription.scheduled_interval = target_interval
            result.message = f"change to {target_plan}/{target_interval} scheduled for period end"
        else:
            subscription.plan = target_plan
            subscription.interval = target_interval
            subscription.scheduled_plan = None
            subscription.scheduled_interval = None
            subscription.status = new_status
            await db.commit()
            result.credits_granted = await _grant(
                db,
                event,
                decision.granted,
                webhook_reference(event.event_id),
                f"Plan change to {target_plan}",
            )
    elif reactivated:
        decision = resolve_transition(subscription.plan, subscription.interval, target_plan, target_interval, "reactivation")
        result.timing = decision.timing
        subscription.cancel_at_period_end = False
        result.message = "reactivated"

    subscription.status = new_status
    await db.commit()
    return result


async def _handle_paid(db: AsyncSession, event: NormalizedPaymentEvent) -> AppliedResult:
    subscription, _ = await _upsert_subscription(db, event, default_status="active")
    if subscription.scheduled_plan:
        logger.info(
            "Applying scheduled plan change for %s: %s/%s -> %s/%s",
            subscription.id,
            subscription.plan,
            subscription.interval,
            subscription.scheduled_plan,
            subscription.scheduled_interval,
        )
        subscription.plan = subscription.scheduled_plan
        subscription.interval = subscription.scheduled_interval
        subscription.scheduled_plan = None
        subscription.scheduled_interval = None
    subscription.status = "active"
    await db.commit()

    decision = resolve_transition(
        subscription.plan, subscription.interval, subscription.plan, subscription.interval, "renewal"
    )
    result = AppliedResult(
        event_id=event.event_id,
        event_type=event.type,
        status="applied",
        user_id=event.user_id,
        subscription_id=subscription.id,
        timing=decision.timing,
    )
    if await _initial_grant_covers_period(db, subscription):
        result.message = "first period already granted at subscription start"
        return result

    result.credits_granted = await _grant(
        db,
        event,
        decision.granted,
        _period_reference(subscription, webhook_reference(event.event_id)),
        f"{subscription.plan} subscription renewal",
    )
    if not result.credits_granted:
        result.message = "renewal for this period already granted"
    return result


async def _handle_status_change(db: AsyncSession, event: NormalizedPaymentEvent, status: str) -> AppliedResult:
    subscription, _ = await _upsert_subscription(db, event, default_status=status)
    if status == "canceled" and event.cancel_at_period_end:
        subscription.cancel_at_period_end = True
        message = "cancellation scheduled for period end"
    else:
        subscription.status = status
        message = None
    if status in ("canceled", "expired"):
        decision = resolve_transition(subscription.plan, subscription.interval, "free", None, "cancellation")
        subscription.scheduled_plan = None
        subscription.scheduled_interval = None
        timing = decision.timing
    else:
        timing = None
    await db.commit()
    return AppliedResult(
        event_id=event.event_id,
        event_type=event.type,
        status="applied",
        user_id=event.user_id,
        subscription_id=subscription.id,
        timing=timing,
        message=message,
    )


async def _handle_trial_ended(db: AsyncSession, event: NormalizedPaymentEvent) -> AppliedResult:
    subscription, _ = await _upsert_subscription(db, event, default_status="active")
    subscription.status = "active"
    await db.commit()
    granted = await _grant(
        db,
        event,
        allotment(subscription.plan, subscription.interval),
        _period_reference(subscription, _initial_reference(subscription.id)),
        f"{subscription.plan} trial converted",
    )
    return AppliedResult(
        event_id=event.event_id,
        event_type=event.type,
        status="applied",
        user_id=event.user_id,
        subscription_id=subscription.id,
        credits_granted=granted,
        timing="immediate",
    )


async def _handle_pack_purchase(db: AsyncSession, event: NormalizedPaymentEvent) -> AppliedResult:
    credits = get_credit_pack(event.pack_id).credits if event.pack_id else int(event.credits or 0)
    if credits <= 0:
        raise ValueError(f"credit_pack.purchased event {event.event_id} carries no credits")
    granted = await _grant(
        db,
        event,
        credits,
        purchase_reference(event.event_id),
        f"Credit pack {event.pack_id or credits}",
        source="purchase",
    )
    return AppliedResult(
        event_id=event.event_id,
        event_type=event.type,
        status="applied",
        user_id=event.user_id,
        credits_granted=granted,
        timing="immediate",
    )


async def _dispatch(
    db: AsyncSession,
    event: NormalizedPaymentEvent,
    payments: Optional[BasePaymentProvider],
) -> AppliedResult:
    event_type = EVENT_ALIASES.get(event.type, event.type)
    if event_type == "subscription.created":
        return await _handle_created(db, event, payments)
    if event_type == "subscription.updated":
        return await _handle_updated(db, event)
    if event_type == "subscription.paid":
        return await _handle_paid(db, event)
    if event_type == "subscription.canceled":
        return await _handle_status_change(db, event, "canceled")
    if event_type == "subscription.expired":
        return await _handle_status_change(db, event, "expired")
    if event_type == "subscription.past_due":
        return await _handle_status_change(db, event, "past_due")
    if event_type == "subscription.trial_ended":
        return await _handle_trial_ended(db, event)
    if event_type == "credit_pack.purchased":
        return await _handle_pack_purchase(db, event)
    return AppliedResult(
        event_id=event.event_id,
        event_type=event.type,
        status="ignored",
        user_id=event.user_id,
        message=f"unhandled event type {event.type}",
    )


async def _reward_referrer(db: AsyncSession, event: NormalizedPaymentEvent) -> None:
    """A paid event may complete the user's referral; its credits are already committed."""
    is_pack = EVENT_ALIASES.get(event.type, event.type) == "credit_pack.purchased"
    try:
        await award_referral_reward(
            db,
            event.user_id,
            trigger="credit_pack" if is_pack else "subscription",
            metadata={"event_id": event.event_id},
        )
    except Exception:
        logger.exception("Referral reward for user %s failed after event %s", event.user_id, event.event_id)
        await db.rollback()


async def process_webhook_event(
    db: AsyncSession,
    event: NormalizedPaymentEvent,
    payments: Optional[BasePaymentProvider] = None,
) -> AppliedResult:
    """Apply a normalized payment event exactly once.

    Redelivery of a processed ``event_id`` returns the stored result with
    ``duplicate=True``. Handler failures are recorded as ``error`` and returned
    rather than raised so the provider does not retry indefinitely.
    """
    existing = await get_processed_event(db, event.event_id)
    if existing is not None:
        logger.info("Webhook event %s already processed (%s)", event.event_id, existing.status)
        return AppliedResult.from_dict(existing.result_json or {}, duplicate=True)

    await ensure_user(db, event.user_id)
    try:
        result = await _dispatch(db, event, payments)
    except Exception as exc:
        logger.exception("Webhook event %s (%s) failed for user %s", event.event_id, event.type, event.user_id)
        await db.rollback()
        result = AppliedResult(
            event_id=event.event_id,
            event_type=event.type,
            status="error",
            user_id=event.user_id,
            subscription_id=event.subscription_id,
            message=str(exc)[:500],
        )
    if result.status == "applied" and result.credits_granted > 0:
        await _reward_referrer(db, event)

    row, created = await record_processed_event(
        db,
        event_id=event.event_id,
        event_type=event.type,
        user_id=event.user_id,
        status=result.status,
        result=result.to_dict(),
    )
    if not created:
        return AppliedResult.from_dict(row.result_json or {}, duplicate=True)
    return result


async def enforce_single_subscription(
    db: AsyncSession,
    user_id: str,
    payments: BasePaymentProvider,
) -> Tuple[Optional[str], List[str], List[str]]:
    """Keep the most recently created live subscription and cancel the rest.

    Returns ``(kept_id, canceled_ids, errors)``. A record whose provider-side
    cancel fails stays live locally so the next pass retries it.
    """
    live = [row for row in await _user_subscriptions(db, user_id) if row.status in LIVE_STATUSES]
    if len(live) <= 1:
        return (live[0].id if live else None), [], []

    live.sort(key=lambda row: _as_utc(row.created_at) or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
    kept, duplicates = live[0], live[1:]
    canceled: List[str] = []
    errors: List[str] = []
    for row in duplicates:
        try:
            outcome = await payments.cancel_subscription(row.id)
        except (ProviderTransientError, ProviderTerminalFailure) as exc:
            logger.error("Failed to cancel duplicate subscription %s at provider: %s", row.id, exc)
            errors.append(f"{row.id}: {exc}")
            continue
        row.status = "canceled"
        row.cancel_at_period_end = False
        row.scheduled_plan = None
        row.scheduled_interval = None
        canceled.append(row.id)
        logger.warning(
            "Canceled duplicate subscription %s for user %s (kept %s, provider already_canceled=%s)",
            row.id,
            user_id,
            kept.id,
            outcome.already_canceled,
        )
    await db.commit()
    return kept.id, canceled, errors


async def reconcile_user_subscriptions(
    db: AsyncSession,
    user_id: str,
    payments: BasePaymentProvider,
) -> ReconciliationResult:
    """Sync local subscription status from the provider, then collapse duplicates."""
    result = ReconciliationResult(user_id=user_id)
    for row in await _user_subscriptions(db, user_id):
        result.checked += 1
        try:
            remote = await payments.get_subscription(row.id)
        except (ProviderTransientError, ProviderTerminalFailure) as exc:
            logger.error("Could not fetch subscription %s from provider: %s", row.id, exc)
            result.errors.append(f"{row.id}: {exc}")
            continue

        if remote.status != row.status:
            mismatch = ReconciliationMismatch(
                subscription_id=row.id,
                local_status=row.status,
                provider_status=remote.status,
            )
            logger.warning(
                "Subscription %s status mismatch: local=%s provider=%s; using provider",
                row.id,
                row.status,
                remote.status,
            )
            result.mismatches.append(mismatch)
            row.status = remote.status
            result.updated += 1
        if remote.created_at is not None:
            row.created_at = remote.created_at
        if remote.period_end is not None:
            row.period_end = remote.period_end
    await db.commit()

    kept, canceled, errors = await enforce_single_subscription(db, user_id, payments)
    result.kept_subscription_id = kept
    result.canceled_subscription_ids = canceled
    result.errors.extend(errors)
    return result


async def force_sync_user_subscriptions(
    db: AsyncSession,
    user_id: str,
    payments: BasePaymentProvider,
) -> ReconciliationResult:
    result = await reconcile_user_subscriptions(db, user_id, payments)
    logger.info(
        "Force-synced subscriptions for user %s: checked=%s updated=%s canceled=%s errors=%s",
        user_id,
        result.checked,
        result.updated,
        len(result.canceled_subscription_ids),
        len(result.errors),
    )
    return result
