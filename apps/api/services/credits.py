"""Credit ledger: idempotent balance mutations and read models."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy import case, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account_balance import AccountBalance
from models.credit_transaction import TRANSACTION_SOURCES, CreditTransaction
from models.user import User
from services.errors import InsufficientCreditsError
from services.idempotency import insert_once

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerResult:
    """Ledger write outcome; ``applied`` is False when the reference already existed."""

    transaction: CreditTransaction
    applied: bool


@dataclass(frozen=True)
class AdjustmentResult:
    transaction: CreditTransaction
    applied: bool
    balance_before: int
    balance_after: int
    delta: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _positive_amount(amount: int) -> int:
    value = int(amount)
    if value <= 0:
        raise ValueError("amount must be greater than 0")
    return value


async def ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user, _ = await insert_once(
        db,
        User(id=user_id, email=email or f"{user_id}@local.invalid"),
        lambda: _get_user(db, user_id),
    )
    return user


async def _get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_account_balance(db: AsyncSession, user_id: str) -> Optional[AccountBalance]:
    result = await db.execute(
        select(AccountBalance)
        .where(AccountBalance.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _ensure_account(db: AsyncSession, user_id: str) -> None:
    if await get_account_balance(db, user_id) is not None:
        return
    await insert_once(
        db,
        AccountBalance(user_id=user_id, balance=0, frozen_balance=0, total_earned=0, total_spent=0),
        lambda: get_account_balance(db, user_id),
    )


async def _read_balance(db: AsyncSession, user_id: str) -> tuple[int, int]:
    result = await db.execute(
        select(AccountBalance.balance, AccountBalance.frozen_balance).where(AccountBalance.user_id == user_id)
    )
    row = result.first()
    if row is None:
        return 0, 0
    return int(row[0] or 0), int(row[1] or 0)


async def get_transaction_by_reference(db: AsyncSession, reference_id: str) -> Optional[CreditTransaction]:
    result = await db.execute(select(CreditTransaction).where(CreditTransaction.reference_id == reference_id))
    return result.scalar_one_or_none()


async def _apply_entry(
    db: AsyncSession,
    *,
    user_id: str,
    entry_type: str,
    amount: int,
    source: str,
    reference_id: str,
    description: Optional[str],
    metadata: Optional[Dict[str, Any]],
    statement,
    required_available: Optional[int] = None,
) -> LedgerResult:
    if source not in TRANSACTION_SOURCES:
        raise ValueError(f"Unknown credit source: {source}")
    if not reference_id:
        raise ValueError("reference_id is required")

    existing = await get_transaction_by_reference(db, reference_id)
    if existing is not None:
        return LedgerResult(transaction=existing, applied=False)

    entry = CreditTransaction(
        user_id=user_id,
        type=entry_type,
        amount=amount,
        balance_after=0,
        source=source,
        reference_id=reference_id,
        description=description,
        metadata_json=metadata or None,
    )

    async def _mutate(row: CreditTransaction) -> None:
        applied = await db.execute(statement.execution_options(synchronize_session=False))
        if applied.rowcount == 0:
            balance, frozen = await _read_balance(db, user_id)
            raise InsufficientCreditsError(required=required_available or amount, available=balance - frozen)
        balance, _ = await _read_balance(db, user_id)
        row.balance_after = balance
        await db.flush()

    row, created = await insert_once(
        db,
        entry,
        lambda: get_transaction_by_reference(db, reference_id),
        _mutate,
    )
    await db.commit()
    if not created:
        logger.info("Ledger reference %s already applied; returning existing entry", reference_id)
    return LedgerResult(transaction=row, applied=created)


async def earn(
    db: AsyncSession,
    user_id: str,
    amount: int,
    source: str,
    reference_id: str,
    metadata: Optional[Dict[str, Any]] = None,
    description: Optional[str] = None,
) -> LedgerResult:
    """Credit ``amount`` to the user, creating the balance row on first earn."""
    value = _positive_amount(amount)
    await _ensure_account(db, user_id)
    statement = (
        update(AccountBalance)
        .where(AccountBalance.user_id == user_id)
        .values(
            balance=AccountBalance.balance + value,
            total_earned=AccountBalance.total_earned + value,
            updated_at=_utcnow(),
        )
    )
    return await _apply_entry(
        db,
        user_id=user_id,
        entry_type="earn",
        amount=value,
        source=source,
        reference_id=reference_id,
        description=description,
        metadata=metadata,
        statement=statement,
    )


async def spend(
    db: AsyncSession,
    user_id: str,
    amount: int,
    source: str,
    reference_id: str,
    metadata: Optional[Dict[str, Any]] = None,
    description: Optional[str] = None,
) -> LedgerResult:
    """Permanently debit ``amount``; fails when available balance is short."""
    value = _positive_amount(amount)
    statement = (
        update(AccountBalance)
        .where(
            AccountBalance.user_id == user_id,
            AccountBalance.balance - AccountBalance.frozen_balance >= value,
        )
        .values(
            balance=AccountBalance.balance - value,
            total_spent=AccountBalance.total_spent + value,
            updated_at=_utcnow(),
        )
    )
    return await _apply_entry(
        db,
        user_id=user_id,
        entry_type="spend",
        amount=value,
        source=source,
        reference_id=reference_id,
        description=description,
        metadata=metadata,
        statement=statement,
    )


async def freeze(
    db: AsyncSession,
    user_id: str,
    amount: int,
    reason: str,
    reference_id: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Reserve credits against a pending operation without spending them."""
    value = _positive_amount(amount)
    statement = (
        update(AccountBalance)
        .where(
            AccountBalance.user_id == user_id,
            AccountBalance.balance - AccountBalance.frozen_balance >= value,
        )
        .values(frozen_balance=AccountBalance.frozen_balance + value, updated_at=_utcnow())
    )
    return await _apply_entry(
        db,
        user_id=user_id,
        entry_type="freeze",
        amount=value,
        source="api_call",
        reference_id=reference_id,
        description=reason,
        metadata=metadata,
        statement=statement,
    )


async def unfreeze(
    db: AsyncSession,
    user_id: str,
    amount: int,
    reason: str,
    reference_id: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Release up to ``amount`` reserved credits; never touches balance."""
    value = _positive_amount(amount)
    await _ensure_account(db, user_id)
    statement = (
        update(AccountBalance)
        .where(AccountBalance.user_id == user_id)
        .values(
            frozen_balance=case(
                (AccountBalance.frozen_balance >= value, AccountBalance.frozen_balance - value),
                else_=0,
            ),
            updated_at=_utcnow(),
        )
    )
    return await _apply_entry(
        db,
        user_id=user_id,
        entry_type="unfreeze",
        amount=value,
        source="refund",
        reference_id=reference_id,
        description=reason,
        metadata=metadata,
        statement=statement,
    )


async def capture_reservation(
    db: AsyncSession,
    user_id: str,
    amount: int,
    *,
    release_reference: str,
    spend_reference: str,
    reason: str,
    metadata: Optional[Dict[str, Any]] = None,
    description: Optional[str] = None,
) -> LedgerResult:
    """Turn ``amount`` frozen credits into a spend in one unit of work.

    The ``unfreeze`` and ``spend`` entries are written in the same savepoint as
    a single balance update, so the released credits are never visible as
    available to a concurrent ``freeze``. A release recorded earlier under
    ``release_reference`` is not repeated; only the spend is applied.
    """
    value = _positive_amount(amount)
    existing = await get_transaction_by_reference(db, spend_reference)
    if existing is not None:
        return LedgerResult(transaction=existing, applied=False)

    already_released = await get_transaction_by_reference(db, release_reference) is not None
    release = 0 if already_released else value
    frozen_after = case(
        (AccountBalance.frozen_balance >= release, AccountBalance.frozen_balance - release),
        else_=0,
    )
    statement = (
        update(AccountBalance)
        .where(AccountBalance.user_id == user_id, AccountBalance.balance - frozen_after >= value)
        .values(
            balance=AccountBalance.balance - value,
            frozen_balance=frozen_after,
            total_spent=AccountBalance.total_spent + value,
            updated_at=_utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    release_entry = None
    if not already_released:
        release_entry = CreditTransaction(
            user_id=user_id,
            type="unfreeze",
            amount=value,
            balance_after=0,
            source="refund",
            reference_id=release_reference,
            description=reason,
            metadata_json=metadata or None,
        )
    spend_entry = CreditTransaction(
        user_id=user_id,
        type="spend",
        amount=value,
        balance_after=0,
        source="api_call",
        reference_id=spend_reference,
        description=description,
        metadata_json=metadata or None,
    )

    async def _mutate(row: CreditTransaction) -> None:
        if release_entry is not None:
            db.add(release_entry)
            await db.flush()
        applied = await db.execute(statement)
        if applied.rowcount == 0:
            balance, frozen = await _read_balance(db, user_id)
            raise InsufficientCreditsError(required=value, available=balance - frozen + release)
        balance, _ = await _read_balance(db, user_id)
        row.balance_after = balance
        if release_entry is not None:
            release_entry.balance_after = balance + value
        await db.flush()

    row, created = await insert_once(
        db,
        spend_entry,
        lambda: get_transaction_by_reference(db, spend_reference),
        _mutate,
    )
    await db.commit()
    if not created:
        logger.info("Ledger reference %s already applied; returning existing entry", spend_reference)
    return LedgerResult(transaction=row, applied=created)


async def has_enough_credits(db: AsyncSession, user_id: str, amount: int) -> bool:
    balance, frozen = await _read_balance(db, user_id)
    return balance - frozen >= max(int(amount), 0)


async def adjust_user_credits(
    db: AsyncSession,
    user_id: str,
    new_balance: int,
    reason: str,
    request_id: Optional[str] = None,
) -> AdjustmentResult:
    """Set a user's balance through an auditable admin_adjust entry."""
    target = int(new_balance)
    if target < 0:
        raise ValueError("new_balance must be >= 0")
    if not (reason or "").strip():
        raise ValueError("reason is required for credit adjustments")

    await _ensure_account(db, user_id)
    before, frozen = await _read_balance(db, user_id)
    if target < frozen:
        raise ValueError(f"new_balance {target} is below the frozen balance {frozen}")

    if request_id:
        reference_id = f"admin_adjust:{user_id}:{request_id}"
    else:
        latest = await db.execute(
            select(CreditTransaction.id)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc())
            .limit(1)
        )
        anchor = latest.scalar_one_or_none() or "none"
        reference_id = f"admin_adjust:{user_id}:{anchor}:{target}"

    delta = target - before
    existing = await get_transaction_by_reference(db, reference_id)
    if existing is not None:
        meta = existing.metadata_json or {}
        return AdjustmentResult(
            transaction=existing,
            applied=False,
            balance_before=int(meta.get("balance_before", before)),
            balance_after=int(existing.balance_after),
            delta=int(meta.get("delta", 0)),
        )

    entry = CreditTransaction(
        user_id=user_id,
        type="admin_adjust",
        amount=abs(delta),
        balance_after=target,
        source="admin",
        reference_id=reference_id,
        description=reason,
        metadata_json={"balance_before": before, "balance_after": target, "delta": delta, "reason": reason},
    )

    async def _mutate(_: CreditTransaction) -> None:
        applied = await db.execute(
            update(AccountBalance)
            .where(AccountBalance.user_id == user_id, AccountBalance.balance == before)
            .values(
                balance=target,
                total_earned=AccountBalance.total_earned + max(delta, 0),
                total_spent=AccountBalance.total_spent + max(-delta, 0),
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if applied.rowcount == 0:
            raise HTTPException(status_code=409, detail="Balance changed during adjustment. Retry the adjustment.")

    row, created = await insert_once(db, entry, lambda: get_transaction_by_reference(db, reference_id), _mutate)
    await db.commit()
    logger.warning(
        "Admin credit adjustment user=%s before=%s after=%s delta=%s reason=%s",
        user_id,
        before,
        target,
        delta,
        reason,
    )
    return AdjustmentResult(transaction=row, applied=created, balance_before=before, balance_after=target, delta=delta)


def _serialize_entry(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "type": entry.type,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "source": entry.source,
        "reference_id": entry.reference_id,
        "description": entry.description,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def get_transaction_history(
    db: AsyncSession,
    user_id: str,
    *,
    page: int = 1,
    limit: int = 20,
    entry_type: Optional[str] = None,
) -> Dict[str, Any]:
    page_size = max(1, min(int(limit), 100))
    offset = (max(int(page), 1) - 1) * page_size
    conditions = [CreditTransaction.user_id == user_id]
    if entry_type:
        conditions.append(CreditTransaction.type == entry_type)

    total = await db.execute(select(func.count(CreditTransaction.id)).where(*conditions))
    result = await db.execute(
        select(CreditTransaction)
        .where(*conditions)
        .order_by(CreditTransaction.created_at.desc())
        .offset(offset)
        .limit(page_size)
    )
    return {
        "page": max(int(page), 1),
        "limit": page_size,
        "total_count": int(total.scalar() or 0),
        "items": [_serialize_entry(entry) for entry in result.scalars().all()],
    }


async def get_credit_summary(db: AsyncSession, user_id: str) -> Dict[str, Any]:
    account = await get_account_balance(db, user_id)
    history = await get_transaction_history(db, user_id, limit=30)
    balance = int(account.balance) if account else 0
    frozen = int(account.frozen_balance) if account else 0
    return {
        "balance": balance,
        "frozen_balance": frozen,
        "available_balance": balance - frozen,
        "total_earned": int(account.total_earned) if account else 0,
        "total_spent": int(account.total_spent) if account else 0,
        "recent_entries": history["items"],
    }
