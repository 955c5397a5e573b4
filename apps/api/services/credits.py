"""Credit ledger: the single source of truth for account balances."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import async_session_maker
from models.account import Account
from models.credit_ledger import LEDGER_REASONS, CreditLedgerEntry
from models.generation_job import GenerationJob
from services.errors import InsufficientCredits, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditPack:
    pack_id: str
    label: str
    description: str
    credits: int
    price_cents: int
    currency: str


# Server-authoritative pack catalog. Purchases are credited from here, never
# from amounts supplied by a client or a webhook payload.
CREDIT_PACKS: Dict[str, CreditPack] = {
    "pro_75": CreditPack(
        pack_id="pro_75",
        label="Pro Pack",
        description="50 credits for resume generation",
        credits=50,
        price_cents=1000,
        currency="cad",
    ),
}


def get_pack(pack_id: str) -> Optional[CreditPack]:
    return CREDIT_PACKS.get(str(pack_id or "").strip())


async def ensure_account(db: AsyncSession, account_id: str, email: Optional[str] = None) -> Account:
    """Return the account row, creating an empty one on first sight."""
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account:
        if email and not account.email:
            account.email = email
            await db.commit()
        return account

    account = Account(id=account_id, email=email, credit_balance=0)
    db.add(account)
    try:
        await db.commit()
    except IntegrityError:
        # Created concurrently by another request.
        await db.rollback()
        result = await db.execute(select(Account).where(Account.id == account_id))
        return result.scalar_one()
    return account


async def get_balance(db: AsyncSession, account_id: str) -> int:
    """Read-only balance query; 0 when the account has no row yet."""
    result = await db.execute(select(Account.credit_balance).where(Account.id == account_id))
    return int(result.scalar_one_or_none() or 0)


async def get_ledger_sum(db: AsyncSession, account_id: str) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedgerEntry.delta), 0)).where(CreditLedgerEntry.account_id == account_id)
    )
    return int(result.scalar() or 0)


async def _has_reference(db: AsyncSession, account_id: str, reason: str, reference_id: str) -> bool:
    result = await db.execute(
        select(CreditLedgerEntry.id).where(
            CreditLedgerEntry.account_id == account_id,
            CreditLedgerEntry.reason == reason,
            CreditLedgerEntry.reference_id == reference_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def adjust(
    db: AsyncSession,
    account_id: str,
    delta: int,
    *,
    reason: str,
    source: str,
    reference_id: Optional[str] = None,
) -> int:
    """Apply ``delta`` to the balance and append a ledger entry in one transaction.

    The balance check and write are a single conditional UPDATE, so concurrent
    debits cannot both pass the check. A rejected debit leaves no entry and no
    balance change. When ``reference_id`` was already recorded for this
    account and reason the call is a no-op returning the current balance.
    Commits on success and rolls back on failure.
    """
    delta = int(delta)
    if reason not in LEDGER_REASONS:
        raise ValidationError(f"Unknown ledger reason: {reason}")
    if delta == 0:
        raise ValidationError("Ledger delta must be non-zero")
    source = str(source or "").strip() or "system"

    if reference_id and await _has_reference(db, account_id, reason, reference_id):
        logger.info("Ledger entry %s/%s already applied for account %s", reason, reference_id, account_id)
        return await get_balance(db, account_id)

    if delta > 0:
        await ensure_account(db, account_id)

    result = await db.execute(
        update(Account)
        .where(Account.id == account_id, Account.credit_balance + delta >= 0)
        .values(credit_balance=Account.credit_balance + delta)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        balance = await get_balance(db, account_id)
        raise InsufficientCredits(
            f"Insufficient credits. Required: {-delta}, available: {balance}."
        )

    balance_after = await get_balance(db, account_id)
    db.add(
        CreditLedgerEntry(
            id=str(uuid.uuid4()),
            account_id=account_id,
            delta=delta,
            reason=reason,
            source=source,
            reference_id=reference_id,
            balance_after=balance_after,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # Same reference committed concurrently; our balance update is discarded with it.
        await db.rollback()
        logger.info("Ledger entry %s/%s raced a duplicate for account %s", reason, reference_id, account_id)
        return await get_balance(db, account_id)

    logger.info(
        "Ledger adjust account=%s delta=%+d reason=%s source=%s balance_after=%d",
        account_id,
        delta,
        reason,
        source,
        balance_after,
    )
    return balance_after


async def debit_for_generation(job_id: str, account_id: str) -> bool:
    """Charge one credit for a succeeded job.

    Runs after the job is committed as succeeded. A failed debit is logged and
    flagged on the job for manual reconciliation; it never touches the job's
    status and is never retried automatically. Returns whether the credit was
    taken.
    """
    try:
        async with async_session_maker() as db:
            balance_after = await adjust(
                db,
                account_id,
                -1,
                reason="generation",
                source="system",
                reference_id=job_id,
            )
    except Exception as exc:
        logger.error(
            "Generation debit failed for job %s (account %s); needs manual reconciliation: %s",
            job_id,
            account_id,
            exc,
        )
        try:
            async with async_session_maker() as db:
                await _set_billing_status(db, job_id, "debit_failed")
        except Exception:
            logger.exception("Could not flag job %s for reconciliation", job_id)
        return False

    logger.info("Charged generation job %s, balance_after=%d", job_id, balance_after)
    try:
        async with async_session_maker() as db:
            await _set_billing_status(db, job_id, "charged")
    except Exception:
        # The ledger entry referencing this job is the record of the charge.
        logger.exception("Job %s was charged but billing_status could not be recorded", job_id)
    return True


async def _set_billing_status(db: AsyncSession, job_id: str, billing_status: str) -> None:
    await db.execute(
        update(GenerationJob)
        .where(GenerationJob.id == job_id)
        .values(billing_status=billing_status)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def grant_pack_purchase(db: AsyncSession, account_id: str, pack_id: str, event_id: str) -> Dict[str, Any]:
    """Credit a verified pack purchase once per payment event."""
    pack = get_pack(pack_id)
    if pack is None:
        raise ValidationError(f"Unknown credit pack: {pack_id}")
    balance_after = await adjust(
        db,
        account_id,
        pack.credits,
        reason="purchase",
        source=f"webhook:{pack.pack_id}",
        reference_id=event_id,
    )
    return {"pack_id": pack.pack_id, "credits": pack.credits, "balance_after": balance_after}


async def list_entries(db: AsyncSession, account_id: str, limit: int = 30) -> List[CreditLedgerEntry]:
    result = await db.execute(
        select(CreditLedgerEntry)
        .where(CreditLedgerEntry.account_id == account_id)
        .order_by(CreditLedgerEntry.created_at.desc())
        .limit(max(1, min(int(limit), 200)))
    )
    return list(result.scalars().all())


async def get_credit_summary(db: AsyncSession, account_id: str, limit: int = 30) -> Dict[str, Any]:
    balance = await get_balance(db, account_id)
    entries = await list_entries(db, account_id, limit=limit)
    return {
        "credits": balance,
        "recent_entries": [
            {
                "id": entry.id,
                "delta": entry.delta,
                "reason": entry.reason,
                "source": entry.source,
                "reference_id": entry.reference_id,
                "balance_after": entry.balance_after,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
