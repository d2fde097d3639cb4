"""On-chain deposits in, withdrawals out.

The blockchain watcher hands us verified transfers; the withdrawal sender
asks us to debit before it broadcasts.  Both sides are de-duplicated by a
unique ``idempotency_key`` on the ledger row, so a replayed deposit or a
retried withdrawal never moves funds twice.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.core.exceptions import InvalidAmountError, PolicyViolationError
from tipledger.database import sum_amounts, unit_of_work
from tipledger.models.common import utcnow
from tipledger.models.ledger import LedgerTransaction, TxType
from tipledger.models.token import Token
from tipledger.services import ledger_service
from tipledger.services.token_registry import format_amount, get_token, withdraw_limits

logger = logging.getLogger(__name__)

DAILY_WINDOW = timedelta(hours=24)


def deposit_key(source_tx: str, payer: str, amount_atomic: int) -> str:
    return f"{source_tx.lower()}:{payer.lower()}:{amount_atomic}"


async def _find_by_key(db: AsyncSession, key: str) -> LedgerTransaction | None:
    result = await db.execute(
        select(LedgerTransaction).where(LedgerTransaction.idempotency_key == key)
    )
    return result.scalar_one_or_none()


def _require_positive(amount_atomic: int) -> None:
    if isinstance(amount_atomic, bool) or not isinstance(amount_atomic, int) or amount_atomic <= 0:
        raise InvalidAmountError("Amount must be positive")


# ---------------------------------------------------------------------------
# Deposits
# ---------------------------------------------------------------------------

async def apply_deposit(
    db: AsyncSession,
    user_id: str,
    token_id: int,
    amount_atomic: int,
    *,
    source_tx: str,
    payer: str,
) -> dict:
    """Credit a verified on-chain transfer exactly once."""
    _require_positive(amount_atomic)
    token = await get_token(db, token_id, require_active=True)
    key = deposit_key(source_tx, payer, amount_atomic)

    existing = await _find_by_key(db, key)
    if existing is not None:
        logger.info("Deposit %s already applied as ledger entry %s", key, existing.id)
        return {"credited": False, "duplicate": True, "transaction_id": existing.id}

    if amount_atomic < (token.min_deposit_atomic or 0):
        logger.info(
            "Deposit %s below minimum for %s (%d < %d), not credited",
            key, token.symbol, amount_atomic, token.min_deposit_atomic,
        )
        return {"credited": False, "duplicate": False, "skipped": "below_minimum"}

    try:
        async with unit_of_work(db):
            entry = await ledger_service.credit_tx(
                db,
                user_id,
                token.id,
                amount_atomic,
                TxType.DEPOSIT,
                idempotency_key=key,
                tx_hash=source_tx,
                reference_type="deposit",
                metadata={"payer": payer.lower()},
            )
    except IntegrityError:
        # Same transfer delivered twice concurrently; the other one won.
        existing = await _find_by_key(db, key)
        logger.info("Deposit %s applied concurrently", key)
        return {
            "credited": False,
            "duplicate": True,
            "transaction_id": existing.id if existing else None,
        }

    balance = await ledger_service.get_balance(db, user_id, token.id)
    logger.info(
        "Deposit credited: %s %s to %s (tx %s)",
        format_amount(amount_atomic, token.decimals), token.symbol, user_id, source_tx,
    )
    return {
        "credited": True,
        "duplicate": False,
        "transaction_id": entry.id,
        "balance": balance,
    }


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------

async def withdrawn_since(
    db: AsyncSession, user_id: str, token_id: int, since: datetime
) -> int:
    return await sum_amounts(
        db,
        LedgerTransaction.amount,
        LedgerTransaction.user_id == user_id,
        LedgerTransaction.token_id == token_id,
        LedgerTransaction.tx_type == TxType.WITHDRAW,
        LedgerTransaction.created_at >= since,
    )


def check_withdrawal_limits(token: Token, amount_atomic: int, used_today: int = 0) -> None:
    """Raise ``PolicyViolationError`` if the amount breaks a per-token limit."""
    limits = withdraw_limits(token)

    def fmt(value: int) -> str:
        return format_amount(value, token.decimals, token.symbol)

    if amount_atomic < limits["min"]:
        raise PolicyViolationError(f"Minimum withdrawal is {fmt(limits['min'])}")
    if amount_atomic > limits["max_per_tx"]:
        raise PolicyViolationError(f"Maximum per withdrawal is {fmt(limits['max_per_tx'])}")
    if used_today + amount_atomic > limits["daily_cap"]:
        remaining = max(limits["daily_cap"] - used_today, 0)
        raise PolicyViolationError(
            f"Daily withdrawal limit is {fmt(limits['daily_cap'])}; {fmt(remaining)} left today"
        )


async def check_withdrawal_policy(
    db: AsyncSession,
    user_id: str,
    token: Token,
    amount_atomic: int,
    *,
    now: datetime | None = None,
) -> dict:
    """Evaluate the policy without moving funds.  Returns the limits and today's usage."""
    now = now or utcnow()
    used = await withdrawn_since(db, user_id, token.id, now - DAILY_WINDOW)
    check_withdrawal_limits(token, amount_atomic, used)
    return {**withdraw_limits(token), "used_today": used}


async def withdraw(
    db: AsyncSession,
    user_id: str,
    token_id: int,
    amount_atomic: int,
    *,
    destination: str | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Debit a withdrawal that passes the policy.  Broadcasting is the caller's job."""
    _require_positive(amount_atomic)
    token = await get_token(db, token_id, require_active=True)
    now = now or utcnow()
    check_withdrawal_limits(token, amount_atomic)

    if idempotency_key:
        existing = await _find_by_key(db, idempotency_key)
        if existing is not None:
            return {"debited": False, "duplicate": True, "transaction_id": existing.id}

    try:
        async with unit_of_work(db):
            # Debit first: the balance write serializes concurrent withdrawals,
            # so the daily total below already includes every earlier one.
            entry = await ledger_service.debit_tx(
                db,
                user_id,
                token.id,
                amount_atomic,
                TxType.WITHDRAW,
                idempotency_key=idempotency_key,
                reference_type="withdrawal",
                metadata={"destination": destination} if destination else None,
            )
            await db.flush()
            used = await withdrawn_since(db, user_id, token.id, now - DAILY_WINDOW)
            check_withdrawal_limits(token, amount_atomic, used - amount_atomic)
    except IntegrityError:
        if not idempotency_key:
            raise
        existing = await _find_by_key(db, idempotency_key)
        return {
            "debited": False,
            "duplicate": True,
            "transaction_id": existing.id if existing else None,
        }

    logger.info(
        "Withdrawal debited: %s from %s to %s",
        format_amount(amount_atomic, token.decimals, token.symbol), user_id, destination or "-",
    )
    return {
        "debited": True,
        "duplicate": False,
        "transaction_id": entry.id,
        "balance": await ledger_service.get_balance(db, user_id, token.id),
    }
