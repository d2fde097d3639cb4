"""Balance ledger: atomic debit / credit / transfer over per-(user, token) rows.

Every balance lives in one ``user_balances`` row holding an integer number
of atomic units.  Every committed effect appends one immutable
``ledger_transactions`` row.

Key design decisions:
- **Check-and-write in one statement**: on PostgreSQL a debit is
  ``UPDATE ... SET amount = amount - :x WHERE amount >= :x``; the second
  of two concurrent UPDATEs re-evaluates its WHERE after the first
  commits.  SQLite stores amounts as text, so there the row is touched
  first (taking the single writer lock) and the check and new value are
  computed in Python.  ``CHECK (amount >= 0)`` backs both up.
- **Deterministic lock ordering**: on PostgreSQL, balance rows touched by a
  multi-party operation are locked in sorted user order first, so two
  users tipping each other cannot deadlock.
- **``*_tx`` variants** mutate and record without committing, so composite
  operations (match settlement, group-tip creation, refunds) run several
  ledger steps inside one outer unit of work.  The plain variants wrap
  one step in ``unit_of_work`` and commit.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.config import settings
from tipledger.core.exceptions import InsufficientFundsError, InvalidAmountError
from tipledger.database import (
    exact_amount_arithmetic,
    insert_ignore,
    supports_row_locks,
    unit_of_work,
)
from tipledger.models.common import as_utc, utcnow
from tipledger.models.ledger import LedgerTransaction, TxType, UserBalance
from tipledger.models.token import Token
from tipledger.models.user import User

logger = logging.getLogger(__name__)

# Row types where `user_id` is the party whose balance went up.  For every
# other type `user_id` paid and the counterparty (if any) received.
CREDIT_TYPES = frozenset({
    TxType.DEPOSIT,
    TxType.GROUP_TIP_PAYOUT,
    TxType.GROUP_TIP_FEE,
    TxType.MATCH_PAYOUT,
    TxType.MATCH_REFUND,
    TxType.MATCH_RAKE,
    TxType.REFUND,
    TxType.CREDIT_ADJUSTMENT,
})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require_positive(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(f"Amount must be an integer number of atomic units, got {amount!r}")
    if amount <= 0:
        raise InvalidAmountError("Amount must be positive")
    return amount


def _require_fee(fee: int) -> int:
    if isinstance(fee, bool) or not isinstance(fee, int) or fee < 0:
        raise InvalidAmountError("Fee must be a non-negative integer")
    return fee


def _tx_to_dict(entry: LedgerTransaction) -> dict:
    return {
        "id": entry.id,
        "type": entry.tx_type.value if entry.tx_type else None,
        "user_id": entry.user_id,
        "counterparty_user_id": entry.counterparty_user_id,
        "token_id": entry.token_id,
        "amount": entry.amount,
        "fee": entry.fee,
        "guild_id": entry.guild_id,
        "reference_type": entry.reference_type,
        "reference_id": entry.reference_id,
        "note": entry.note,
        "metadata": json.loads(entry.metadata_json or "{}"),
        "created_at": as_utc(entry.created_at).isoformat() if entry.created_at else None,
    }


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------

async def ensure_user_tx(db: AsyncSession, user_id: str) -> None:
    """Create the user row if missing.  Safe under concurrent first use."""
    await db.execute(
        insert_ignore(db, User.__table__).values(
            id=user_id, wins=0, losses=0, ties=0, created_at=utcnow(),
        )
    )


async def _ensure_balance_row_tx(db: AsyncSession, user_id: str, token_id: int) -> None:
    await ensure_user_tx(db, user_id)
    await db.execute(
        insert_ignore(db, UserBalance.__table__).values(
            user_id=user_id, token_id=token_id, amount=0, updated_at=utcnow(),
        )
    )


async def lock_balances(db: AsyncSession, token_id: int, user_ids) -> None:
    """Row-lock balances in sorted user order (PostgreSQL only)."""
    if not supports_row_locks(db):
        return
    await db.execute(
        select(UserBalance.id)
        .where(UserBalance.token_id == token_id, UserBalance.user_id.in_(sorted(set(user_ids))))
        .order_by(UserBalance.user_id)
        .with_for_update()
    )


async def ensure_house_account(db: AsyncSession) -> str:
    """Get or create the house/treasury user that receives rakes and tip fees."""
    async with unit_of_work(db):
        await ensure_user_tx(db, settings.house_user_id)
    return settings.house_user_id


# ---------------------------------------------------------------------------
# Balance mutation (no ledger row, no commit)
# ---------------------------------------------------------------------------

async def _store_balance_tx(db: AsyncSession, user_id: str, token_id: int, amount: int) -> None:
    await db.execute(
        update(UserBalance)
        .where(UserBalance.user_id == user_id, UserBalance.token_id == token_id)
        .values(amount=amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def add_to_balance_tx(db: AsyncSession, user_id: str, token_id: int, amount: int) -> None:
    _require_positive(amount)
    await _ensure_balance_row_tx(db, user_id, token_id)
    if not exact_amount_arithmetic(db):
        # The insert above holds the SQLite write lock until commit
        current = await get_balance(db, user_id, token_id)
        await _store_balance_tx(db, user_id, token_id, current + amount)
        return
    await db.execute(
        update(UserBalance)
        .where(UserBalance.user_id == user_id, UserBalance.token_id == token_id)
        .values(amount=UserBalance.amount + amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def subtract_from_balance_tx(
    db: AsyncSession, user_id: str, token_id: int, amount: int
) -> None:
    """Subtract ``amount`` or raise ``InsufficientFundsError``; never goes negative."""
    _require_positive(amount)
    if not exact_amount_arithmetic(db):
        await _subtract_in_python_tx(db, user_id, token_id, amount)
        return
    result = await db.execute(
        update(UserBalance)
        .where(
            UserBalance.user_id == user_id,
            UserBalance.token_id == token_id,
            UserBalance.amount >= amount,
        )
        .values(amount=UserBalance.amount - amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        available = await get_balance(db, user_id, token_id)
        raise InsufficientFundsError(user_id, token_id, amount, available)


async def _subtract_in_python_tx(db: AsyncSession, user_id: str, token_id: int, amount: int) -> None:
    # Touch the row first: the write takes SQLite's lock, so the read below
    # cannot be overtaken by another writer before this transaction ends.
    touched = await db.execute(
        update(UserBalance)
        .where(UserBalance.user_id == user_id, UserBalance.token_id == token_id)
        .values(updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    available = await get_balance(db, user_id, token_id) if touched.rowcount == 1 else 0
    if available < amount:
        raise InsufficientFundsError(user_id, token_id, amount, available)
    await _store_balance_tx(db, user_id, token_id, available - amount)


def record_tx(
    db: AsyncSession,
    tx_type: TxType,
    *,
    user_id: str | None,
    token_id: int,
    amount: int,
    counterparty_id: str | None = None,
    fee: int = 0,
    guild_id: str | None = None,
    reference_type: str | None = None,
    reference_id=None,
    note: str | None = None,
    metadata: dict | None = None,
    idempotency_key: str | None = None,
    tx_hash: str | None = None,
) -> LedgerTransaction:
    """Append one audit row to the session.  Written once, never updated."""
    entry = LedgerTransaction(
        tx_type=tx_type,
        user_id=user_id,
        counterparty_user_id=counterparty_id,
        token_id=token_id,
        amount=amount,
        fee=fee,
        guild_id=guild_id,
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        note=note,
        metadata_json=json.dumps(metadata or {}, sort_keys=True),
        idempotency_key=idempotency_key,
        tx_hash=tx_hash,
        created_at=utcnow(),
    )
    db.add(entry)
    return entry


# ---------------------------------------------------------------------------
# Primitives, transaction-scoped
# ---------------------------------------------------------------------------

async def debit_tx(
    db: AsyncSession,
    user_id: str,
    token_id: int,
    amount: int,
    tx_type: TxType = TxType.DEBIT_ADJUSTMENT,
    **context,
) -> LedgerTransaction:
    await _ensure_balance_row_tx(db, user_id, token_id)
    await subtract_from_balance_tx(db, user_id, token_id, amount)
    return record_tx(db, tx_type, user_id=user_id, token_id=token_id, amount=amount, **context)


async def credit_tx(
    db: AsyncSession,
    user_id: str,
    token_id: int,
    amount: int,
    tx_type: TxType = TxType.CREDIT_ADJUSTMENT,
    **context,
) -> LedgerTransaction:
    await add_to_balance_tx(db, user_id, token_id, amount)
    return record_tx(db, tx_type, user_id=user_id, token_id=token_id, amount=amount, **context)


async def transfer_tx(
    db: AsyncSession,
    from_user_id: str,
    to_user_id: str,
    token_id: int,
    amount: int,
    tx_type: TxType = TxType.TIP,
    *,
    fee: int = 0,
    **context,
) -> LedgerTransaction:
    """Sender pays amount + fee, receiver gets amount, house gets fee.  One ledger row."""
    _require_positive(amount)
    _require_fee(fee)
    if from_user_id == to_user_id:
        raise InvalidAmountError("Cannot transfer to yourself")

    parties = {from_user_id, to_user_id}
    if fee:
        parties.add(settings.house_user_id)
    for user_id in sorted(parties):
        await _ensure_balance_row_tx(db, user_id, token_id)
    await lock_balances(db, token_id, parties)

    await subtract_from_balance_tx(db, from_user_id, token_id, amount + fee)
    await add_to_balance_tx(db, to_user_id, token_id, amount)
    if fee:
        await add_to_balance_tx(db, settings.house_user_id, token_id, fee)

    return record_tx(
        db,
        tx_type,
        user_id=from_user_id,
        counterparty_id=to_user_id,
        token_id=token_id,
        amount=amount,
        fee=fee,
        **context,
    )


# ---------------------------------------------------------------------------
# Primitives, committing
# ---------------------------------------------------------------------------

async def debit(
    db: AsyncSession,
    user_id: str,
    token_id: int,
    amount: int,
    tx_type: TxType = TxType.DEBIT_ADJUSTMENT,
    **context,
) -> dict:
    async with unit_of_work(db):
        entry = await debit_tx(db, user_id, token_id, amount, tx_type, **context)
    logger.info("Debited %d of token %d from %s (%s)", amount, token_id, user_id, tx_type.value)
    return {
        "transaction": _tx_to_dict(entry),
        "balance": await get_balance(db, user_id, token_id),
    }


async def credit(
    db: AsyncSession,
    user_id: str,
    token_id: int,
    amount: int,
    tx_type: TxType = TxType.CREDIT_ADJUSTMENT,
    **context,
) -> dict:
    async with unit_of_work(db):
        entry = await credit_tx(db, user_id, token_id, amount, tx_type, **context)
    logger.info("Credited %d of token %d to %s (%s)", amount, token_id, user_id, tx_type.value)
    return {
        "transaction": _tx_to_dict(entry),
        "balance": await get_balance(db, user_id, token_id),
    }


async def transfer(
    db: AsyncSession,
    from_user_id: str,
    to_user_id: str,
    token_id: int,
    amount: int,
    tx_type: TxType = TxType.TIP,
    *,
    fee: int = 0,
    **context,
) -> dict:
    async with unit_of_work(db):
        entry = await transfer_tx(
            db, from_user_id, to_user_id, token_id, amount, tx_type, fee=fee, **context,
        )
    logger.info(
        "Transferred %d (+%d fee) of token %d from %s to %s",
        amount, fee, token_id, from_user_id, to_user_id,
    )
    return {
        "transaction": _tx_to_dict(entry),
        "from_balance": await get_balance(db, from_user_id, token_id),
        "to_balance": await get_balance(db, to_user_id, token_id),
    }


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_balance(db: AsyncSession, user_id: str, token_id: int) -> int:
    result = await db.execute(
        select(UserBalance.amount).where(
            UserBalance.user_id == user_id, UserBalance.token_id == token_id,
        )
    )
    return result.scalar_one_or_none() or 0


async def get_balances(db: AsyncSession, user_id: str) -> list[dict]:
    """Every non-zero balance of a user, joined with its token."""
    result = await db.execute(
        select(UserBalance.token_id, UserBalance.amount, Token.symbol, Token.decimals)
        .join(Token, Token.id == UserBalance.token_id)
        .where(UserBalance.user_id == user_id, UserBalance.amount != 0)
        .order_by(Token.symbol)
    )
    return [
        {"token_id": token_id, "symbol": symbol, "decimals": decimals, "amount": amount}
        for token_id, amount, symbol, decimals in result.all()
    ]


async def get_history(
    db: AsyncSession,
    user_id: str,
    token_id: int | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[dict], int]:
    """Paginated ledger rows where the user is either party, newest first."""
    condition = (LedgerTransaction.user_id == user_id) | (
        LedgerTransaction.counterparty_user_id == user_id
    )
    if token_id is not None:
        condition = condition & (LedgerTransaction.token_id == token_id)

    total = (
        await db.execute(select(func.count(LedgerTransaction.id)).where(condition))
    ).scalar() or 0

    result = await db.execute(
        select(LedgerTransaction)
        .where(condition)
        .order_by(LedgerTransaction.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = []
    for entry in result.scalars().all():
        item = _tx_to_dict(entry)
        credited = entry.tx_type in CREDIT_TYPES
        if entry.user_id != user_id:
            credited = not credited
        item["direction"] = "in" if credited else "out"
        items.append(item)
    return items, total
