"""Conservation check for one token.

Every unit that entered through a deposit (or a credit adjustment) and has
not left through a withdrawal (or a debit adjustment) is either in some
user's balance, the house's included, or held in escrow by an unresolved
group tip or match.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.database import sum_amounts
from tipledger.models.ledger import LedgerTransaction, TxType, UserBalance
from tipledger.models.match import Match, MatchStatus
from tipledger.models.tip import GroupTip, GroupTipStatus
from tipledger.services.token_registry import get_token

logger = logging.getLogger(__name__)

_SUPPLY_IN = (TxType.DEPOSIT, TxType.CREDIT_ADJUSTMENT)
_SUPPLY_OUT = (TxType.WITHDRAW, TxType.DEBIT_ADJUSTMENT)


async def _ledger_sum(db: AsyncSession, token_id: int, types) -> int:
    return await sum_amounts(
        db,
        LedgerTransaction.amount,
        LedgerTransaction.token_id == token_id,
        LedgerTransaction.tx_type.in_(types),
    )


async def reconcile_token(db: AsyncSession, token_id: int) -> dict[str, Any]:
    token = await get_token(db, token_id)

    balances = await sum_amounts(db, UserBalance.amount, UserBalance.token_id == token_id)
    negative_rows = (
        await db.execute(
            select(func.count(UserBalance.id)).where(
                UserBalance.token_id == token_id, UserBalance.amount < 0,
            )
        )
    ).scalar() or 0
    supply_in = await _ledger_sum(db, token_id, _SUPPLY_IN)
    supply_out = await _ledger_sum(db, token_id, _SUPPLY_OUT)

    active_tip = (GroupTip.token_id == token_id, GroupTip.status == GroupTipStatus.ACTIVE)
    group_tip_escrow = (
        await sum_amounts(db, GroupTip.total_atomic, *active_tip)
        + await sum_amounts(db, GroupTip.tax_atomic, *active_tip)
    )
    match_escrow = await sum_amounts(
        db,
        Match.wager_atomic,
        Match.token_id == token_id,
        Match.status.in_((MatchStatus.DRAFT, MatchStatus.OFFERED)),
    )
    # LOCKED only exists inside an open join; both wagers are held.
    match_escrow += 2 * await sum_amounts(
        db, Match.wager_atomic, Match.token_id == token_id, Match.status == MatchStatus.LOCKED,
    )

    escrow = group_tip_escrow + match_escrow
    expected = supply_in - supply_out
    ok = balances + escrow == expected and negative_rows == 0
    report = {
        "token_id": token.id,
        "symbol": token.symbol,
        "balances": balances,
        "deposits": supply_in,
        "withdrawals": supply_out,
        "escrow": {"group_tips": group_tip_escrow, "matches": match_escrow},
        "expected": expected,
        "difference": balances + escrow - expected,
        "negative_balance_rows": negative_rows,
        "ok": ok,
    }
    if ok:
        logger.info("Reconciliation %s ok: %d held, %d in escrow", token.symbol, balances, escrow)
    else:
        logger.error(
            "Reconciliation %s FAILED: balances %d + escrow %d != deposits-withdrawals %d (negative rows %d)",
            token.symbol, balances, escrow, expected, negative_rows,
        )
    return report
