"""Refund engine: idempotent compensating transactions.

``refund_tip`` reverses a completed direct tip.  ``refund_group_tip``
returns a pooled gift's escrowed principal + tax to its creator (zero-claim
expiry, posting failure, admin action).  Both gate on a conditional
``UPDATE ... WHERE status = <refundable>``: of N concurrent callers exactly
one flips the row and moves money; the rest observe the terminal row and
return the recorded amounts with ``already_refunded=True``.

Refund amounts always come from the stored atomic columns, never from the
current fee rates.
"""

from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.config import settings
from tipledger.core.exceptions import InvalidStateError
from tipledger.database import load_row, unit_of_work
from tipledger.models.common import as_utc, utcnow
from tipledger.models.ledger import TxType
from tipledger.models.tip import ClaimStatus, GroupTip, GroupTipClaim, GroupTipStatus, Tip, TipStatus
from tipledger.services import events, ledger_service

logger = logging.getLogger(__name__)


def _tip_refund_result(tip: Tip, already: bool) -> dict:
    return {
        "tip_id": tip.id,
        "status": tip.status.value,
        "refunded_to": tip.from_user_id,
        "token_id": tip.token_id,
        "principal_atomic": tip.amount_atomic,
        "tax_atomic": tip.tax_atomic,
        "refunded_atomic": tip.amount_atomic + tip.tax_atomic,
        "refunded_at": as_utc(tip.refunded_at).isoformat() if tip.refunded_at else None,
        "already_refunded": already,
    }


def group_tip_refund_result(group_tip: GroupTip, already: bool) -> dict:
    return {
        "group_tip_id": group_tip.id,
        "status": group_tip.status.value,
        "refunded_to": group_tip.creator_id,
        "token_id": group_tip.token_id,
        "principal_atomic": group_tip.total_atomic,
        "tax_atomic": group_tip.tax_atomic,
        "refunded_atomic": group_tip.total_atomic + group_tip.tax_atomic,
        "refunded_at": as_utc(group_tip.refunded_at).isoformat() if group_tip.refunded_at else None,
        "already_refunded": already,
    }


# ---------------------------------------------------------------------------
# Direct tips
# ---------------------------------------------------------------------------

async def refund_tip(db: AsyncSession, tip_id: int) -> dict:
    """Reverse a completed tip: receiver gives back the principal, house the tax.

    Raises ``InsufficientFundsError`` (and changes nothing) if the receiver
    has already spent the principal.
    """
    async with unit_of_work(db):
        tip = await load_row(db, Tip, tip_id, lock=True)
        if tip.status == TipStatus.REFUNDED:
            logger.warning("Tip %s already refunded", tip_id)
            return _tip_refund_result(tip, already=True)
        if tip.status != TipStatus.COMPLETED:
            raise InvalidStateError(f"Tip {tip_id} cannot be refunded from status {tip.status.value}")

        flipped = await db.execute(
            update(Tip)
            .where(Tip.id == tip_id, Tip.status == TipStatus.COMPLETED)
            .values(status=TipStatus.REFUNDED, refunded_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            tip = await load_row(db, Tip, tip_id)
            logger.warning("Tip %s refunded concurrently", tip_id)
            return _tip_refund_result(tip, already=True)

        parties = [tip.from_user_id, tip.to_user_id]
        if tip.tax_atomic:
            parties.append(settings.house_user_id)
        await ledger_service.lock_balances(db, tip.token_id, parties)

        await ledger_service.subtract_from_balance_tx(db, tip.to_user_id, tip.token_id, tip.amount_atomic)
        if tip.tax_atomic:
            await ledger_service.subtract_from_balance_tx(
                db, settings.house_user_id, tip.token_id, tip.tax_atomic,
            )
        refunded = tip.amount_atomic + tip.tax_atomic
        await ledger_service.add_to_balance_tx(db, tip.from_user_id, tip.token_id, refunded)
        ledger_service.record_tx(
            db,
            TxType.REFUND,
            user_id=tip.from_user_id,
            counterparty_id=tip.to_user_id,
            token_id=tip.token_id,
            amount=refunded,
            guild_id=tip.guild_id,
            reference_type="tip",
            reference_id=tip.id,
            metadata={"principal_atomic": tip.amount_atomic, "tax_atomic": tip.tax_atomic},
        )
        tip = await load_row(db, Tip, tip_id)

    logger.info("Refunded tip %s: %d atomic to %s", tip_id, refunded, tip.from_user_id)
    result = _tip_refund_result(tip, already=False)
    events.emit("tip.refunded", result)
    return result


# ---------------------------------------------------------------------------
# Group tips
# ---------------------------------------------------------------------------

async def refund_group_tip_tx(
    db: AsyncSession,
    group_tip: GroupTip,
    *,
    terminal_status: GroupTipStatus = GroupTipStatus.REFUNDED,
) -> dict:
    """Return escrow to the creator inside the caller's unit of work."""
    if terminal_status not in (GroupTipStatus.REFUNDED, GroupTipStatus.FAILED):
        raise ValueError(f"Not a refund status: {terminal_status}")

    now = utcnow()
    flipped = await db.execute(
        update(GroupTip)
        .where(
            GroupTip.id == group_tip.id,
            GroupTip.status == GroupTipStatus.ACTIVE,
            GroupTip.refunded_at.is_(None),
        )
        .values(status=terminal_status, refunded_at=now)
        .execution_options(synchronize_session=False)
    )
    if flipped.rowcount != 1:
        current = await load_row(db, GroupTip, group_tip.id)
        if current.refunded_at is not None:
            logger.warning("Group tip %s already refunded", group_tip.id)
            return group_tip_refund_result(current, already=True)
        raise InvalidStateError(
            f"Group tip {group_tip.id} cannot be refunded from status {current.status.value}"
        )

    refunded = group_tip.total_atomic + group_tip.tax_atomic
    await ledger_service.add_to_balance_tx(db, group_tip.creator_id, group_tip.token_id, refunded)
    ledger_service.record_tx(
        db,
        TxType.REFUND,
        user_id=group_tip.creator_id,
        token_id=group_tip.token_id,
        amount=refunded,
        guild_id=group_tip.guild_id,
        reference_type="group_tip",
        reference_id=group_tip.id,
        metadata={
            "principal_atomic": group_tip.total_atomic,
            "tax_atomic": group_tip.tax_atomic,
            "reason": terminal_status.value,
        },
    )
    await db.execute(
        update(GroupTipClaim)
        .where(
            GroupTipClaim.group_tip_id == group_tip.id,
            GroupTipClaim.status == ClaimStatus.PENDING,
        )
        .values(status=ClaimStatus.REFUNDED, refunded_at=now)
        .execution_options(synchronize_session=False)
    )
    current = await load_row(db, GroupTip, group_tip.id)
    logger.info(
        "Refunded group tip %s (%s): %d atomic to %s",
        group_tip.id, terminal_status.value, refunded, group_tip.creator_id,
    )
    return group_tip_refund_result(current, already=False)


async def refund_group_tip(
    db: AsyncSession,
    group_tip_id: int,
    *,
    terminal_status: GroupTipStatus = GroupTipStatus.REFUNDED,
) -> dict:
    """Refund an ACTIVE group tip to its creator.  Repeat calls are no-ops."""
    async with unit_of_work(db):
        group_tip = await load_row(db, GroupTip, group_tip_id, lock=True)
        if group_tip.refunded_at is not None:
            logger.warning("Group tip %s already refunded", group_tip_id)
            return group_tip_refund_result(group_tip, already=True)
        result = await refund_group_tip_tx(db, group_tip, terminal_status=terminal_status)

    if not result["already_refunded"]:
        events.emit("group_tip.refunded", result)
    return result
