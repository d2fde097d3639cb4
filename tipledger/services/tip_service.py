"""Direct tips and the pooled group-tip lifecycle.

Group tip states::

    ACTIVE --(expiry: >=1 claim)--> FINALIZED
    ACTIVE --(expiry: 0 claims)---> REFUNDED
    ACTIVE --(posting failed)-----> FAILED   (escrow refunded)

Claim vs. expiry race
---------------------
Both sides write the group tip row before doing anything else:

- a claim runs ``UPDATE group_tips SET claim_count = claim_count + 1
  WHERE status = 'ACTIVE' AND expires_at > :now`` and only then inserts
  its claim row;
- finalize runs ``UPDATE group_tips SET finalized_at = :now
  WHERE status = 'ACTIVE'`` and only then counts claims.

Whichever write lands first holds the row (PostgreSQL row lock, SQLite
database write lock) until its unit commits.  A claim that got there first
is visible to finalize's count.  A claim that got there second matches zero
rows and is answered "expired".  Nothing in between can drop a claim.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.config import settings
from tipledger.core.async_tasks import expiry_scheduler
from tipledger.core.exceptions import (
    AlreadyClaimedError,
    InvalidAmountError,
    InvalidStateError,
    PolicyViolationError,
    PostingFailureError,
)
from tipledger.database import load_row, unit_of_work
from tipledger.models.common import as_utc, utcnow
from tipledger.models.ledger import TxType
from tipledger.models.tip import ClaimStatus, GroupTip, GroupTipClaim, GroupTipStatus, Tip, TipStatus
from tipledger.services import events, expiry_service, ledger_service, refund_service
from tipledger.services.token_registry import bps_of, get_token, tip_fee_bps

logger = logging.getLogger(__name__)

# poster(group_tip_dict) -> message reference (or None).  Raising means the
# announcement failed and the escrow must be returned.
Poster = Callable[[dict], Awaitable[str | None]]


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def _tip_to_dict(tip: Tip) -> dict:
    return {
        "id": tip.id,
        "from_user_id": tip.from_user_id,
        "to_user_id": tip.to_user_id,
        "token_id": tip.token_id,
        "amount_atomic": tip.amount_atomic,
        "fee_atomic": tip.fee_atomic,
        "tax_atomic": tip.tax_atomic,
        "note": tip.note,
        "guild_id": tip.guild_id,
        "status": tip.status.value,
        "created_at": _iso(tip.created_at),
        "refunded_at": _iso(tip.refunded_at),
    }


def _group_tip_to_dict(group_tip: GroupTip) -> dict:
    return {
        "id": group_tip.id,
        "creator_id": group_tip.creator_id,
        "token_id": group_tip.token_id,
        "total_atomic": group_tip.total_atomic,
        "tax_atomic": group_tip.tax_atomic,
        "duration_seconds": group_tip.duration_seconds,
        "expires_at": _iso(group_tip.expires_at),
        "status": group_tip.status.value,
        "claim_count": group_tip.claim_count,
        "note": group_tip.note,
        "guild_id": group_tip.guild_id,
        "message_ref": group_tip.message_ref,
        "created_at": _iso(group_tip.created_at),
        "finalized_at": _iso(group_tip.finalized_at),
        "refunded_at": _iso(group_tip.refunded_at),
    }


# ---------------------------------------------------------------------------
# Direct tips
# ---------------------------------------------------------------------------

async def send_tip(
    db: AsyncSession,
    from_user_id: str,
    to_user_id: str,
    token_id: int,
    amount_atomic: int,
    *,
    note: str | None = None,
    guild_id: str | None = None,
) -> dict:
    """Move ``amount_atomic`` to the receiver; the sender also pays the tip tax."""
    if from_user_id == to_user_id:
        raise InvalidAmountError("You can't tip yourself")
    token = await get_token(db, token_id, require_active=True)
    fee = bps_of(amount_atomic, tip_fee_bps(token)) if amount_atomic > 0 else 0

    async with unit_of_work(db):
        entry = await ledger_service.transfer_tx(
            db, from_user_id, to_user_id, token.id, amount_atomic, TxType.TIP,
            fee=fee, guild_id=guild_id, note=note, reference_type="tip",
        )
        tip = Tip(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            token_id=token.id,
            amount_atomic=amount_atomic,
            fee_atomic=fee,
            tax_atomic=fee,
            note=note,
            guild_id=guild_id,
            status=TipStatus.COMPLETED,
            created_at=utcnow(),
        )
        db.add(tip)
        await db.flush()
        entry.reference_id = str(tip.id)

    logger.info(
        "Tip %s: %s -> %s %d atomic of %s (fee %d)",
        tip.id, from_user_id, to_user_id, amount_atomic, token.symbol, fee,
    )
    result = _tip_to_dict(tip)
    events.emit("tip.sent", result)
    return result


async def get_tip(db: AsyncSession, tip_id: int) -> dict:
    return _tip_to_dict(await load_row(db, Tip, tip_id))


# ---------------------------------------------------------------------------
# Group tips: create
# ---------------------------------------------------------------------------

async def create_group_tip(
    db: AsyncSession,
    creator_id: str,
    token_id: int,
    amount_atomic: int,
    duration_seconds: int,
    *,
    note: str | None = None,
    guild_id: str | None = None,
    poster: Poster | None = None,
    schedule_expiry: bool = True,
) -> dict:
    """Escrow principal + tax and open the gift for claims.

    The debit commits before ``poster`` runs.  If posting raises, the escrow
    is refunded, the row ends FAILED, and ``PostingFailureError`` carries
    the refund result.
    """
    if isinstance(amount_atomic, bool) or not isinstance(amount_atomic, int) or amount_atomic <= 0:
        raise InvalidAmountError("Amount must be positive")
    if not settings.group_tip_min_seconds <= duration_seconds <= settings.group_tip_max_seconds:
        raise PolicyViolationError(
            f"Duration must be between {settings.group_tip_min_seconds} and "
            f"{settings.group_tip_max_seconds} seconds"
        )
    token = await get_token(db, token_id, require_active=True)
    tax = bps_of(amount_atomic, tip_fee_bps(token))
    now = utcnow()

    async with unit_of_work(db):
        await ledger_service.ensure_user_tx(db, creator_id)
        await ledger_service.subtract_from_balance_tx(db, creator_id, token.id, amount_atomic + tax)
        group_tip = GroupTip(
            creator_id=creator_id,
            token_id=token.id,
            total_atomic=amount_atomic,
            tax_atomic=tax,
            duration_seconds=duration_seconds,
            expires_at=now + timedelta(seconds=duration_seconds),
            status=GroupTipStatus.ACTIVE,
            claim_count=0,
            note=note,
            guild_id=guild_id,
            created_at=now,
        )
        db.add(group_tip)
        await db.flush()
        ledger_service.record_tx(
            db,
            TxType.GROUP_TIP_CREATE,
            user_id=creator_id,
            token_id=token.id,
            amount=amount_atomic,
            fee=tax,
            guild_id=guild_id,
            note=note,
            reference_type="group_tip",
            reference_id=group_tip.id,
        )

    logger.info(
        "Group tip %s created by %s: %d atomic of %s (+%d tax), expires %s",
        group_tip.id, creator_id, amount_atomic, token.symbol, tax, group_tip.expires_at,
    )

    if poster is not None:
        try:
            message_ref = await poster(_group_tip_to_dict(group_tip))
        except Exception as exc:
            logger.exception("Posting group tip %s failed, refunding creator", group_tip.id)
            refund = await refund_service.refund_group_tip(
                db, group_tip.id, terminal_status=GroupTipStatus.FAILED,
            )
            raise PostingFailureError(group_tip.id, refund, exc) from exc
        if message_ref:
            async with unit_of_work(db):
                group_tip.message_ref = str(message_ref)

    if schedule_expiry:
        expiry_service.schedule_group_tip_expiry(group_tip.id, as_utc(group_tip.expires_at))

    result = _group_tip_to_dict(group_tip)
    events.emit("group_tip.created", result)
    return result


async def get_group_tip(db: AsyncSession, group_tip_id: int) -> dict:
    return _group_tip_to_dict(await load_row(db, GroupTip, group_tip_id))


# ---------------------------------------------------------------------------
# Group tips: claim
# ---------------------------------------------------------------------------

async def claim_group_tip(
    db: AsyncSession,
    group_tip_id: int,
    user_id: str,
    *,
    now: datetime | None = None,
) -> dict:
    """Join a group tip.  Returns ``status="claimed"`` or ``status="expired"``.

    An expired (or otherwise closed) gift is finalized on the spot and the
    caller is told it expired.  A second claim by the same user raises
    ``AlreadyClaimedError``.
    """
    now = now or utcnow()
    group_tip = await load_row(db, GroupTip, group_tip_id)
    if group_tip.creator_id == user_id:
        raise InvalidStateError("You can't claim your own group tip")
    if group_tip.status != GroupTipStatus.ACTIVE or as_utc(group_tip.expires_at) <= now:
        return await _report_expired(db, group_tip_id, now)

    try:
        async with unit_of_work(db):
            await ledger_service.ensure_user_tx(db, user_id)
            entered = await db.execute(
                update(GroupTip)
                .where(
                    GroupTip.id == group_tip_id,
                    GroupTip.status == GroupTipStatus.ACTIVE,
                    GroupTip.expires_at > now,
                )
                .values(claim_count=GroupTip.claim_count + 1)
                .execution_options(synchronize_session=False)
            )
            if entered.rowcount != 1:
                raise _ClaimWindowClosed()
            claim = GroupTipClaim(
                group_tip_id=group_tip_id,
                user_id=user_id,
                status=ClaimStatus.PENDING,
                created_at=now,
            )
            db.add(claim)
            await db.flush()
    except _ClaimWindowClosed:
        logger.info("Claim on group tip %s by %s lost the race to expiry", group_tip_id, user_id)
        return await _report_expired(db, group_tip_id, now)
    except IntegrityError:
        logger.warning("Duplicate claim on group tip %s by %s", group_tip_id, user_id)
        raise AlreadyClaimedError(group_tip_id, user_id) from None

    group_tip = await load_row(db, GroupTip, group_tip_id)
    logger.info(
        "User %s claimed group tip %s (%d claims)", user_id, group_tip_id, group_tip.claim_count,
    )
    result = {
        "status": "claimed",
        "group_tip_id": group_tip_id,
        "user_id": user_id,
        "claim_id": claim.id,
        "claim_count": group_tip.claim_count,
        "expires_at": _iso(group_tip.expires_at),
    }
    events.emit("group_tip.claimed", result)
    return result


class _ClaimWindowClosed(Exception):
    pass


async def _report_expired(db: AsyncSession, group_tip_id: int, now: datetime) -> dict:
    outcome = await finalize_group_tip(db, group_tip_id, now=now)
    return {"status": "expired", "group_tip_id": group_tip_id, "outcome": outcome}


# ---------------------------------------------------------------------------
# Group tips: finalize
# ---------------------------------------------------------------------------

async def _claims(db: AsyncSession, group_tip_id: int, *statuses: ClaimStatus) -> list[GroupTipClaim]:
    stmt = (
        select(GroupTipClaim)
        .where(GroupTipClaim.group_tip_id == group_tip_id)
        .order_by(GroupTipClaim.id)
        .execution_options(populate_existing=True)
    )
    if statuses:
        stmt = stmt.where(GroupTipClaim.status.in_(statuses))
    return list((await db.execute(stmt)).scalars().all())


def split_evenly(total_atomic: int, claimants: int) -> list[int]:
    """Equal shares, truncated; the remainder goes to the first claimant."""
    if claimants <= 0:
        return []
    share = total_atomic // claimants
    shares = [share] * claimants
    shares[0] += total_atomic - share * claimants
    return shares


async def _terminal_outcome(db: AsyncSession, group_tip: GroupTip, *, already: bool) -> dict:
    outcome = {
        "group_tip_id": group_tip.id,
        "status": group_tip.status.value,
        "claim_count": group_tip.claim_count,
        "total_atomic": group_tip.total_atomic,
        "tax_atomic": group_tip.tax_atomic,
        "shares": [],
        "refund": None,
        "already_finalized": already,
    }
    if group_tip.status == GroupTipStatus.FINALIZED:
        outcome["shares"] = [
            {"user_id": c.user_id, "share_atomic": c.share_atomic}
            for c in await _claims(db, group_tip.id, ClaimStatus.CLAIMED)
        ]
    elif group_tip.refunded_at is not None:
        outcome["refund"] = refund_service.group_tip_refund_result(group_tip, already=already)
    return outcome


async def finalize_group_tip(
    db: AsyncSession,
    group_tip_id: int,
    *,
    now: datetime | None = None,
    force: bool = False,
) -> dict:
    """Resolve an expired group tip exactly once.

    Safe to call from the expiry timer, a late claim, the startup recovery
    scan, or all of them at once: only the caller whose conditional update
    takes the ACTIVE row moves money; everyone else gets the stored outcome
    with ``already_finalized=True``.  ``force`` skips the expiry check.
    """
    now = now or utcnow()
    refunded = False
    async with unit_of_work(db):
        group_tip = await load_row(db, GroupTip, group_tip_id, lock=True)
        if group_tip.status != GroupTipStatus.ACTIVE:
            return await _terminal_outcome(db, group_tip, already=True)
        if not force and as_utc(group_tip.expires_at) > now:
            raise InvalidStateError(f"Group tip {group_tip_id} has not expired yet")

        taken = await db.execute(
            update(GroupTip)
            .where(GroupTip.id == group_tip_id, GroupTip.status == GroupTipStatus.ACTIVE)
            .values(finalized_at=now)
            .execution_options(synchronize_session=False)
        )
        if taken.rowcount != 1:
            group_tip = await load_row(db, GroupTip, group_tip_id)
            return await _terminal_outcome(db, group_tip, already=True)

        claims = await _claims(db, group_tip_id, ClaimStatus.PENDING)
        if not claims:
            await refund_service.refund_group_tip_tx(db, group_tip, terminal_status=GroupTipStatus.REFUNDED)
            refunded = True
        else:
            await _pay_claimants_tx(db, group_tip, claims, now)
            await db.execute(
                update(GroupTip)
                .where(GroupTip.id == group_tip_id)
                .values(status=GroupTipStatus.FINALIZED)
                .execution_options(synchronize_session=False)
            )
        group_tip = await load_row(db, GroupTip, group_tip_id)
        outcome = await _terminal_outcome(db, group_tip, already=False)

    expiry_scheduler.cancel(expiry_service.group_tip_key(group_tip_id))
    if refunded:
        logger.info("Group tip %s expired with no claims; refunded creator", group_tip_id)
        events.emit("group_tip.refunded", outcome["refund"])
    else:
        logger.info("Group tip %s finalized among %d claimants", group_tip_id, len(outcome["shares"]))
        events.emit("group_tip.finalized", outcome)
    return outcome


async def _pay_claimants_tx(
    db: AsyncSession, group_tip: GroupTip, claims: list[GroupTipClaim], now: datetime
) -> None:
    shares = split_evenly(group_tip.total_atomic, len(claims))
    for claim, share in zip(claims, shares):
        if share > 0:
            await ledger_service.add_to_balance_tx(db, claim.user_id, group_tip.token_id, share)
            ledger_service.record_tx(
                db,
                TxType.GROUP_TIP_PAYOUT,
                user_id=claim.user_id,
                token_id=group_tip.token_id,
                amount=share,
                guild_id=group_tip.guild_id,
                reference_type="group_tip",
                reference_id=group_tip.id,
                metadata={"creator_id": group_tip.creator_id, "claimants": len(claims)},
            )
        await db.execute(
            update(GroupTipClaim)
            .where(GroupTipClaim.id == claim.id)
            .values(status=ClaimStatus.CLAIMED, share_atomic=share, claimed_at=now)
            .execution_options(synchronize_session=False)
        )

    if group_tip.tax_atomic:
        await ledger_service.add_to_balance_tx(
            db, settings.house_user_id, group_tip.token_id, group_tip.tax_atomic,
        )
        ledger_service.record_tx(
            db,
            TxType.GROUP_TIP_FEE,
            user_id=settings.house_user_id,
            counterparty_id=group_tip.creator_id,
            token_id=group_tip.token_id,
            amount=group_tip.tax_atomic,
            guild_id=group_tip.guild_id,
            reference_type="group_tip",
            reference_id=group_tip.id,
        )
