"""Direct tips and the group tip lifecycle."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.config import settings
from tipledger.core.exceptions import (
    AlreadyClaimedError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidStateError,
    PolicyViolationError,
    PostingFailureError,
)
from tipledger.core.async_tasks import expiry_scheduler
from tipledger.models.common import utcnow
from tipledger.models.tip import ClaimStatus, GroupTipClaim
from tipledger.services import events, ledger_service, tip_service
from tipledger.services.expiry_service import group_tip_key

UNIT = 10**6


def _later(group_tip: dict, seconds: int = 1):
    from datetime import datetime

    return datetime.fromisoformat(group_tip["expires_at"]) + timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Direct tips
# ---------------------------------------------------------------------------

async def test_send_tip_charges_tax_to_sender(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 20 * UNIT)

    tip = await tip_service.send_tip(db, "alice", "bob", pengu.id, 10 * UNIT, note="gg")

    fee = 10 * UNIT * settings.tip_fee_bps // 10_000
    assert tip["status"] == "COMPLETED"
    assert tip["tax_atomic"] == tip["fee_atomic"] == fee
    assert await ledger_service.get_balance(db, "alice", pengu.id) == 10 * UNIT - fee
    assert await ledger_service.get_balance(db, "bob", pengu.id) == 10 * UNIT
    assert await ledger_service.get_balance(db, settings.house_user_id, pengu.id) == fee


async def test_send_tip_uses_token_fee_override(db: AsyncSession, make_token, fund):
    token = await make_token("FREE", tip_fee_bps=0)
    await fund("alice", token, 5 * UNIT)

    tip = await tip_service.send_tip(db, "alice", "bob", token.id, 5 * UNIT)

    assert tip["fee_atomic"] == 0
    assert await ledger_service.get_balance(db, "alice", token.id) == 0


async def test_send_tip_to_self_rejected(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 5 * UNIT)
    with pytest.raises(InvalidAmountError):
        await tip_service.send_tip(db, "alice", "alice", pengu.id, UNIT)


async def test_send_tip_insufficient_creates_no_tip(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, UNIT)
    with pytest.raises(InsufficientFundsError):
        await tip_service.send_tip(db, "alice", "bob", pengu.id, UNIT)
    from tipledger.models.tip import Tip

    assert (await db.execute(select(func.count(Tip.id)))).scalar() == 0


async def test_send_tip_inactive_token_rejected(db: AsyncSession, make_token, fund):
    token = await make_token("OLD")
    await fund("alice", token, UNIT)
    await make_token("OLD", active=False, address=token.address)
    with pytest.raises(InvalidStateError):
        await tip_service.send_tip(db, "alice", "bob", token.id, UNIT // 2)


async def test_send_tip_emits_event(db: AsyncSession, pengu, fund):
    from tipledger.core.async_tasks import drain_background_tasks

    seen = []

    async def _listener(event_type, payload):
        seen.append((event_type, payload["id"]))

    events.subscribe("tip.sent", _listener)
    await fund("alice", pengu, 5 * UNIT)
    tip = await tip_service.send_tip(db, "alice", "bob", pengu.id, UNIT)
    await drain_background_tasks()

    assert seen == [("tip.sent", tip["id"])]


# ---------------------------------------------------------------------------
# Group tips: create
# ---------------------------------------------------------------------------

async def test_create_group_tip_escrows_principal_and_tax(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 100 * UNIT)

    gt = await tip_service.create_group_tip(db, "alice", pengu.id, 50 * UNIT, 120)

    tax = 50 * UNIT * settings.tip_fee_bps // 10_000
    assert gt["status"] == "ACTIVE"
    assert gt["total_atomic"] == 50 * UNIT
    assert gt["tax_atomic"] == tax
    assert await ledger_service.get_balance(db, "alice", pengu.id) == 50 * UNIT - tax
    # Tax is held until the gift finalizes
    assert await ledger_service.get_balance(db, settings.house_user_id, pengu.id) == 0
    assert expiry_scheduler.is_scheduled(group_tip_key(gt["id"]))


async def test_create_group_tip_duration_limits(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 10 * UNIT)
    with pytest.raises(PolicyViolationError):
        await tip_service.create_group_tip(db, "alice", pengu.id, UNIT, settings.group_tip_min_seconds - 1)
    with pytest.raises(PolicyViolationError):
        await tip_service.create_group_tip(db, "alice", pengu.id, UNIT, settings.group_tip_max_seconds + 1)


async def test_create_group_tip_insufficient(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 10 * UNIT)
    with pytest.raises(InsufficientFundsError):
        # principal fits, principal + tax does not
        await tip_service.create_group_tip(db, "alice", pengu.id, 10 * UNIT, 60)
    assert await ledger_service.get_balance(db, "alice", pengu.id) == 10 * UNIT


async def test_poster_reference_is_stored(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 10 * UNIT)

    async def _poster(group_tip):
        assert group_tip["status"] == "ACTIVE"
        return "channel-1/message-9"

    gt = await tip_service.create_group_tip(
        db, "alice", pengu.id, UNIT, 60, poster=_poster, schedule_expiry=False,
    )
    assert gt["message_ref"] == "channel-1/message-9"


async def test_posting_failure_refunds_and_marks_failed(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 10 * UNIT)

    async def _broken_poster(group_tip):
        raise ConnectionError("chat is down")

    with pytest.raises(PostingFailureError) as exc_info:
        await tip_service.create_group_tip(
            db, "alice", pengu.id, 5 * UNIT, 60, poster=_broken_poster,
        )

    err = exc_info.value
    assert isinstance(err.cause, ConnectionError)
    assert err.refund["status"] == "FAILED"
    assert err.refund["already_refunded"] is False
    assert await ledger_service.get_balance(db, "alice", pengu.id) == 10 * UNIT

    gt = await tip_service.get_group_tip(db, err.group_tip_id)
    assert gt["status"] == "FAILED"
    assert gt["refunded_at"] is not None
    assert not expiry_scheduler.is_scheduled(group_tip_key(err.group_tip_id))


# ---------------------------------------------------------------------------
# Group tips: claim
# ---------------------------------------------------------------------------

async def test_claim_then_duplicate_claim(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 10 * UNIT)
    gt = await tip_service.create_group_tip(db, "alice", pengu.id, UNIT, 60, schedule_expiry=False)

    first = await tip_service.claim_group_tip(db, gt["id"], "bob")
    assert first["status"] == "claimed"
    assert first["claim_count"] == 1

    with pytest.raises(AlreadyClaimedError) as exc_info:
        await tip_service.claim_group_tip(db, gt["id"], "bob")
    assert exc_info.value.message == "You have already claimed this group tip"

    claims = (await db.execute(select(func.count(GroupTipClaim.id)))).scalar()
    assert claims == 1
    assert (await tip_service.get_group_tip(db, gt["id"]))["claim_count"] == 1


async def test_creator_cannot_claim(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 10 * UNIT)
    gt = await tip_service.create_group_tip(db, "alice", pengu.id, UNIT, 60, schedule_expiry=False)
    with pytest.raises(InvalidStateError):
        await tip_service.claim_group_tip(db, gt["id"], "alice")


async def test_late_claim_finalizes_and_reports_expired(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 10 * UNIT)
    gt = await tip_service.create_group_tip(db, "alice", pengu.id, 3 * UNIT, 60, schedule_expiry=False)
    await tip_service.claim_group_tip(db, gt["id"], "bob")

    late = await tip_service.claim_group_tip(db, gt["id"], "carol", now=_later(gt))

    assert late["status"] == "expired"
    assert late["outcome"]["status"] == "FINALIZED"
    assert late["outcome"]["shares"] == [{"user_id": "bob", "share_atomic": 3 * UNIT}]
    assert await ledger_service.get_balance(db, "carol", pengu.id) == 0


async def test_claim_on_expired_zero_claim_tip_refunds(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 10 * UNIT)
    gt = await tip_service.create_group_tip(db, "alice", pengu.id, 3 * UNIT, 60, schedule_expiry=False)

    late = await tip_service.claim_group_tip(db, gt["id"], "carol", now=_later(gt))

    assert late["status"] == "expired"
    assert late["outcome"]["status"] == "REFUNDED"
    assert await ledger_service.get_balance(db, "alice", pengu.id) == 10 * UNIT


# ---------------------------------------------------------------------------
# Group tips: finalize
# ---------------------------------------------------------------------------

def test_split_evenly_gives_remainder_to_first():
    assert tip_service.split_evenly(10, 3) == [4, 3, 3]
    assert tip_service.split_evenly(9, 3) == [3, 3, 3]
    assert tip_service.split_evenly(2, 3) == [2, 0, 0]
    assert tip_service.split_evenly(5, 0) == []


async def test_finalize_splits_with_remainder_to_first_claimant(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 100 * UNIT)
    total = 10 * UNIT + 1  # not divisible by 3
    gt = await tip_service.create_group_tip(db, "alice", pengu.id, total, 60, schedule_expiry=False)
    for user in ("bob", "carol", "dave"):
        await tip_service.claim_group_tip(db, gt["id"], user)

    outcome = await tip_service.finalize_group_tip(db, gt["id"], now=_later(gt))

    share = total // 3
    assert outcome["status"] == "FINALIZED"
    assert outcome["already_finalized"] is False
    assert outcome["shares"] == [
        {"user_id": "bob", "share_atomic": share + total % 3},
        {"user_id": "carol", "share_atomic": share},
        {"user_id": "dave", "share_atomic": share},
    ]
    assert await ledger_service.get_balance(db, "bob", pengu.id) == share + total % 3
    assert await ledger_service.get_balance(db, "dave", pengu.id) == share
    assert await ledger_service.get_balance(db, settings.house_user_id, pengu.id) == gt["tax_atomic"]

    statuses = (await db.execute(select(GroupTipClaim.status))).scalars().all()
    assert set(statuses) == {ClaimStatus.CLAIMED}


async def test_zero_claim_tip_refunds_principal_and_tax(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 100 * UNIT)
    gt = await tip_service.create_group_tip(db, "alice", pengu.id, 50 * UNIT, 60, schedule_expiry=False)

    outcome = await tip_service.finalize_group_tip(db, gt["id"], now=_later(gt))

    assert outcome["status"] == "REFUNDED"
    assert outcome["refund"]["refunded_atomic"] == 50 * UNIT + gt["tax_atomic"]
    assert await ledger_service.get_balance(db, "alice", pengu.id) == 100 * UNIT
    claimed = (
        await db.execute(
            select(func.count(GroupTipClaim.id)).where(GroupTipClaim.status == ClaimStatus.CLAIMED)
        )
    ).scalar()
    assert claimed == 0


async def test_finalize_before_expiry_rejected_unless_forced(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 10 * UNIT)
    gt = await tip_service.create_group_tip(db, "alice", pengu.id, UNIT, 60, schedule_expiry=False)
    await tip_service.claim_group_tip(db, gt["id"], "bob")

    with pytest.raises(InvalidStateError):
        await tip_service.finalize_group_tip(db, gt["id"])

    outcome = await tip_service.finalize_group_tip(db, gt["id"], force=True)
    assert outcome["status"] == "FINALIZED"


async def test_finalize_twice_returns_same_outcome(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 10 * UNIT)
    gt = await tip_service.create_group_tip(db, "alice", pengu.id, 2 * UNIT, 60, schedule_expiry=False)
    await tip_service.claim_group_tip(db, gt["id"], "bob")
    await tip_service.claim_group_tip(db, gt["id"], "carol")

    first = await tip_service.finalize_group_tip(db, gt["id"], now=_later(gt))
    second = await tip_service.finalize_group_tip(db, gt["id"], now=_later(gt, 60))

    assert second["already_finalized"] is True
    assert second["shares"] == first["shares"]
    assert await ledger_service.get_balance(db, "bob", pengu.id) == UNIT


async def test_finalize_emits_event(db: AsyncSession, pengu, fund):
    from tipledger.core.async_tasks import drain_background_tasks

    seen = []

    async def _listener(event_type, payload):
        seen.append(event_type)

    events.subscribe("*", _listener)
    await fund("alice", pengu, 10 * UNIT)
    gt = await tip_service.create_group_tip(db, "alice", pengu.id, UNIT, 60, schedule_expiry=False)
    await tip_service.claim_group_tip(db, gt["id"], "bob")
    await tip_service.finalize_group_tip(db, gt["id"], now=_later(gt))
    await drain_background_tasks()

    assert seen == ["group_tip.created", "group_tip.claimed", "group_tip.finalized"]
