"""Deadline timers and startup recovery."""

import asyncio
from datetime import timedelta

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.config import settings
from tipledger.core.async_tasks import ExpiryScheduler, expiry_scheduler
from tipledger.models.common import utcnow
from tipledger.models.tip import GroupTip
from tipledger.services import expiry_service, ledger_service, match_service, tip_service

UNIT = 10**6


async def _backdate_group_tip(db: AsyncSession, group_tip_id: int, seconds: int = 5) -> None:
    await db.execute(
        update(GroupTip)
        .where(GroupTip.id == group_tip_id)
        .values(expires_at=utcnow() - timedelta(seconds=seconds))
    )
    await db.commit()


# ---------------------------------------------------------------------------
# ExpiryScheduler
# ---------------------------------------------------------------------------

async def test_scheduler_runs_past_due_job():
    scheduler = ExpiryScheduler()
    fired = []

    async def job():
        fired.append("x")

    task = scheduler.schedule("k", utcnow() - timedelta(seconds=1), job)
    await task

    assert fired == ["x"]
    assert scheduler.pending() == []


async def test_scheduler_replace_and_cancel():
    scheduler = ExpiryScheduler()
    fired = []

    async def job(tag):
        fired.append(tag)

    first = scheduler.schedule("k", utcnow() + timedelta(hours=1), lambda: job("first"))
    second = scheduler.schedule("k", utcnow() + timedelta(hours=1), lambda: job("second"))
    await asyncio.gather(first, return_exceptions=True)

    assert first.cancelled()
    assert scheduler.pending() == ["k"]
    assert scheduler.cancel("k") is True
    assert scheduler.cancel("k") is False
    await asyncio.gather(second, return_exceptions=True)
    assert second.cancelled()
    assert fired == []


async def test_failing_job_is_logged_not_raised(caplog):
    scheduler = ExpiryScheduler()

    async def job():
        raise RuntimeError("boom")

    await scheduler.schedule("bad", utcnow(), job)
    assert "Expiry job bad failed" in caplog.text


# ---------------------------------------------------------------------------
# Timers wired to the services
# ---------------------------------------------------------------------------

async def test_group_tip_timer_finalizes(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 20 * UNIT)
    gt = await tip_service.create_group_tip(db, "alice", pengu.id, 10 * UNIT, 60, schedule_expiry=False)
    await tip_service.claim_group_tip(db, gt["id"], "bob")
    await _backdate_group_tip(db, gt["id"])

    await expiry_service.schedule_group_tip_expiry(gt["id"], utcnow() - timedelta(seconds=1))

    assert (await tip_service.get_group_tip(db, gt["id"]))["status"] == "FINALIZED"
    assert await ledger_service.get_balance(db, "bob", pengu.id) == 10 * UNIT
    assert not expiry_scheduler.is_scheduled(expiry_service.group_tip_key(gt["id"]))


async def test_match_timer_expires_offer(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 10 * UNIT)
    match = await match_service.create_match(db, "alice", pengu.id, 5 * UNIT)
    past = utcnow() - timedelta(seconds=settings.match_offer_seconds + 5)
    offered = await match_service.offer_match(
        db, match["id"], "alice", "ice", now=past, schedule_expiry=False,
    )

    await expiry_service.schedule_match_expiry(match["id"], utcnow() - timedelta(seconds=1))

    assert (await match_service.get_match(db, offered["id"]))["status"] == "EXPIRED"
    assert await ledger_service.get_balance(db, "alice", pengu.id) == 10 * UNIT


# ---------------------------------------------------------------------------
# Startup recovery
# ---------------------------------------------------------------------------

async def test_restore_resolves_overdue_and_rearms_the_rest(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 40 * UNIT)
    overdue = await tip_service.create_group_tip(db, "alice", pengu.id, 5 * UNIT, 60, schedule_expiry=False)
    upcoming = await tip_service.create_group_tip(db, "alice", pengu.id, 5 * UNIT, 600, schedule_expiry=False)
    await _backdate_group_tip(db, overdue["id"])

    stale = await match_service.create_match(db, "alice", pengu.id, 2 * UNIT)
    await match_service.offer_match(
        db, stale["id"], "alice", "pebble",
        now=utcnow() - timedelta(seconds=settings.match_offer_seconds + 5),
        schedule_expiry=False,
    )
    live = await match_service.create_match(db, "alice", pengu.id, 2 * UNIT)
    await match_service.offer_match(db, live["id"], "alice", "penguin", schedule_expiry=False)

    counts = await expiry_service.restore_expiry_timers(db)

    assert counts == {"finalized": 1, "expired": 1, "scheduled": 2, "failed": 0}
    assert (await tip_service.get_group_tip(db, overdue["id"]))["status"] == "REFUNDED"
    assert (await match_service.get_match(db, stale["id"]))["status"] == "EXPIRED"
    assert expiry_scheduler.pending() == sorted([
        expiry_service.group_tip_key(upcoming["id"]),
        expiry_service.match_key(live["id"]),
    ])


async def test_restore_is_idempotent(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 20 * UNIT)
    gt = await tip_service.create_group_tip(db, "alice", pengu.id, 5 * UNIT, 60, schedule_expiry=False)
    await _backdate_group_tip(db, gt["id"])

    await expiry_service.restore_expiry_timers(db)
    again = await expiry_service.restore_expiry_timers(db)

    assert again == {"finalized": 0, "expired": 0, "scheduled": 0, "failed": 0}
