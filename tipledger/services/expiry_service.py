"""Deadline timers for group tips and offered matches, plus startup recovery.

Deadlines are persisted (``GroupTip.expires_at``, ``Match.offer_deadline``);
the in-process timers are only a wake-up call.  Each job opens a fresh
session and calls the idempotent finalize/expire routine, so a duplicate,
late or lost timer is harmless as long as ``restore_expiry_timers`` runs at
startup.

Timers live in one process.  Running several engine processes against the
same database would schedule every deadline once per process; finalize
stays correct but the work is duplicated.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger import database
from tipledger.core.async_tasks import expiry_scheduler
from tipledger.models.common import as_utc, utcnow
from tipledger.models.match import Match, MatchStatus
from tipledger.models.tip import GroupTip, GroupTipStatus

logger = logging.getLogger(__name__)


def group_tip_key(group_tip_id: int) -> str:
    return f"group_tip:{group_tip_id}"


def match_key(match_id: int) -> str:
    return f"match:{match_id}"


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

async def _finalize_group_tip_job(group_tip_id: int) -> None:
    from tipledger.services.tip_service import finalize_group_tip

    async with database.async_session() as db:
        outcome = await finalize_group_tip(db, group_tip_id)
    logger.debug("Expiry timer resolved group tip %s -> %s", group_tip_id, outcome["status"])


async def _expire_match_job(match_id: int) -> None:
    from tipledger.services.match_service import expire_match

    async with database.async_session() as db:
        result = await expire_match(db, match_id)
    logger.debug("Expiry timer resolved match %s -> %s", match_id, result["status"])


def schedule_group_tip_expiry(group_tip_id: int, expires_at: datetime) -> asyncio.Task:
    return expiry_scheduler.schedule(
        group_tip_key(group_tip_id), as_utc(expires_at), lambda: _finalize_group_tip_job(group_tip_id),
    )


def schedule_match_expiry(match_id: int, deadline: datetime) -> asyncio.Task:
    return expiry_scheduler.schedule(
        match_key(match_id), as_utc(deadline), lambda: _expire_match_job(match_id),
    )


# ---------------------------------------------------------------------------
# Startup recovery
# ---------------------------------------------------------------------------

async def restore_expiry_timers(db: AsyncSession, *, now: datetime | None = None) -> dict:
    """Resolve everything already past its deadline and re-arm the rest.

    Returns counts: ``{"finalized", "expired", "scheduled", "failed"}``.
    """
    from tipledger.services.match_service import expire_match
    from tipledger.services.tip_service import finalize_group_tip

    now = now or utcnow()
    counts = {"finalized": 0, "expired": 0, "scheduled": 0, "failed": 0}

    group_tips = (
        await db.execute(
            select(GroupTip.id, GroupTip.expires_at)
            .where(GroupTip.status == GroupTipStatus.ACTIVE)
            .order_by(GroupTip.expires_at)
        )
    ).all()
    for group_tip_id, expires_at in group_tips:
        if as_utc(expires_at) <= now:
            try:
                await finalize_group_tip(db, group_tip_id, now=now)
                counts["finalized"] += 1
            except Exception:
                logger.exception("Recovery: failed to finalize group tip %s", group_tip_id)
                counts["failed"] += 1
        else:
            schedule_group_tip_expiry(group_tip_id, expires_at)
            counts["scheduled"] += 1

    matches = (
        await db.execute(
            select(Match.id, Match.offer_deadline)
            .where(Match.status == MatchStatus.OFFERED)
            .order_by(Match.offer_deadline)
        )
    ).all()
    for match_id, deadline in matches:
        if deadline is None:
            continue
        if as_utc(deadline) <= now:
            try:
                await expire_match(db, match_id, now=now)
                counts["expired"] += 1
            except Exception:
                logger.exception("Recovery: failed to expire match %s", match_id)
                counts["failed"] += 1
        else:
            schedule_match_expiry(match_id, deadline)
            counts["scheduled"] += 1

    logger.info(
        "Expiry recovery: %d group tips finalized, %d matches expired, %d timers scheduled, %d failed",
        counts["finalized"], counts["expired"], counts["scheduled"], counts["failed"],
    )
    return counts
