"""Win streaks and streak milestones.

Runs after a match has settled, in its own session.  A failure here is
logged by the caller's background task and never touches the settlement.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from tipledger import database
from tipledger.models.common import as_utc, utcnow
from tipledger.models.match import MatchResult
from tipledger.models.user import UserStreak
from tipledger.services.ledger_service import ensure_user_tx

logger = logging.getLogger(__name__)

STREAK_MILESTONES = (3, 5, 10, 15, 25, 50, 100)
STREAK_WINDOW = timedelta(hours=24)


async def update_streak(
    db: AsyncSession, user_id: str, won: bool, *, now: datetime | None = None
) -> dict:
    """Extend or reset one user's streak.  Commits."""
    now = now or utcnow()
    await ensure_user_tx(db, user_id)
    streak = await db.get(UserStreak, user_id, populate_existing=True)
    if streak is None:
        streak = UserStreak(user_id=user_id, current_wins=0, longest_wins=0, last_game_at=None)
        db.add(streak)

    previous = streak.current_wins
    if won:
        last = as_utc(streak.last_game_at)
        if last is not None and now - last > STREAK_WINDOW:
            streak.current_wins = 1
        else:
            streak.current_wins = previous + 1
        streak.longest_wins = max(streak.longest_wins, streak.current_wins)
    else:
        streak.current_wins = 0
    streak.last_game_at = now
    await db.commit()

    achievement = None
    if won and streak.current_wins > previous and streak.current_wins in STREAK_MILESTONES:
        achievement = f"{streak.current_wins} Win Streak!"
        logger.info("User %s reached a %d win streak", user_id, streak.current_wins)

    return {
        "user_id": user_id,
        "current_wins": streak.current_wins,
        "longest_wins": streak.longest_wins,
        "achievement": achievement,
    }


async def get_streak(db: AsyncSession, user_id: str) -> dict:
    streak = await db.get(UserStreak, user_id)
    if streak is None:
        return {"user_id": user_id, "current_wins": 0, "longest_wins": 0, "last_game_at": None}
    last = as_utc(streak.last_game_at)
    return {
        "user_id": user_id,
        "current_wins": streak.current_wins,
        "longest_wins": streak.longest_wins,
        "last_game_at": last.isoformat() if last else None,
    }


async def record_match_streaks(
    challenger_id: str, joiner_id: str, result: MatchResult
) -> list[dict]:
    """Post-settlement hook.  Ties leave streaks alone."""
    if result == MatchResult.TIE:
        return []
    winner, loser = (
        (challenger_id, joiner_id) if result == MatchResult.WIN_CHALLENGER else (joiner_id, challenger_id)
    )
    async with database.async_session() as db:
        return [
            await update_streak(db, winner, True),
            await update_streak(db, loser, False),
        ]
