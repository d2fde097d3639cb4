"""Two-player wager matches (penguin / ice / pebble).

States::

    DRAFT --offer--> OFFERED --join--> LOCKED --> SETTLED
    DRAFT|OFFERED --cancel--> CANCELED        (wager refunded)
    OFFERED --deadline--> EXPIRED             (wager refunded)

The challenger's wager is escrowed at creation.  Joining is one unit of
work: the conditional OFFERED -> LOCKED flip shuts out a second joiner,
then the joiner's wager is debited, the outcome computed and paid, both
players' counters updated, and the row written SETTLED.  Any failure in
there (typically the joiner's ``InsufficientFundsError``) rolls the whole
unit back and leaves the match OFFERED.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.config import settings
from tipledger.core.async_tasks import expiry_scheduler, fire_and_forget
from tipledger.core.exceptions import (
    InvalidAmountError,
    InvalidMoveError,
    InvalidStateError,
    MatchNotAvailableError,
)
from tipledger.database import load_row, unit_of_work
from tipledger.models.common import as_utc, utcnow
from tipledger.models.ledger import TxType
from tipledger.models.match import Match, MatchResult, MatchStatus, Move
from tipledger.models.user import User
from tipledger.services import events, expiry_service, ledger_service, streak_service
from tipledger.services.token_registry import bps_of, get_token, house_fee_bps

logger = logging.getLogger(__name__)

# Each move beats exactly one other.
BEATS = {
    Move.PENGUIN: Move.ICE,
    Move.ICE: Move.PEBBLE,
    Move.PEBBLE: Move.PENGUIN,
}


# ---------------------------------------------------------------------------
# Pure game logic
# ---------------------------------------------------------------------------

def parse_move(move: str | Move) -> Move:
    try:
        return Move(move.lower() if isinstance(move, str) else move)
    except ValueError:
        raise InvalidMoveError(f"Unknown move {move!r}; pick one of penguin, ice, pebble") from None


def judge(challenger_move: Move, joiner_move: Move) -> MatchResult:
    if challenger_move == joiner_move:
        return MatchResult.TIE
    if BEATS[challenger_move] == joiner_move:
        return MatchResult.WIN_CHALLENGER
    return MatchResult.WIN_JOINER


def calc_payout(wager_atomic: int, result: MatchResult, fee_bps: int) -> dict:
    """Pot, rake and payout for a settled match, all in atomic units."""
    pot = wager_atomic * 2
    if result == MatchResult.TIE:
        return {"pot": pot, "rake": 0, "payout": 0, "refund_each": wager_atomic}
    rake = bps_of(pot, fee_bps)
    return {"pot": pot, "rake": rake, "payout": pot - rake, "refund_each": 0}


def _match_to_dict(match: Match) -> dict:
    def _iso(value):
        value = as_utc(value)
        return value.isoformat() if value else None

    return {
        "id": match.id,
        "status": match.status.value,
        "token_id": match.token_id,
        "wager_atomic": match.wager_atomic,
        "challenger_id": match.challenger_id,
        "joiner_id": match.joiner_id,
        # Moves stay hidden until the match resolves
        "challenger_move": match.challenger_move.value if match.challenger_move and match.result else None,
        "joiner_move": match.joiner_move.value if match.joiner_move else None,
        "offer_deadline": _iso(match.offer_deadline),
        "result": match.result.value if match.result else None,
        "rake_atomic": match.rake_atomic,
        "winner_user_id": match.winner_user_id,
        "guild_id": match.guild_id,
        "created_at": _iso(match.created_at),
        "settled_at": _iso(match.settled_at),
        "closed_at": _iso(match.closed_at),
    }


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def create_match(
    db: AsyncSession,
    challenger_id: str,
    token_id: int,
    wager_atomic: int,
    *,
    guild_id: str | None = None,
) -> dict:
    """Open a DRAFT match and escrow the challenger's wager."""
    if isinstance(wager_atomic, bool) or not isinstance(wager_atomic, int) or wager_atomic <= 0:
        raise InvalidAmountError("Wager must be positive")
    token = await get_token(db, token_id, require_active=True)

    async with unit_of_work(db):
        await ledger_service.ensure_user_tx(db, challenger_id)
        await ledger_service.subtract_from_balance_tx(db, challenger_id, token.id, wager_atomic)
        match = Match(
            status=MatchStatus.DRAFT,
            token_id=token.id,
            wager_atomic=wager_atomic,
            challenger_id=challenger_id,
            guild_id=guild_id,
            created_at=utcnow(),
        )
        db.add(match)
        await db.flush()
        ledger_service.record_tx(
            db,
            TxType.MATCH_WAGER,
            user_id=challenger_id,
            token_id=token.id,
            amount=wager_atomic,
            guild_id=guild_id,
            reference_type="match",
            reference_id=match.id,
        )

    logger.info("Match %s created by %s: wager %d of %s", match.id, challenger_id, wager_atomic, token.symbol)
    return _match_to_dict(match)


async def offer_match(
    db: AsyncSession,
    match_id: int,
    challenger_id: str,
    move: str | Move,
    *,
    now: datetime | None = None,
    message_ref: str | None = None,
    schedule_expiry: bool = True,
) -> dict:
    """The challenger locks a move; the match opens to opponents until the deadline."""
    move = parse_move(move)
    now = now or utcnow()
    match = await load_row(db, Match, match_id)
    if match.challenger_id != challenger_id:
        raise InvalidStateError("Only the challenger can pick the opening move")

    deadline = now + timedelta(seconds=settings.match_offer_seconds)
    async with unit_of_work(db):
        offered = await db.execute(
            update(Match)
            .where(Match.id == match_id, Match.status == MatchStatus.DRAFT)
            .values(
                status=MatchStatus.OFFERED,
                challenger_move=move,
                offer_deadline=deadline,
                message_ref=message_ref,
            )
            .execution_options(synchronize_session=False)
        )
        if offered.rowcount != 1:
            raise MatchNotAvailableError(match_id, match.status.value)
        match = await load_row(db, Match, match_id)

    if schedule_expiry:
        expiry_service.schedule_match_expiry(match_id, deadline)
    logger.info("Match %s offered, deadline %s", match_id, deadline)
    result = _match_to_dict(match)
    events.emit("match.offered", result)
    return result


async def join_match(
    db: AsyncSession,
    match_id: int,
    joiner_id: str,
    move: str | Move,
    *,
    now: datetime | None = None,
) -> dict:
    """Take the other side of an OFFERED match and settle it in one unit of work."""
    move = parse_move(move)
    now = now or utcnow()
    match = await load_row(db, Match, match_id)
    if match.status != MatchStatus.OFFERED:
        raise MatchNotAvailableError(match_id, match.status.value)
    if match.challenger_id == joiner_id:
        raise InvalidStateError("You can't join your own match")
    if match.offer_deadline is not None and as_utc(match.offer_deadline) <= now:
        closed = await expire_match(db, match_id, now=now)
        raise MatchNotAvailableError(match_id, closed["status"])

    token = await get_token(db, match.token_id)
    async with unit_of_work(db):
        await ledger_service.ensure_user_tx(db, joiner_id)
        locked = await db.execute(
            update(Match)
            .where(
                Match.id == match_id,
                Match.status == MatchStatus.OFFERED,
                Match.offer_deadline > now,
            )
            .values(status=MatchStatus.LOCKED, joiner_id=joiner_id, joiner_move=move)
            .execution_options(synchronize_session=False)
        )
        if locked.rowcount != 1:
            current = (
                await db.execute(select(Match.status).where(Match.id == match_id))
            ).scalar_one()
            raise MatchNotAvailableError(match_id, current.value)

        await ledger_service.subtract_from_balance_tx(db, joiner_id, token.id, match.wager_atomic)
        ledger_service.record_tx(
            db,
            TxType.MATCH_WAGER,
            user_id=joiner_id,
            token_id=token.id,
            amount=match.wager_atomic,
            guild_id=match.guild_id,
            reference_type="match",
            reference_id=match_id,
        )

        match = await load_row(db, Match, match_id)
        outcome = judge(match.challenger_move, move)
        payout = calc_payout(match.wager_atomic, outcome, house_fee_bps(token))
        await _settle_tx(db, match, outcome, payout, now)
        match = await load_row(db, Match, match_id)

    expiry_scheduler.cancel(expiry_service.match_key(match_id))
    logger.info(
        "Match %s settled: %s (pot %d, rake %d, winner %s)",
        match_id, outcome.value, payout["pot"], payout["rake"], match.winner_user_id,
    )
    fire_and_forget(
        streak_service.record_match_streaks(match.challenger_id, joiner_id, outcome),
        task_name=f"streaks:match:{match_id}",
    )
    result = {**_match_to_dict(match), "payout": payout}
    events.emit("match.settled", result)
    return result


async def _bump_counter(db: AsyncSession, user_id: str, column) -> None:
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values({column: column + 1})
        .execution_options(synchronize_session=False)
    )


async def _settle_tx(
    db: AsyncSession, match: Match, outcome: MatchResult, payout: dict, now: datetime
) -> None:
    challenger, joiner = match.challenger_id, match.joiner_id
    common = {"guild_id": match.guild_id, "reference_type": "match", "reference_id": match.id}
    winner = None

    if outcome == MatchResult.TIE:
        for user_id in (challenger, joiner):
            await ledger_service.add_to_balance_tx(db, user_id, match.token_id, match.wager_atomic)
            ledger_service.record_tx(
                db, TxType.MATCH_REFUND,
                user_id=user_id, token_id=match.token_id, amount=match.wager_atomic,
                metadata={"reason": "tie"}, **common,
            )
            await _bump_counter(db, user_id, User.ties)
    else:
        winner, loser = (challenger, joiner) if outcome == MatchResult.WIN_CHALLENGER else (joiner, challenger)
        await ledger_service.add_to_balance_tx(db, winner, match.token_id, payout["payout"])
        ledger_service.record_tx(
            db, TxType.MATCH_PAYOUT,
            user_id=winner, counterparty_id=loser, token_id=match.token_id,
            amount=payout["payout"], fee=payout["rake"], **common,
        )
        if payout["rake"]:
            await ledger_service.add_to_balance_tx(db, settings.house_user_id, match.token_id, payout["rake"])
            ledger_service.record_tx(
                db, TxType.MATCH_RAKE,
                user_id=settings.house_user_id, token_id=match.token_id, amount=payout["rake"], **common,
            )
        await _bump_counter(db, winner, User.wins)
        await _bump_counter(db, loser, User.losses)

    settled = await db.execute(
        update(Match)
        .where(Match.id == match.id, Match.status == MatchStatus.LOCKED)
        .values(
            status=MatchStatus.SETTLED,
            result=outcome,
            rake_atomic=payout["rake"],
            winner_user_id=winner,
            settled_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if settled.rowcount != 1:
        raise InvalidStateError(f"Match {match.id} left LOCKED state during settlement")


async def _close_tx(
    db: AsyncSession,
    match: Match,
    status: MatchStatus,
    from_statuses: tuple[MatchStatus, ...],
    now: datetime,
    *extra_conditions,
) -> bool:
    """Move to CANCELED/EXPIRED and refund the challenger.  False if someone else moved it first."""
    closed = await db.execute(
        update(Match)
        .where(Match.id == match.id, Match.status.in_(from_statuses), *extra_conditions)
        .values(status=status, closed_at=now)
        .execution_options(synchronize_session=False)
    )
    if closed.rowcount != 1:
        return False
    await ledger_service.add_to_balance_tx(db, match.challenger_id, match.token_id, match.wager_atomic)
    ledger_service.record_tx(
        db,
        TxType.MATCH_REFUND,
        user_id=match.challenger_id,
        token_id=match.token_id,
        amount=match.wager_atomic,
        guild_id=match.guild_id,
        reference_type="match",
        reference_id=match.id,
        metadata={"reason": status.value.lower()},
    )
    return True


async def cancel_match(
    db: AsyncSession, match_id: int, challenger_id: str, *, now: datetime | None = None
) -> dict:
    """Challenger withdraws a DRAFT or OFFERED match; the wager comes back."""
    now = now or utcnow()
    async with unit_of_work(db):
        match = await load_row(db, Match, match_id, lock=True)
        if match.challenger_id != challenger_id:
            raise InvalidStateError("Only the challenger can cancel this match")
        if not await _close_tx(
            db, match, MatchStatus.CANCELED, (MatchStatus.DRAFT, MatchStatus.OFFERED), now,
        ):
            current = await load_row(db, Match, match_id)
            raise MatchNotAvailableError(match_id, current.status.value)
        match = await load_row(db, Match, match_id)

    expiry_scheduler.cancel(expiry_service.match_key(match_id))
    logger.info("Match %s canceled by %s, refunded %d", match_id, challenger_id, match.wager_atomic)
    result = _match_to_dict(match)
    events.emit("match.closed", result)
    return result


async def expire_match(db: AsyncSession, match_id: int, *, now: datetime | None = None) -> dict:
    """Close an OFFERED match past its deadline.  Idempotent.

    A match that already reached CANCELED, EXPIRED or SETTLED is returned
    as-is with ``already_closed=True``.
    """
    now = now or utcnow()
    terminal = (MatchStatus.CANCELED, MatchStatus.EXPIRED, MatchStatus.SETTLED)
    async with unit_of_work(db):
        match = await load_row(db, Match, match_id, lock=True)
        if match.status in terminal:
            return {**_match_to_dict(match), "already_closed": True}
        if match.status != MatchStatus.OFFERED:
            raise InvalidStateError(f"Match {match_id} cannot expire from status {match.status.value}")
        if as_utc(match.offer_deadline) > now:
            raise InvalidStateError(f"Match {match_id} has not reached its deadline")

        if not await _close_tx(
            db, match, MatchStatus.EXPIRED, (MatchStatus.OFFERED,), now, Match.offer_deadline <= now,
        ):
            match = await load_row(db, Match, match_id)
            if match.status in terminal:
                return {**_match_to_dict(match), "already_closed": True}
            raise MatchNotAvailableError(match_id, match.status.value)
        match = await load_row(db, Match, match_id)

    expiry_scheduler.cancel(expiry_service.match_key(match_id))
    logger.info("Match %s expired, refunded %d to %s", match_id, match.wager_atomic, match.challenger_id)
    result = {**_match_to_dict(match), "already_closed": False}
    events.emit("match.closed", result)
    return result


async def get_match(db: AsyncSession, match_id: int) -> dict:
    return _match_to_dict(await load_row(db, Match, match_id))
