"""Two-player wager matches."""

import enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String

from tipledger.database import Base
from tipledger.models.common import AtomicAmount, enum_type, utcnow


class MatchStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    OFFERED = "OFFERED"
    LOCKED = "LOCKED"
    SETTLED = "SETTLED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"


class Move(str, enum.Enum):
    PENGUIN = "penguin"
    ICE = "ice"
    PEBBLE = "pebble"


class MatchResult(str, enum.Enum):
    TIE = "TIE"
    WIN_CHALLENGER = "WIN_CHALLENGER"
    WIN_JOINER = "WIN_JOINER"


class Match(Base):
    __tablename__ = "matches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    status = Column(enum_type(MatchStatus), nullable=False, default=MatchStatus.DRAFT)
    token_id = Column(Integer, ForeignKey("tokens.id"), nullable=False)
    wager_atomic = Column(AtomicAmount, nullable=False)

    challenger_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    challenger_move = Column(enum_type(Move, length=10), nullable=True)
    joiner_id = Column(String(64), ForeignKey("users.id"), nullable=True)
    joiner_move = Column(enum_type(Move, length=10), nullable=True)
    offer_deadline = Column(DateTime(timezone=True), nullable=True)

    result = Column(enum_type(MatchResult), nullable=True)
    rake_atomic = Column(AtomicAmount, nullable=True)
    winner_user_id = Column(String(64), ForeignKey("users.id"), nullable=True)

    guild_id = Column(String(64), nullable=True)
    message_ref = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)  # canceled / expired

    __table_args__ = (
        CheckConstraint("wager_atomic > 0", name="ck_match_wager_positive"),
        Index("idx_match_status_deadline", "status", "offer_deadline"),
        Index("idx_match_challenger", "challenger_id"),
    )
