"""Chat-platform users, their game counters and win streaks."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from tipledger.database import Base
from tipledger.models.common import utcnow


class User(Base):
    """One row per chat-platform user id.  The house account is a row too."""

    __tablename__ = "users"

    id = Column(String(64), primary_key=True)  # platform user id, or settings.house_user_id
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    ties = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class UserStreak(Base):
    """Best-effort win streak bookkeeping, updated after a match commits."""

    __tablename__ = "user_streaks"

    user_id = Column(String(64), ForeignKey("users.id"), primary_key=True)
    current_wins = Column(Integer, nullable=False, default=0)
    longest_wins = Column(Integer, nullable=False, default=0)
    last_game_at = Column(DateTime(timezone=True), nullable=True)
