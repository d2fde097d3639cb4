"""Direct tips, pooled group tips and their claims."""

import enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from tipledger.database import Base
from tipledger.models.common import AtomicAmount, enum_type, utcnow


class TipStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


class GroupTipStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    FINALIZED = "FINALIZED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


class ClaimStatus(str, enum.Enum):
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    REFUNDED = "REFUNDED"


class Tip(Base):
    """A completed user-to-user gift.  Reversible exactly once."""

    __tablename__ = "tips"

    id = Column(Integer, primary_key=True, autoincrement=True)
    from_user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    to_user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    token_id = Column(Integer, ForeignKey("tokens.id"), nullable=False)
    amount_atomic = Column(AtomicAmount, nullable=False)
    fee_atomic = Column(AtomicAmount, nullable=False, default=0)
    tax_atomic = Column(AtomicAmount, nullable=False, default=0)
    note = Column(Text, nullable=True)
    guild_id = Column(String(64), nullable=True)
    status = Column(enum_type(TipStatus), nullable=False, default=TipStatus.PENDING)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_atomic > 0", name="ck_tip_amount_positive"),
        Index("idx_tip_from", "from_user_id"),
        Index("idx_tip_to", "to_user_id"),
        Index("idx_tip_status", "status"),
    )


class GroupTip(Base):
    """A pooled gift split among everyone who claims before it expires."""

    __tablename__ = "group_tips"

    id = Column(Integer, primary_key=True, autoincrement=True)
    creator_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    token_id = Column(Integer, ForeignKey("tokens.id"), nullable=False)
    total_atomic = Column(AtomicAmount, nullable=False)
    tax_atomic = Column(AtomicAmount, nullable=False, default=0)
    duration_seconds = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(enum_type(GroupTipStatus), nullable=False, default=GroupTipStatus.ACTIVE)
    claim_count = Column(Integer, nullable=False, default=0)
    note = Column(Text, nullable=True)
    guild_id = Column(String(64), nullable=True)
    message_ref = Column(String(128), nullable=True)  # where the chat layer posted it
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    finalized_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("total_atomic > 0", name="ck_group_tip_total_positive"),
        Index("idx_group_tip_status_expiry", "status", "expires_at"),
        Index("idx_group_tip_creator", "creator_id"),
    )


class GroupTipClaim(Base):
    """A user's place in a group tip.  At most one per (group tip, user)."""

    __tablename__ = "group_tip_claims"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_tip_id = Column(Integer, ForeignKey("group_tips.id"), nullable=False)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    status = Column(enum_type(ClaimStatus), nullable=False, default=ClaimStatus.PENDING)
    share_atomic = Column(AtomicAmount, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("group_tip_id", "user_id", name="uq_group_tip_claim_user"),
        Index("idx_claim_group_tip", "group_tip_id"),
    )
