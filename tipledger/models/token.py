"""Token registry reference data."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Index, Integer, String

from tipledger.database import Base
from tipledger.models.common import AtomicAmount, utcnow


class Token(Base):
    """A fungible token users can hold.  Admin-mutated, read-only to the engine."""

    __tablename__ = "tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String(64), unique=True, nullable=False)  # lowercased 0x...
    symbol = Column(String(20), nullable=False)
    decimals = Column(Integer, nullable=False, default=18)
    active = Column(Boolean, nullable=False, default=True)

    min_deposit_atomic = Column(AtomicAmount, nullable=False, default=0)

    # Withdrawal overrides (NULL = use settings)
    min_withdraw_atomic = Column(AtomicAmount, nullable=True)
    withdraw_max_per_tx_atomic = Column(AtomicAmount, nullable=True)
    withdraw_daily_cap_atomic = Column(AtomicAmount, nullable=True)

    # Fee overrides in basis points (NULL = use settings)
    tip_fee_bps = Column(Integer, nullable=True)
    house_fee_bps = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("decimals >= 0 AND decimals <= 36", name="ck_token_decimals_range"),
        Index("idx_token_symbol", "symbol"),
        Index("idx_token_active", "active"),
    )
