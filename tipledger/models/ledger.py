"""Per-(user, token) balances and the append-only transaction log."""

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


class TxType(str, enum.Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    TIP = "TIP"
    GROUP_TIP_CREATE = "GROUP_TIP_CREATE"
    GROUP_TIP_PAYOUT = "GROUP_TIP_PAYOUT"
    GROUP_TIP_FEE = "GROUP_TIP_FEE"
    MATCH_WAGER = "MATCH_WAGER"
    MATCH_PAYOUT = "MATCH_PAYOUT"
    MATCH_REFUND = "MATCH_REFUND"
    MATCH_RAKE = "MATCH_RAKE"
    REFUND = "REFUND"
    CREDIT_ADJUSTMENT = "CREDIT_ADJUSTMENT"
    DEBIT_ADJUSTMENT = "DEBIT_ADJUSTMENT"


class UserBalance(Base):
    """Amount of one token held by one user, in atomic units.  Never negative."""

    __tablename__ = "user_balances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    token_id = Column(Integer, ForeignKey("tokens.id"), nullable=False)
    amount = Column(AtomicAmount, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "token_id", name="uq_balance_user_token"),
        CheckConstraint("amount >= 0", name="ck_balance_nonneg"),
        Index("idx_balance_token", "token_id"),
    )


class LedgerTransaction(Base):
    """Immutable audit row.  One per settled effect; never updated or deleted."""

    __tablename__ = "ledger_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_type = Column(enum_type(TxType, length=30), nullable=False)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=True)
    counterparty_user_id = Column(String(64), ForeignKey("users.id"), nullable=True)
    token_id = Column(Integer, ForeignKey("tokens.id"), nullable=False)
    amount = Column(AtomicAmount, nullable=False)
    fee = Column(AtomicAmount, nullable=False, default=0)
    guild_id = Column(String(64), nullable=True)
    reference_type = Column(String(30), nullable=True)  # tip, group_tip, match, deposit
    reference_id = Column(String(64), nullable=True)
    idempotency_key = Column(String(200), unique=True, nullable=True)
    tx_hash = Column(String(100), nullable=True)
    note = Column(Text, nullable=True)
    metadata_json = Column(Text, nullable=False, default="{}")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_ledger_amount_nonneg"),
        CheckConstraint("fee >= 0", name="ck_ledger_fee_nonneg"),
        Index("idx_ledger_user", "user_id"),
        Index("idx_ledger_token_type", "token_id", "tx_type"),
        Index("idx_ledger_ref", "reference_type", "reference_id"),
        Index("idx_ledger_created", "created_at"),
    )
