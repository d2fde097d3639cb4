from tipledger.models.token import Token
from tipledger.models.user import User, UserStreak
from tipledger.models.ledger import LedgerTransaction, TxType, UserBalance
from tipledger.models.tip import (
    ClaimStatus,
    GroupTip,
    GroupTipClaim,
    GroupTipStatus,
    Tip,
    TipStatus,
)
from tipledger.models.match import Match, MatchResult, MatchStatus, Move

__all__ = [
    "ClaimStatus",
    "GroupTip",
    "GroupTipClaim",
    "GroupTipStatus",
    "LedgerTransaction",
    "Match",
    "MatchResult",
    "MatchStatus",
    "Move",
    "Tip",
    "TipStatus",
    "Token",
    "TxType",
    "User",
    "UserBalance",
    "UserStreak",
]
