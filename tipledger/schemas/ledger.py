"""Request bodies for the ledger routes.

Amounts arrive as human decimals (``"12.5"``) and are converted to atomic
units with the token's precision at the route boundary.
"""

from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, Field

UserId = Annotated[str, Field(min_length=1, max_length=64)]
Amount = Annotated[Decimal, Field(gt=0)]


class AdjustmentRequest(BaseModel):
    user_id: UserId
    token_id: int
    amount: Amount
    note: str | None = Field(default=None, max_length=500)


class TransferRequest(BaseModel):
    from_user_id: UserId
    to_user_id: UserId
    token_id: int
    amount: Amount
    note: str | None = Field(default=None, max_length=500)
    guild_id: str | None = None


class TipRequest(TransferRequest):
    pass


class DepositRequest(BaseModel):
    user_id: UserId
    token_id: int
    amount: Amount
    source_tx: str = Field(..., min_length=1, max_length=100)
    payer: str = Field(..., min_length=1, max_length=64)


class WithdrawRequest(BaseModel):
    user_id: UserId
    token_id: int
    amount: Amount
    destination: str | None = Field(default=None, max_length=64)
    idempotency_key: str | None = Field(default=None, max_length=200)


class GroupTipCreateRequest(BaseModel):
    creator_id: UserId
    token_id: int
    amount: Amount
    duration_seconds: int = Field(..., gt=0)
    note: str | None = Field(default=None, max_length=500)
    guild_id: str | None = None


class GroupTipClaimRequest(BaseModel):
    user_id: UserId


class MatchCreateRequest(BaseModel):
    challenger_id: UserId
    token_id: int
    wager: Amount
    guild_id: str | None = None


class MatchMoveRequest(BaseModel):
    user_id: UserId
    move: Literal["penguin", "ice", "pebble"]


class MatchCancelRequest(BaseModel):
    user_id: UserId


class TokenRegisterRequest(BaseModel):
    address: str = Field(..., pattern=r"^0x[0-9a-fA-F]{40}$")
    symbol: str = Field(..., min_length=1, max_length=20)
    decimals: int = Field(..., ge=0, le=36)
    active: bool = True
    min_deposit: Decimal | None = Field(default=None, ge=0)
    min_withdraw: Decimal | None = Field(default=None, ge=0)
    withdraw_max_per_tx: Decimal | None = Field(default=None, ge=0)
    withdraw_daily_cap: Decimal | None = Field(default=None, ge=0)
    tip_fee_bps: int | None = Field(default=None, ge=0, le=10_000)
    house_fee_bps: int | None = Field(default=None, ge=0, le=10_000)
