"""Token registry: reference data plus atomic/human unit conversion.

Everything past this module speaks integer atomic units.  Human decimals
(``"12.5"``) are converted here on the way in and formatted here on the
way out.
"""

from __future__ import annotations

import logging
from decimal import ROUND_DOWN, Decimal, InvalidOperation

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.config import settings
from tipledger.core.exceptions import InvalidAmountError, InvalidStateError, NotFoundError
from tipledger.models.token import Token

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Unit conversion
# ---------------------------------------------------------------------------

def to_atomic(amount: str | int | Decimal, decimals: int) -> int:
    """Convert a human amount to atomic units, truncating below the minimum unit."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise InvalidAmountError(f"Not a number: {amount!r}")
    if not value.is_finite():
        raise InvalidAmountError(f"Not a finite amount: {amount!r}")
    return int((value * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


def from_atomic(atomic: int, decimals: int) -> Decimal:
    return Decimal(int(atomic)).scaleb(-decimals)


def format_amount(atomic: int, decimals: int, symbol: str | None = None) -> str:
    """Two decimals, trailing zeros stripped: ``12.50`` -> ``12.5``, ``3.00`` -> ``3``."""
    value = from_atomic(atomic, decimals).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
    text = f"{value:f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return f"{text} {symbol}" if symbol else text


def bps_of(amount: int, bps: int) -> int:
    """floor(amount * bps / 10000)."""
    return (int(amount) * int(bps)) // 10_000


# ---------------------------------------------------------------------------
# Effective policy (token override -> settings default)
# ---------------------------------------------------------------------------

def tip_fee_bps(token: Token) -> int:
    return token.tip_fee_bps if token.tip_fee_bps is not None else settings.tip_fee_bps


def house_fee_bps(token: Token) -> int:
    return token.house_fee_bps if token.house_fee_bps is not None else settings.house_fee_bps


def withdraw_limits(token: Token) -> dict:
    """Effective withdrawal limits for a token, all in atomic units."""
    def _pick(override, default: str) -> int:
        if override is not None:
            return int(override)
        return to_atomic(default, token.decimals)

    return {
        "min": _pick(token.min_withdraw_atomic, settings.min_withdraw),
        "max_per_tx": _pick(token.withdraw_max_per_tx_atomic, settings.withdraw_max_per_tx),
        "daily_cap": _pick(token.withdraw_daily_cap_atomic, settings.withdraw_daily_cap),
    }


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def get_token(db: AsyncSession, token_id: int, *, require_active: bool = False) -> Token:
    token = await db.get(Token, token_id)
    if token is None:
        raise NotFoundError("Token", token_id)
    if require_active and not token.active:
        raise InvalidStateError(f"Token {token.symbol} is not active")
    return token


async def get_token_by_symbol(db: AsyncSession, symbol: str) -> Token | None:
    """Active token with this symbol (case-insensitive), if any."""
    result = await db.execute(
        select(Token)
        .where(func.upper(Token.symbol) == symbol.upper(), Token.active.is_(True))
        .order_by(Token.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_token_by_address(db: AsyncSession, address: str) -> Token | None:
    result = await db.execute(select(Token).where(Token.address == address.lower()))
    return result.scalar_one_or_none()


async def list_active_tokens(db: AsyncSession) -> list[Token]:
    result = await db.execute(
        select(Token).where(Token.active.is_(True)).order_by(Token.symbol)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

_MUTABLE_FIELDS = (
    "symbol",
    "decimals",
    "active",
    "min_deposit_atomic",
    "min_withdraw_atomic",
    "withdraw_max_per_tx_atomic",
    "withdraw_daily_cap_atomic",
    "tip_fee_bps",
    "house_fee_bps",
)


async def register_token(
    db: AsyncSession,
    *,
    address: str,
    symbol: str,
    decimals: int,
    **overrides,
) -> Token:
    """Create a token, or update the existing one with the same contract address."""
    unknown = set(overrides) - set(_MUTABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown token fields: {sorted(unknown)}")
    if not 0 <= decimals <= 36:
        raise InvalidAmountError("decimals must be between 0 and 36")
    for name in ("tip_fee_bps", "house_fee_bps"):
        bps = overrides.get(name)
        if bps is not None and not 0 <= bps <= 10_000:
            raise InvalidAmountError(f"{name} must be between 0 and 10000")

    token = await get_token_by_address(db, address)
    created = token is None
    if created:
        token = Token(address=address.lower(), symbol=symbol, decimals=decimals)
        db.add(token)
    else:
        token.symbol = symbol
        token.decimals = decimals
    for name, value in overrides.items():
        setattr(token, name, value)

    await db.commit()
    await db.refresh(token)
    logger.info(
        "%s token %s (%s, %d decimals)",
        "Registered" if created else "Updated", token.symbol, token.address, token.decimals,
    )
    return token


def token_to_dict(token: Token) -> dict:
    return {
        "id": token.id,
        "address": token.address,
        "symbol": token.symbol,
        "decimals": token.decimals,
        "active": token.active,
        "tip_fee_bps": tip_fee_bps(token),
        "house_fee_bps": house_fee_bps(token),
        "withdraw_limits": withdraw_limits(token),
    }


def parse_amount(token: Token, amount: str | int | Decimal) -> int:
    """Human amount -> positive atomic amount for ``token``."""
    atomic = to_atomic(amount, token.decimals)
    if atomic <= 0:
        raise InvalidAmountError(
            f"Amount must be at least {from_atomic(1, token.decimals):f} {token.symbol}"
            if Decimal(str(amount)) > 0
            else "Amount must be positive"
        )
    return atomic
