"""Deposit de-duplication and withdrawal policy."""

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.core.exceptions import InsufficientFundsError, InvalidStateError, PolicyViolationError
from tipledger.models.common import utcnow
from tipledger.services import deposit_service, ledger_service

UNIT = 10**6


# ---------------------------------------------------------------------------
# Deposits
# ---------------------------------------------------------------------------

async def test_deposit_credits_once(db: AsyncSession, pengu):
    first = await deposit_service.apply_deposit(
        db, "alice", pengu.id, 7 * UNIT, source_tx="0xABC", payer="0xPayer",
    )
    replay = await deposit_service.apply_deposit(
        db, "alice", pengu.id, 7 * UNIT, source_tx="0xabc", payer="0xpayer",
    )

    assert first["credited"] is True
    assert replay == {"credited": False, "duplicate": True, "transaction_id": first["transaction_id"]}
    assert await ledger_service.get_balance(db, "alice", pengu.id) == 7 * UNIT


async def test_same_tx_different_amount_is_a_new_deposit(db: AsyncSession, pengu):
    await deposit_service.apply_deposit(db, "alice", pengu.id, UNIT, source_tx="0x1", payer="0xp")
    await deposit_service.apply_deposit(db, "alice", pengu.id, 2 * UNIT, source_tx="0x1", payer="0xp")
    assert await ledger_service.get_balance(db, "alice", pengu.id) == 3 * UNIT


async def test_deposit_below_minimum_skipped(db: AsyncSession, make_token):
    token = await make_token("BIG", min_deposit_atomic=5 * UNIT)
    result = await deposit_service.apply_deposit(
        db, "alice", token.id, UNIT, source_tx="0x2", payer="0xp",
    )
    assert result["credited"] is False
    assert result["skipped"] == "below_minimum"
    assert await ledger_service.get_balance(db, "alice", token.id) == 0


async def test_deposit_inactive_token_rejected(db: AsyncSession, make_token):
    token = await make_token("DEAD", active=False)
    with pytest.raises(InvalidStateError):
        await deposit_service.apply_deposit(db, "alice", token.id, UNIT, source_tx="0x3", payer="0xp")


def test_deposit_key_format():
    assert deposit_service.deposit_key("0xAA", "0xBB", 5) == "0xaa:0xbb:5"


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------

async def test_withdraw_within_limits(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 200 * UNIT)
    result = await deposit_service.withdraw(
        db, "alice", pengu.id, 50 * UNIT, destination="0xdest",
    )
    assert result["debited"] is True
    assert result["balance"] == 150 * UNIT


@pytest.mark.parametrize("amount", [49 * UNIT, 51 * UNIT])
async def test_withdraw_outside_per_tx_limits(db: AsyncSession, pengu, fund, amount):
    await fund("alice", pengu, 200 * UNIT)
    with pytest.raises(PolicyViolationError):
        await deposit_service.withdraw(db, "alice", pengu.id, amount)
    assert await ledger_service.get_balance(db, "alice", pengu.id) == 200 * UNIT


async def test_withdraw_daily_cap(db: AsyncSession, make_token, fund):
    token = await make_token(
        "CAP",
        min_withdraw_atomic=UNIT,
        withdraw_max_per_tx_atomic=10 * UNIT,
        withdraw_daily_cap_atomic=25 * UNIT,
    )
    await fund("alice", token, 100 * UNIT)
    await deposit_service.withdraw(db, "alice", token.id, 10 * UNIT)
    await deposit_service.withdraw(db, "alice", token.id, 10 * UNIT)

    with pytest.raises(PolicyViolationError) as exc_info:
        await deposit_service.withdraw(db, "alice", token.id, 10 * UNIT)
    assert "left today" in exc_info.value.message

    await deposit_service.withdraw(db, "alice", token.id, 5 * UNIT)
    assert await ledger_service.get_balance(db, "alice", token.id) == 75 * UNIT


async def test_daily_cap_window_rolls(db: AsyncSession, make_token, fund):
    token = await make_token(
        "ROLL", min_withdraw_atomic=UNIT, withdraw_max_per_tx_atomic=10 * UNIT,
        withdraw_daily_cap_atomic=10 * UNIT,
    )
    await fund("alice", token, 100 * UNIT)
    await deposit_service.withdraw(db, "alice", token.id, 10 * UNIT)

    tomorrow = utcnow() + timedelta(hours=25)
    policy = await deposit_service.check_withdrawal_policy(db, "alice", token, 10 * UNIT, now=tomorrow)
    assert policy["used_today"] == 0


async def test_withdraw_insufficient(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 10 * UNIT)
    with pytest.raises(InsufficientFundsError):
        await deposit_service.withdraw(db, "alice", pengu.id, 50 * UNIT)


async def test_withdraw_idempotency_key(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 200 * UNIT)
    first = await deposit_service.withdraw(db, "alice", pengu.id, 50 * UNIT, idempotency_key="w-1")
    again = await deposit_service.withdraw(db, "alice", pengu.id, 50 * UNIT, idempotency_key="w-1")

    assert again["duplicate"] is True
    assert again["transaction_id"] == first["transaction_id"]
    assert await ledger_service.get_balance(db, "alice", pengu.id) == 150 * UNIT


async def test_daily_cap_is_exact_for_18_decimals(db: AsyncSession, make_token, fund):
    wei = 10**18
    token = await make_token(
        "BIGCAP", 18,
        min_withdraw_atomic=1,
        withdraw_max_per_tx_atomic=100 * wei,
        withdraw_daily_cap_atomic=10 * wei + 1,
    )
    await fund("alice", token, 20 * wei)
    await deposit_service.withdraw(db, "alice", token.id, 10 * wei)
    await deposit_service.withdraw(db, "alice", token.id, 1)

    with pytest.raises(PolicyViolationError):
        await deposit_service.withdraw(db, "alice", token.id, 1)
    assert await deposit_service.withdrawn_since(
        db, "alice", token.id, utcnow() - timedelta(hours=1),
    ) == 10 * wei + 1
    assert await ledger_service.get_balance(db, "alice", token.id) == 10 * wei - 1
