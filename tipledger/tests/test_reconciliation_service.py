"""Per-token conservation across balances, house and escrow."""

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.models.ledger import UserBalance
from tipledger.services import deposit_service, match_service, tip_service
from tipledger.services.reconciliation_service import reconcile_token

UNIT = 10**6


async def test_clean_ledger_reconciles(db: AsyncSession, pengu):
    report = await reconcile_token(db, pengu.id)
    assert report["ok"] is True
    assert report["expected"] == 0


async def test_reconciles_after_mixed_activity(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 100 * UNIT)
    await fund("bob", pengu, 50 * UNIT)
    await tip_service.send_tip(db, "alice", "bob", pengu.id, 10 * UNIT)
    gt = await tip_service.create_group_tip(db, "alice", pengu.id, 20 * UNIT, 60, schedule_expiry=False)
    await match_service.create_match(db, "bob", pengu.id, 5 * UNIT)
    settled = await match_service.create_match(db, "bob", pengu.id, 3 * UNIT)
    await match_service.offer_match(db, settled["id"], "bob", "ice", schedule_expiry=False)
    await match_service.join_match(db, settled["id"], "alice", "pebble")
    await deposit_service.withdraw(db, "alice", pengu.id, 50 * UNIT)

    report = await reconcile_token(db, pengu.id)

    assert report["ok"] is True, report
    assert report["deposits"] == 150 * UNIT
    assert report["withdrawals"] == 50 * UNIT
    assert report["escrow"] == {
        "group_tips": gt["total_atomic"] + gt["tax_atomic"],
        "matches": 5 * UNIT,
    }
    assert report["difference"] == 0


async def test_detects_a_tampered_balance(db: AsyncSession, pengu, fund):
    await fund("alice", pengu, 10 * UNIT)
    await db.execute(
        update(UserBalance)
        .where(UserBalance.user_id == "alice", UserBalance.token_id == pengu.id)
        .values(amount=UserBalance.amount + 1)
    )
    await db.commit()

    report = await reconcile_token(db, pengu.id)

    assert report["ok"] is False
    assert report["difference"] == 1


async def test_reconciles_exactly_with_18_decimals(db: AsyncSession, wei, fund):
    await fund("alice", wei, 123456789123456789123)
    await fund("bob", wei, 1)
    await tip_service.send_tip(db, "alice", "bob", wei.id, 10**18 + 7)
    await tip_service.create_group_tip(db, "bob", wei.id, 10**17 + 3, 60, schedule_expiry=False)

    report = await reconcile_token(db, wei.id)

    assert report["deposits"] == 123456789123456789124
    assert report["ok"] is True, report
    assert report["difference"] == 0
