"""Token reference data and reconciliation (admin role)."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.core.auth import get_current_client, require_admin
from tipledger.database import get_db
from tipledger.schemas.ledger import TokenRegisterRequest
from tipledger.services import reconciliation_service, token_registry

router = APIRouter(tags=["admin"])

_AMOUNT_OVERRIDES = {
    "min_deposit": "min_deposit_atomic",
    "min_withdraw": "min_withdraw_atomic",
    "withdraw_max_per_tx": "withdraw_max_per_tx_atomic",
    "withdraw_daily_cap": "withdraw_daily_cap_atomic",
}


@router.get("/tokens")
async def list_tokens(
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    tokens = await token_registry.list_active_tokens(db)
    return {"tokens": [token_registry.token_to_dict(t) for t in tokens]}


@router.post("/tokens", status_code=201)
async def register_token(
    req: TokenRegisterRequest,
    db: AsyncSession = Depends(get_db),
    _admin: dict = Depends(require_admin),
):
    overrides = {"active": req.active, "tip_fee_bps": req.tip_fee_bps, "house_fee_bps": req.house_fee_bps}
    for field, column in _AMOUNT_OVERRIDES.items():
        value = getattr(req, field)
        if value is not None:
            overrides[column] = token_registry.to_atomic(value, req.decimals)
    token = await token_registry.register_token(
        db, address=req.address, symbol=req.symbol, decimals=req.decimals, **overrides,
    )
    return token_registry.token_to_dict(token)


@router.get("/reconciliation/{token_id}")
async def reconcile(
    token_id: int,
    db: AsyncSession = Depends(get_db),
    _admin: dict = Depends(require_admin),
):
    return await reconciliation_service.reconcile_token(db, token_id)
