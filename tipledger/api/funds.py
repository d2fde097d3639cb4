"""Deposit credits from the chain watcher and withdrawal debits."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.core.auth import get_current_client, require_admin
from tipledger.database import get_db
from tipledger.schemas.ledger import DepositRequest, WithdrawRequest
from tipledger.services import deposit_service
from tipledger.services.token_registry import get_token, parse_amount

router = APIRouter(tags=["funds"])


@router.post("/deposits")
async def apply_deposit(
    req: DepositRequest,
    db: AsyncSession = Depends(get_db),
    _admin: dict = Depends(require_admin),
):
    token = await get_token(db, req.token_id, require_active=True)
    return await deposit_service.apply_deposit(
        db,
        req.user_id,
        token.id,
        parse_amount(token, req.amount),
        source_tx=req.source_tx,
        payer=req.payer,
    )


@router.post("/withdrawals")
async def withdraw(
    req: WithdrawRequest,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    token = await get_token(db, req.token_id, require_active=True)
    return await deposit_service.withdraw(
        db,
        req.user_id,
        token.id,
        parse_amount(token, req.amount),
        destination=req.destination,
        idempotency_key=req.idempotency_key,
    )
