"""Balances, history and raw ledger primitives."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.core.auth import get_current_client, require_admin
from tipledger.database import get_db
from tipledger.models.ledger import TxType
from tipledger.schemas.ledger import AdjustmentRequest, TransferRequest
from tipledger.services import ledger_service, streak_service
from tipledger.services.token_registry import format_amount, get_token, parse_amount

router = APIRouter(tags=["ledger"])


@router.get("/balances/{user_id}")
async def list_balances(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    balances = await ledger_service.get_balances(db, user_id)
    for row in balances:
        row["display"] = format_amount(row["amount"], row["decimals"], row["symbol"])
    return {"user_id": user_id, "balances": balances}


@router.get("/balances/{user_id}/{token_id}")
async def get_balance(
    user_id: str,
    token_id: int,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    token = await get_token(db, token_id)
    amount = await ledger_service.get_balance(db, user_id, token.id)
    return {
        "user_id": user_id,
        "token_id": token.id,
        "amount": amount,
        "display": format_amount(amount, token.decimals, token.symbol),
    }


@router.get("/history/{user_id}")
async def get_history(
    user_id: str,
    token_id: int | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    entries, total = await ledger_service.get_history(db, user_id, token_id, page, page_size)
    return {"entries": entries, "total": total, "page": page, "page_size": page_size}


@router.get("/streaks/{user_id}")
async def get_streak(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    return await streak_service.get_streak(db, user_id)


@router.post("/ledger/transfer")
async def transfer(
    req: TransferRequest,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    token = await get_token(db, req.token_id, require_active=True)
    return await ledger_service.transfer(
        db,
        req.from_user_id,
        req.to_user_id,
        token.id,
        parse_amount(token, req.amount),
        TxType.TIP,
        guild_id=req.guild_id,
        note=req.note,
    )


@router.post("/ledger/credit")
async def credit(
    req: AdjustmentRequest,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    """Manual credit adjustment."""
    token = await get_token(db, req.token_id)
    return await ledger_service.credit(
        db, req.user_id, token.id, parse_amount(token, req.amount),
        note=req.note, metadata={"by": admin["sub"]},
    )


@router.post("/ledger/debit")
async def debit(
    req: AdjustmentRequest,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    """Manual debit adjustment."""
    token = await get_token(db, req.token_id)
    return await ledger_service.debit(
        db, req.user_id, token.id, parse_amount(token, req.amount),
        note=req.note, metadata={"by": admin["sub"]},
    )
