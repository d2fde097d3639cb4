from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.core.auth import get_current_client, require_admin
from tipledger.database import get_db
from tipledger.schemas.ledger import TipRequest
from tipledger.services import refund_service, tip_service
from tipledger.services.token_registry import get_token, parse_amount

router = APIRouter(prefix="/tips", tags=["tips"])


@router.post("", status_code=201)
async def send_tip(
    req: TipRequest,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    token = await get_token(db, req.token_id, require_active=True)
    return await tip_service.send_tip(
        db,
        req.from_user_id,
        req.to_user_id,
        token.id,
        parse_amount(token, req.amount),
        note=req.note,
        guild_id=req.guild_id,
    )


@router.get("/{tip_id}")
async def get_tip(
    tip_id: int,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    return await tip_service.get_tip(db, tip_id)


@router.post("/{tip_id}/refund")
async def refund_tip(
    tip_id: int,
    db: AsyncSession = Depends(get_db),
    _admin: dict = Depends(require_admin),
):
    """Reverse a tip.  Repeating the call returns the original refund."""
    return await refund_service.refund_tip(db, tip_id)
