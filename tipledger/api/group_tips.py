from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.core.auth import get_current_client, require_admin
from tipledger.database import get_db
from tipledger.schemas.ledger import GroupTipClaimRequest, GroupTipCreateRequest
from tipledger.services import refund_service, tip_service
from tipledger.services.token_registry import get_token, parse_amount

router = APIRouter(prefix="/group-tips", tags=["group-tips"])


@router.post("", status_code=201)
async def create_group_tip(
    req: GroupTipCreateRequest,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    """Escrow a pooled gift.  Posting it to chat is the caller's job."""
    token = await get_token(db, req.token_id, require_active=True)
    return await tip_service.create_group_tip(
        db,
        req.creator_id,
        token.id,
        parse_amount(token, req.amount),
        req.duration_seconds,
        note=req.note,
        guild_id=req.guild_id,
    )


@router.get("/{group_tip_id}")
async def get_group_tip(
    group_tip_id: int,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    return await tip_service.get_group_tip(db, group_tip_id)


@router.post("/{group_tip_id}/claim")
async def claim_group_tip(
    group_tip_id: int,
    req: GroupTipClaimRequest,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    return await tip_service.claim_group_tip(db, group_tip_id, req.user_id)


@router.post("/{group_tip_id}/finalize")
async def finalize_group_tip(
    group_tip_id: int,
    force: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    _admin: dict = Depends(require_admin),
):
    return await tip_service.finalize_group_tip(db, group_tip_id, force=force)


@router.post("/{group_tip_id}/refund")
async def refund_group_tip(
    group_tip_id: int,
    db: AsyncSession = Depends(get_db),
    _admin: dict = Depends(require_admin),
):
    return await refund_service.refund_group_tip(db, group_tip_id)
