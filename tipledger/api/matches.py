from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.core.auth import get_current_client
from tipledger.database import get_db
from tipledger.schemas.ledger import MatchCancelRequest, MatchCreateRequest, MatchMoveRequest
from tipledger.services import match_service
from tipledger.services.token_registry import get_token, parse_amount

router = APIRouter(prefix="/matches", tags=["matches"])


@router.post("", status_code=201)
async def create_match(
    req: MatchCreateRequest,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    token = await get_token(db, req.token_id, require_active=True)
    return await match_service.create_match(
        db, req.challenger_id, token.id, parse_amount(token, req.wager), guild_id=req.guild_id,
    )


@router.get("/{match_id}")
async def get_match(
    match_id: int,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    return await match_service.get_match(db, match_id)


@router.post("/{match_id}/offer")
async def offer_match(
    match_id: int,
    req: MatchMoveRequest,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    return await match_service.offer_match(db, match_id, req.user_id, req.move)


@router.post("/{match_id}/join")
async def join_match(
    match_id: int,
    req: MatchMoveRequest,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    return await match_service.join_match(db, match_id, req.user_id, req.move)


@router.post("/{match_id}/cancel")
async def cancel_match(
    match_id: int,
    req: MatchCancelRequest,
    db: AsyncSession = Depends(get_db),
    _client: dict = Depends(get_current_client),
):
    return await match_service.cancel_match(db, match_id, req.user_id)
