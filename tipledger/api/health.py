import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from tipledger.core.async_tasks import expiry_scheduler
from tipledger.database import get_db
from tipledger.models.ledger import LedgerTransaction
from tipledger.models.token import Token
from tipledger.models.user import User
from tipledger.schemas.common import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_VERSION = "0.3.0"


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    tokens = (await db.execute(select(func.count(Token.id)))).scalar() or 0
    users = (await db.execute(select(func.count(User.id)))).scalar() or 0
    txns = (await db.execute(select(func.count(LedgerTransaction.id)))).scalar() or 0

    return HealthResponse(
        status="healthy",
        version=_VERSION,
        tokens_count=tokens,
        users_count=users,
        transactions_count=txns,
        pending_timers=len(expiry_scheduler.pending()),
    )


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness check: verifies DB connectivity."""
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "ready", "database": "connected"}
    except Exception:
        logger.exception("Readiness check failed, database unreachable")
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "database": "unavailable"},
        )
