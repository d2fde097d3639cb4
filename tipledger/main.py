import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from tipledger import database
from tipledger.config import settings
from tipledger.core.async_tasks import drain_background_tasks, expiry_scheduler
from tipledger.core.exceptions import LedgerError
from tipledger.models import *  # noqa: F403

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

APP_VERSION = "0.3.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: create tables, house account, then re-arm deadline timers
    from tipledger.services.expiry_service import restore_expiry_timers
    from tipledger.services.ledger_service import ensure_house_account

    await database.init_db()
    async with database.async_session() as db:
        await ensure_house_account(db)
        await restore_expiry_timers(db)

    yield

    # Shutdown: drop pending timers (recovery re-creates them), flush side effects
    await expiry_scheduler.shutdown()
    await drain_background_tasks(timeout_seconds=5.0)
    await database.dispose_engine()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        return response


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Tip Ledger",
        description="Multi-token custodial ledger: tips, group tips, wager matches and refunds",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_exception_handler(LedgerError, ledger_error_handler)

    from tipledger.api import API_PREFIX, API_ROUTERS

    for router in API_ROUTERS:
        app.include_router(router, prefix=API_PREFIX)

    @app.get("/")
    async def root() -> dict[str, str]:
        return {
            "name": "Tip Ledger",
            "version": APP_VERSION,
            "docs": "/docs",
            "health": f"{API_PREFIX}/health",
        }

    return app


app = create_app()
