"""API router registry used by the app factory.

This keeps route module imports and inclusion order in one place so
`tipledger.main` stays focused on startup wiring.
"""

from __future__ import annotations

from fastapi import APIRouter

from . import admin, balances, funds, group_tips, health, matches, tips

API_PREFIX = "/api/v1"

API_ROUTERS: tuple[APIRouter, ...] = (
    health.router,
    balances.router,
    tips.router,
    group_tips.router,
    matches.router,
    funds.router,
    admin.router,
)
