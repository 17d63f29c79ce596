"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.backoffice.api.v1 import health, sync, webhooks

router = APIRouter(prefix="/v1")

router.include_router(health.router)
router.include_router(webhooks.router)
router.include_router(sync.router)
