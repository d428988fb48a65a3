"""V1 API router -- aggregates all v1 endpoint routers under /api/v1."""

from __future__ import annotations

from fastapi import APIRouter

from src.enrollsync.api.v1 import hubspot

router = APIRouter(prefix="/api/v1")

router.include_router(hubspot.router)
