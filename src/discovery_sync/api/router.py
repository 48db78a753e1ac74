"""Routers aggregating all endpoints."""

from fastapi import APIRouter

from discovery_sync.api import routes

# Probes and metrics live at the root for orchestrators and scrapers
probes = routes.router

router = APIRouter(prefix="/v1")
router.include_router(routes.sync_router, tags=["sync"])
router.include_router(routes.categories_router, tags=["categories"])
