"""API router that aggregates all routes."""

from fastapi import APIRouter

from libmirror.api.routes import events, health, libraries, preferences, sync

api_router = APIRouter(prefix="/api")

# Include route modules
api_router.include_router(health.router)

# V1 API routes
v1_router = APIRouter(prefix="/v1")
v1_router.include_router(libraries.router)
v1_router.include_router(sync.router)
v1_router.include_router(preferences.router)
v1_router.include_router(events.router)

api_router.include_router(v1_router)
