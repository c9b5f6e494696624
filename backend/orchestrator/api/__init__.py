"""HTTP API routers."""

from fastapi import APIRouter

from orchestrator.api import demos, events, matches, servers, tournaments

api_router = APIRouter(prefix="/api")
api_router.include_router(events.router)
api_router.include_router(matches.router)
api_router.include_router(demos.router)
api_router.include_router(tournaments.router)
api_router.include_router(servers.router)

__all__ = ["api_router"]
