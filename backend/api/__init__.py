from fastapi import APIRouter

from .routes_ai_config import router as ai_config_router
from .routes_contest import router as contest_router
from .routes_disputes import router as disputes_router
from .routes_proposals import router as proposals_router
from .routes_propose import router as propose_router
from .routes_workers import router as workers_router

admin_router = APIRouter(prefix="/admin")
admin_router.include_router(proposals_router)
admin_router.include_router(disputes_router)
admin_router.include_router(ai_config_router)
admin_router.include_router(workers_router)

public_router = APIRouter()
public_router.include_router(propose_router)
public_router.include_router(contest_router)

__all__ = ["admin_router", "public_router"]
