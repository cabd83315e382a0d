from fastapi import APIRouter

from .endpoints import dashboard, engagement, health, tracking

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(tracking.router)
router.include_router(dashboard.router)
router.include_router(engagement.router)
