"""FastAPI router aggregation."""

from fastapi import APIRouter

from api.auth import router as auth_router
from api.agents import router as agents_router
from api.chats import router as chats_router
from api.credits import router as credits_router
from api.health import router as health_router
from api.payments import packs_router, router as payments_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(auth_router, prefix="/auth", tags=["auth"])
api_router.include_router(agents_router, prefix="/agents", tags=["agents"])
api_router.include_router(chats_router, prefix="/chats", tags=["chats"])
api_router.include_router(credits_router, prefix="/credits", tags=["credits"])
api_router.include_router(packs_router, prefix="/message-packs", tags=["payments"])
api_router.include_router(payments_router, prefix="/payments", tags=["payments"])
api_router.include_router(health_router, prefix="/health", tags=["health"])
