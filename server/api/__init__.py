"""FastAPI router aggregation."""

from fastapi import APIRouter

from api.chat import router as chat_router
from api.models import router as models_router
from api.threads import router as threads_router
from api.tokens import router as tokens_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(chat_router, prefix="/chat", tags=["chat"])
api_router.include_router(tokens_router, prefix="/tokens", tags=["tokens"])
api_router.include_router(threads_router, prefix="/threads", tags=["threads"])
api_router.include_router(models_router, prefix="/models", tags=["models"])
