"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import sys
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

# Ensure server/ is on sys.path for absolute imports
_server_dir = str(Path(__file__).resolve().parent)
if _server_dir not in sys.path:  # pragma: no cover
    sys.path.insert(0, _server_dir)

try:
    __version__ = (Path(__file__).resolve().parent.parent / "VERSION").read_text().strip()
except OSError:  # pragma: no cover
    __version__ = "0.0.0-dev"

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import api_router
from config import settings
from database import Base, engine
from logging_config import request_id_var, user_id_var
from services.errors import ChatError, ErrorKind

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure unified logging before anything else
    from logging_config import setup_logging
    setup_logging("Server")

    # Startup: create tables if they don't exist
    import models  # noqa: F401 — register all models with Base
    Base.metadata.create_all(bind=engine)

    from services.cache import create_response_cache
    from services.cleanup import cleanup_loop

    app.state.response_cache = create_response_cache()
    logger.info("Response cache backend: %s", settings.RESPONSE_CACHE_BACKEND)

    cleanup_task = asyncio.create_task(cleanup_loop(app.state.response_cache))
    try:
        yield
    finally:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass


app = FastAPI(title="Chat API", version=__version__, lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.CORS_ALLOW_ALL_ORIGINS else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
    request_id_token = request_id_var.set(request_id)
    user_id_token = user_id_var.set("")
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(request_id_token)
        user_id_var.reset(user_id_token)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    if exc.kind.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.kind.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    body = ChatError(ErrorKind.BAD_REQUEST, "Invalid request", {"errors": errors}).to_dict()
    return JSONResponse(status_code=400, content=body)


@app.get("/health")
def health():
    return {"status": "ok", "version": __version__}


# API routes
app.include_router(api_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True, log_config=None)
