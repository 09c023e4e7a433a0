"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from facegate.api.routes import router
from facegate.config import get_settings
from facegate.errors import (
    DimensionMismatchError,
    EngineNotReadyError,
    FaceVerificationError,
    InferenceError,
    InvalidEmbeddingError,
    InvalidImageError,
)
from facegate.ml.engine import FaceVerificationEngine
from facegate.ml.inference import InferencePool

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[FaceVerificationError], int] = {
    EngineNotReadyError: status.HTTP_503_SERVICE_UNAVAILABLE,
    InferenceError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    DimensionMismatchError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidEmbeddingError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidImageError: status.HTTP_400_BAD_REQUEST,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, release it on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting facegate (device=%s, max_concurrent=%s, threshold=%s)",
        settings.device,
        settings.max_concurrent,
        settings.match_threshold,
    )

    engine = FaceVerificationEngine.from_settings(settings)
    if not engine.try_load():
        logger.error("Face verification disabled: %s", engine.load_error)

    inference_pool = InferencePool(settings, engine)
    app.state.inference_pool = inference_pool

    logger.info("facegate ready")
    yield

    logger.info("Shutting down facegate")
    inference_pool.shutdown()
    logger.info("facegate shutdown complete")


async def _verification_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code = next(
        (code for kind, code in _ERROR_STATUS.items() if isinstance(exc, kind)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def _queue_timeout_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Inference queue is full, retry later"},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="facegate",
        description="Face verification API for attendance check-in",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(FaceVerificationError, _verification_error_handler)
    application.add_exception_handler(TimeoutError, _queue_timeout_handler)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("facegate.main:app", host=settings.host, port=settings.port)
