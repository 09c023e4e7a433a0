"""API route definitions."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Request, UploadFile, status
from pydantic import TypeAdapter, ValidationError

from facegate.api.middleware import get_settings_from_request, read_upload, verify_api_key
from facegate.api.schemas import (
    CompareRequest,
    EmbeddingResponse,
    ErrorResponse,
    HealthResponse,
    MatchResponse,
    ModelInfo,
)
from facegate.ml.similarity import is_degenerate

if TYPE_CHECKING:
    from facegate.ml.engine import FaceVerificationEngine
    from facegate.ml.inference import InferencePool
    from facegate.ml.preprocessing import FaceImage
    from facegate.ml.similarity import MatchDecision

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_ENROLLED_ADAPTER: TypeAdapter[list[float] | list[list[float]]] = TypeAdapter(list[float] | list[list[float]])

_INFERENCE_ERRORS = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_engine(request: Request) -> FaceVerificationEngine:
    return _get_inference_pool(request).engine


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _to_response(decision: MatchDecision) -> MatchResponse:
    return MatchResponse(is_match=decision.is_match, similarity=decision.score, threshold=decision.threshold)


def _parse_enrolled(raw: str) -> list[float] | list[list[float]]:
    try:
        enrolled = _ENROLLED_ADAPTER.validate_python(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="'enrolled' must be a JSON array of numbers or of number arrays",
        ) from exc
    if not enrolled:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="'enrolled' must contain at least one embedding",
        )
    return enrolled


async def _load_face(request: Request, file: UploadFile) -> FaceImage:
    settings = get_settings_from_request(request)
    data = await read_upload(file, settings.max_file_size)
    return await _get_inference_pool(request).decode(data)


@router.post(
    "/embed",
    response_model=EmbeddingResponse,
    responses=_INFERENCE_ERRORS,
    summary="Generate a face embedding",
)
async def embed_face(request: Request, file: UploadFile) -> EmbeddingResponse:
    """Return the normalized embedding of an uploaded, already-cropped face."""
    image = await _load_face(request, file)
    vector = await _get_inference_pool(request).enroll(image)
    return EmbeddingResponse(
        vector=vector.tolist(),
        dimension=int(vector.shape[0]),
        degenerate=is_degenerate(vector),
    )


@router.post(
    "/verify",
    response_model=MatchResponse,
    responses=_INFERENCE_ERRORS,
    summary="Verify a face against enrolled embeddings",
)
async def verify_face(
    request: Request,
    file: UploadFile,
    enrolled: Annotated[str, Form(description="JSON embedding, or JSON array of embeddings")],
    threshold: Annotated[float | None, Form()] = None,
) -> MatchResponse:
    """Match an uploaded face against one or more enrolled embeddings."""
    references = _parse_enrolled(enrolled)
    image = await _load_face(request, file)
    decision = await _get_inference_pool(request).verify(image, references, threshold)
    return _to_response(decision)


@router.post(
    "/compare",
    response_model=MatchResponse,
    responses={status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse}},
    summary="Compare two embeddings",
)
async def compare_embeddings(request: Request, body: CompareRequest) -> MatchResponse:
    """Score two stored embeddings against each other. No model is needed."""
    return _to_response(_get_engine(request).compare(body.a, body.b, body.threshold))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_settings_from_request(request)
    engine = _get_engine(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok" if engine.is_ready else "degraded",
        gpu=settings.device == "cuda",
        engine_state=str(engine.state),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelInfo,
    summary="Describe the embedding model",
)
async def model_info(request: Request) -> ModelInfo:
    """Return the model source, engine state, and model shapes once loaded."""
    return ModelInfo(**_get_engine(request).model_info())
