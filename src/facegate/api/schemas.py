"""Pydantic request/response schemas for the facegate API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class EmbeddingResponse(BaseModel):
    """A normalized face embedding."""

    vector: list[float] = Field(description="Unit-length face embedding")
    dimension: int = Field(description="Embedding length (192 for MobileFaceNet)")
    degenerate: bool = Field(description="True when the model produced an all-zero embedding")


class CompareRequest(BaseModel):
    """Two embeddings to compare."""

    a: list[float] = Field(min_length=1)
    b: list[float] = Field(min_length=1)
    threshold: float | None = Field(default=None, description="Match threshold; server default when omitted")


class MatchResponse(BaseModel):
    """A match decision and the score that produced it."""

    is_match: bool
    similarity: float = Field(ge=-1.0, le=1.0, description="Cosine similarity")
    threshold: float


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    engine_state: str
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """The embedding model behind the engine."""

    source: str
    state: str = Field(description="Engine state: 'not_loaded', 'ready', 'load_failed', or 'released'")
    layout: str | None = None
    width: int | None = None
    height: int | None = None
    channels: int | None = None
    embedding_dim: int | None = None
    error: str | None = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
