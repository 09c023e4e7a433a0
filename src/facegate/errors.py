"""Failure kinds raised by the face verification engine.

The exception type is the error kind:

* ``ModelLoadError``: the model artifact is missing, corrupt, or its shapes
  cannot be read. Fatal to the engine instance; build a new engine to retry.
* ``EngineNotReadyError``: inference was requested before a successful load
  or after release. A call-order bug on the caller's side.
* ``InferenceError``: the forward pass failed for this input (wrong tensor
  size, runtime failure). Retrying the identical input will fail again.
* ``DimensionMismatchError``: two embeddings of different lengths were
  compared, usually an enrollment/verification model version skew.
* ``InvalidEmbeddingError``: an embedding is not a flat vector of finite
  numbers (NaN, infinity, or nested arrays).
* ``InvalidImageError``: uploaded bytes could not be decoded into a face image.

A degenerate (all-zero) embedding is not an error: it normalizes to itself
and scores 0 against everything.
"""

from __future__ import annotations

from typing import Any


class FaceVerificationError(Exception):
    """Base exception for face verification operations."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class ModelLoadError(FaceVerificationError):
    """Raised when the model artifact cannot be loaded."""


class EngineNotReadyError(FaceVerificationError):
    """Raised when inference is requested from an engine without a loaded model."""


class InferenceError(FaceVerificationError):
    """Raised when a forward pass fails for the given input."""


class DimensionMismatchError(FaceVerificationError):
    """Raised when embeddings of different lengths are compared."""


class InvalidEmbeddingError(FaceVerificationError, ValueError):
    """Raised when an embedding is not a one-dimensional vector of finite numbers."""


class InvalidImageError(FaceVerificationError):
    """Raised when an image cannot be decoded or exceeds size limits."""
