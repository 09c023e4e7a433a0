"""facegate: on-device style face verification for attendance check-in."""

from facegate.errors import (
    DimensionMismatchError,
    EngineNotReadyError,
    FaceVerificationError,
    InferenceError,
    InvalidEmbeddingError,
    InvalidImageError,
    ModelLoadError,
)
from facegate.ml.engine import EngineState, FaceVerificationEngine
from facegate.ml.model import ModelSource
from facegate.ml.preprocessing import FaceImage
from facegate.ml.similarity import MatchDecision, decide, normalize, similarity

__version__ = "0.1.0"

__all__ = [
    "DimensionMismatchError",
    "EngineNotReadyError",
    "EngineState",
    "FaceImage",
    "FaceVerificationEngine",
    "FaceVerificationError",
    "InferenceError",
    "InvalidEmbeddingError",
    "InvalidImageError",
    "MatchDecision",
    "ModelLoadError",
    "ModelSource",
    "decide",
    "normalize",
    "similarity",
]
