"""Face verification engine: enroll and verify faces against a loaded model.

Lifecycle::

    not_loaded --load ok--> ready --release--> released
        |
        +--load fails--> load_failed

Only ``ready`` accepts inference; the other states are the unready side and
reject ``embed``/``enroll``/``verify`` with ``EngineNotReadyError``. There is
no way back to ``ready``: a failed or released engine is replaced, not
reloaded. An ``InferenceError`` does not change the state.

The engine is synchronous and does no locking. Run it off any thread that
must stay responsive, keep at most one inference in flight per engine, and
release only once no calls are outstanding.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np

from facegate.config import Settings
from facegate.errors import EngineNotReadyError, ModelLoadError
from facegate.ml.face_recognizer import EmbeddingGenerator
from facegate.ml.model import ModelSource, load_model
from facegate.ml.preprocessing import FaceImage, preprocess
from facegate.ml.similarity import MatchDecision, best_match, decide, is_degenerate, normalize, similarity

if TYPE_CHECKING:
    from types import TracebackType

    from numpy.typing import NDArray

    from facegate.ml.face_recognizer import FaceRecognizer
    from facegate.ml.model import ModelResource
    from facegate.ml.similarity import EmbeddingLike

logger = logging.getLogger(__name__)


class EngineState(StrEnum):
    NOT_LOADED = "not_loaded"
    READY = "ready"
    LOAD_FAILED = "load_failed"
    RELEASED = "released"


class FaceVerificationEngine:
    """Turns face images into normalized embeddings and matches them."""

    def __init__(
        self,
        source: ModelSource | str | Path | bytes,
        settings: Settings | None = None,
        generator: FaceRecognizer | None = None,
    ) -> None:
        if isinstance(source, bytes):
            source = ModelSource.from_bytes(source)
        elif isinstance(source, (str, Path)):
            source = ModelSource.from_path(source)
        self._source = source
        self._settings = settings or Settings()
        self._generator: FaceRecognizer = generator or EmbeddingGenerator()
        self._state = EngineState.NOT_LOADED
        self._resource: ModelResource | None = None
        self._load_error: ModelLoadError | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> FaceVerificationEngine:
        return cls(ModelSource.from_settings(settings), settings)

    # -- State --------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == EngineState.READY

    @property
    def load_error(self) -> ModelLoadError | None:
        """The error from a failed load, if any."""
        return self._load_error

    @property
    def threshold(self) -> float:
        return self._settings.match_threshold

    # -- Lifecycle ----------------------------------------------------------

    def load(self) -> ModelResource:
        """Load the model. A ready engine returns its existing resource.

        Raises:
            ModelLoadError: If loading fails now or failed before.
            EngineNotReadyError: If the engine was already released.
        """
        if self._state == EngineState.READY:
            return self._resource  # type: ignore[return-value]
        if self._state == EngineState.LOAD_FAILED:
            previous = self._load_error
            raise ModelLoadError(str(previous), details=previous.details) from previous  # type: ignore[union-attr]
        if self._state == EngineState.RELEASED:
            raise EngineNotReadyError("Engine has been released; create a new engine to reload the model")

        try:
            resource = load_model(self._source, self._settings)
        except ModelLoadError as exc:
            self._state = EngineState.LOAD_FAILED
            self._load_error = exc
            logger.error("Failed to load face model %s: %s", self._source.describe(), exc)
            raise

        self._resource = resource
        self._state = EngineState.READY
        logger.info("Face verification engine ready (%s)", self._source.describe())
        return resource

    def try_load(self) -> bool:
        """Load the model, leaving the engine disabled on failure.

        Returns ``True`` when the engine is ready. The failure stays
        available via ``load_error``.
        """
        try:
            self.load()
        except (ModelLoadError, EngineNotReadyError):
            return False
        return True

    def release(self) -> None:
        """Release the model. Idempotent; a never-loaded engine is a no-op."""
        if self._resource is not None:
            self._resource.release()
            self._resource = None
            logger.info("Face verification engine released")
        if self._state in (EngineState.NOT_LOADED, EngineState.READY):
            self._state = EngineState.RELEASED

    def __enter__(self) -> FaceVerificationEngine:
        self.try_load()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()

    # -- Inference ----------------------------------------------------------

    def _require_resource(self) -> ModelResource:
        if self._state != EngineState.READY or self._resource is None:
            logger.warning("Inference rejected: engine is %s", self._state)
            error = EngineNotReadyError(
                f"Face model is not loaded (engine {self._state})",
                details={"state": str(self._state)},
            )
            if self._load_error is not None:
                raise error from self._load_error
            raise error
        return self._resource

    def embed(self, image: FaceImage | NDArray[np.uint8]) -> NDArray[np.float32]:
        """Return the normalized embedding of a cropped face image.

        Raises:
            EngineNotReadyError: If the model is not loaded.
            InferenceError: If the forward pass fails.
        """
        resource = self._require_resource()
        if not isinstance(image, FaceImage):
            image = FaceImage(pixels=np.asarray(image))

        tensor = preprocess(
            image,
            width=resource.width,
            height=resource.height,
            channel_order=self._settings.channel_order,
        )
        raw = self._generator.generate(resource, tensor)
        if is_degenerate(raw):
            logger.warning("Model produced an all-zero embedding; it will not match anything")
        return normalize(raw)

    def enroll(self, image: FaceImage | NDArray[np.uint8]) -> NDArray[np.float32]:
        """Embedding to store for an identity. Persisting it is the caller's job."""
        embedding = self.embed(image)
        logger.info("Generated enrollment embedding (%s dims)", embedding.shape[0])
        return embedding

    def verify(
        self,
        image: FaceImage | NDArray[np.uint8],
        enrolled: EmbeddingLike | Sequence[EmbeddingLike],
        threshold: float | None = None,
    ) -> MatchDecision:
        """Match a fresh face image against one or more enrolled embeddings.

        Raises:
            EngineNotReadyError: If the model is not loaded.
            InferenceError: If the forward pass fails.
            DimensionMismatchError: If an enrolled embedding has another length.
        """
        probe = self.embed(image)
        decision = best_match(probe, _as_references(enrolled), self._threshold(threshold))
        logger.debug("Face similarity: %.4f (threshold: %s)", decision.score, decision.threshold)
        return decision

    def compare(self, a: EmbeddingLike, b: EmbeddingLike, threshold: float | None = None) -> MatchDecision:
        """Match two stored embeddings. Needs no model."""
        return decide(similarity(a, b), self._threshold(threshold))

    def model_info(self) -> dict[str, Any]:
        info: dict[str, Any] = {"source": self._source.describe(), "state": str(self._state)}
        if self._resource is not None:
            info.update(
                layout=str(self._resource.layout),
                width=self._resource.width,
                height=self._resource.height,
                channels=self._resource.channels,
                embedding_dim=self._resource.embedding_dim,
            )
        if self._load_error is not None:
            info["error"] = str(self._load_error)
        return info

    def _threshold(self, threshold: float | None) -> float:
        return self._settings.match_threshold if threshold is None else threshold


def _as_references(enrolled: EmbeddingLike | Sequence[EmbeddingLike]) -> list[NDArray[np.float64]]:
    if isinstance(enrolled, np.ndarray):
        return [enrolled] if enrolled.ndim == 1 else list(enrolled)
    if len(enrolled) > 0 and np.ndim(enrolled[0]) == 0:
        return [np.asarray(enrolled, dtype=np.float64)]
    # Rows are kept separate so a length mismatch is reported, not broadcast.
    return [np.asarray(row, dtype=np.float64) for row in enrolled]
