"""Worker-thread front end for one face verification engine.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> FaceVerificationEngine

The engine is synchronous and not safe to release under an in-flight call.
The pool runs its calls on worker threads, bounds how many run at once (one
by default), and owns teardown: ``shutdown()`` refuses new work, waits for
running calls, then releases the engine. Requests beyond the limit queue
with a 5s timeout, then get 503.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

from facegate.errors import EngineNotReadyError
from facegate.ml.preprocessing import FaceImage

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    import numpy as np
    from numpy.typing import NDArray

    from facegate.config import Settings
    from facegate.ml.engine import FaceVerificationEngine
    from facegate.ml.similarity import EmbeddingLike, MatchDecision

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Serializes an engine's inference onto worker threads."""

    def __init__(self, settings: Settings, engine: FaceVerificationEngine) -> None:
        self._engine = engine
        self._max_pixels = settings.max_image_pixels
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="face-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._closed = False
        self._lock = threading.Lock()

    @property
    def engine(self) -> FaceVerificationEngine:
        return self._engine

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    # -- Engine calls -------------------------------------------------------

    async def decode(self, image_bytes: bytes) -> FaceImage:
        """Decode an uploaded image on a worker thread."""
        return await self.run(FaceImage.from_bytes, image_bytes, self._max_pixels)

    async def enroll(self, image: FaceImage) -> NDArray[np.float32]:
        return await self.run(self._engine.enroll, image)

    async def verify(
        self,
        image: FaceImage,
        enrolled: EmbeddingLike | Sequence[EmbeddingLike],
        threshold: float | None = None,
    ) -> MatchDecision:
        return await self.run(self._engine.verify, image, enrolled, threshold)

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a synchronous function on the inference thread pool.

        Raises:
            EngineNotReadyError: If the pool has been shut down.
            TimeoutError: If no slot frees up within the timeout.
        """
        self._check_open()
        with self._lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(
                self._semaphore.acquire(),
                timeout=SEMAPHORE_TIMEOUT_SECONDS,
            )
        except TimeoutError:
            logger.warning("Inference queue full: no slot within %ss", SEMAPHORE_TIMEOUT_SECONDS)
            raise
        finally:
            with self._lock:
                self._queue_depth -= 1

        try:
            # Checked and submitted under one lock so shutdown cannot slip in between.
            with self._lock:
                if self._closed:
                    raise self._closed_error()
                future = self._executor.submit(func, *args)
                self._active_count += 1
            try:
                return await asyncio.wrap_future(future)
            finally:
                with self._lock:
                    self._active_count -= 1
        finally:
            self._semaphore.release()

    # -- Status -------------------------------------------------------------

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a slot."""
        with self._lock:
            return self._queue_depth

    # -- Teardown -----------------------------------------------------------

    def shutdown(self) -> None:
        """Refuse new calls, wait for running ones, then release the engine.

        Safe to call more than once.
        """
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=True)
        self._engine.release()
        logger.info("Inference pool drained and engine released")

    def _check_open(self) -> None:
        with self._lock:
            if self._closed:
                raise self._closed_error()

    def _closed_error(self) -> EngineNotReadyError:
        logger.warning("Inference rejected: pool is shut down")
        return EngineNotReadyError("Inference pool is shut down", details={"state": "shutdown"})
