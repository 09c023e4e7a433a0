"""Tests for the worker-thread inference pool."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest
from conftest import EMBEDDING_DIM, FakeSession, make_settings, random_face

from facegate.errors import EngineNotReadyError
from facegate.ml.engine import EngineState, FaceVerificationEngine
from facegate.ml.inference import InferencePool
from facegate.ml.preprocessing import FaceImage


@pytest.fixture()
def engine(model_file: Path, patched_session: FakeSession) -> FaceVerificationEngine:
    engine = FaceVerificationEngine(model_file, make_settings())
    engine.load()
    return engine


@pytest.fixture()
def pool(engine: FaceVerificationEngine) -> Iterator[InferencePool]:
    pool = InferencePool(make_settings(), engine)
    yield pool
    pool.shutdown()


async def test_run_executes_off_the_event_loop(pool: InferencePool) -> None:
    caller = threading.get_ident()
    worker = await pool.run(threading.get_ident)
    assert worker != caller
    assert pool.active_count == 0
    assert pool.queue_depth == 0


async def test_errors_propagate_and_free_the_slot(pool: InferencePool) -> None:
    def fail() -> None:
        raise ValueError("bad input")

    with pytest.raises(ValueError, match="bad input"):
        await pool.run(fail)
    assert await pool.run(lambda: 42) == 42
    assert pool.active_count == 0


async def test_enroll_and_verify_through_the_pool(pool: InferencePool) -> None:
    image = FaceImage(random_face(1))
    vector = await pool.enroll(image)
    assert vector.shape == (EMBEDDING_DIM,)
    assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-5)

    decision = await pool.verify(image, vector)
    assert decision.is_match


async def test_queue_timeout_when_slot_busy(pool: InferencePool) -> None:
    started = threading.Event()
    finish = threading.Event()

    def slow() -> None:
        started.set()
        finish.wait(5)

    try:
        busy = asyncio.ensure_future(pool.run(slow))
        await asyncio.get_running_loop().run_in_executor(None, started.wait, 5)
        with (
            patch("facegate.ml.inference.SEMAPHORE_TIMEOUT_SECONDS", 0.05),
            pytest.raises(TimeoutError),
        ):
            await pool.run(lambda: None)
        assert pool.queue_depth == 0
        finish.set()
        await busy
    finally:
        finish.set()


class TestShutdown:
    async def test_run_after_shutdown_is_rejected(self, pool: InferencePool) -> None:
        pool.shutdown()
        assert pool.closed
        with pytest.raises(EngineNotReadyError, match="shut down"):
            await pool.run(lambda: None)
        with pytest.raises(EngineNotReadyError):
            await pool.enroll(FaceImage(random_face(1)))

    def test_shutdown_releases_the_engine(self, pool: InferencePool, engine: FaceVerificationEngine) -> None:
        pool.shutdown()
        assert engine.state == EngineState.RELEASED

    def test_shutdown_is_idempotent(self, pool: InferencePool, engine: FaceVerificationEngine) -> None:
        pool.shutdown()
        pool.shutdown()
        assert engine.state == EngineState.RELEASED

    async def test_shutdown_waits_for_running_call_before_release(
        self, pool: InferencePool, engine: FaceVerificationEngine
    ) -> None:
        started = threading.Event()
        finish = threading.Event()
        seen: list[EngineState] = []

        def slow() -> None:
            started.set()
            finish.wait(5)
            seen.append(engine.state)

        loop = asyncio.get_running_loop()
        busy = asyncio.ensure_future(pool.run(slow))
        await loop.run_in_executor(None, started.wait, 5)

        stopping = loop.run_in_executor(None, pool.shutdown)
        await asyncio.sleep(0.05)
        assert engine.state == EngineState.READY
        finish.set()
        await stopping
        await busy

        assert seen == [EngineState.READY]
        assert engine.state == EngineState.RELEASED
