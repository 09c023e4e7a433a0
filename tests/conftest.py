"""Shared fixtures: a deterministic stand-in for the ONNX embedding model."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from unittest.mock import patch

import numpy as np
import pytest

from facegate.config import Settings

INPUT_SIZE = 16
EMBEDDING_DIM = 192


@dataclass
class FakeNodeArg:
    name: str
    shape: list[Any]
    type: str = "tensor(float)"


@dataclass
class FakeSession:
    """Fixed random projection from the flattened input to the embedding.

    Deterministic for a given seed, so equal inputs give equal embeddings and
    unrelated random images give near-orthogonal ones.
    """

    input_shape: list[Any] = field(default_factory=lambda: [1, INPUT_SIZE, INPUT_SIZE, 3])
    output_shape: list[Any] = field(default_factory=lambda: [1, EMBEDDING_DIM])
    seed: int = 0
    calls: list[np.ndarray] = field(default_factory=list)

    def __post_init__(self) -> None:
        n_inputs = int(np.prod([d for d in self.input_shape[1:] if isinstance(d, int)]))
        n_outputs = self.output_shape[-1] if isinstance(self.output_shape[-1], int) else EMBEDDING_DIM
        rng = np.random.default_rng(self.seed)
        self.weights = rng.standard_normal((n_inputs, n_outputs)).astype(np.float32)

    def get_inputs(self) -> list[FakeNodeArg]:
        return [FakeNodeArg("input", list(self.input_shape))]

    def get_outputs(self) -> list[FakeNodeArg]:
        return [FakeNodeArg("embedding", list(self.output_shape))]

    def run(self, output_names: list[str], feeds: dict[str, np.ndarray]) -> list[np.ndarray]:
        batch = feeds["input"]
        self.calls.append(batch)
        return [batch.reshape(batch.shape[0], -1) @ self.weights]


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/facegate_test_models",
        "match_threshold": 0.7,
        "channel_order": "rgb",
        "max_concurrent": 1,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def random_face(seed: int, height: int = INPUT_SIZE, width: int = INPUT_SIZE) -> np.ndarray:
    return np.random.default_rng(seed).integers(0, 256, size=(height, width, 3), dtype=np.uint8)


@pytest.fixture()
def model_file(tmp_path: Path) -> Path:
    path = tmp_path / "mobilefacenet.onnx"
    path.write_bytes(b"onnx-model-bytes")
    return path


@pytest.fixture()
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def patched_session(fake_session: FakeSession) -> Iterator[FakeSession]:
    """Make ``InferenceSession(...)`` return ``fake_session``."""
    with patch("facegate.ml.model.InferenceSession", return_value=fake_session):
        yield fake_session
