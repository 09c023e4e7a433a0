"""Model resource: locate, load, and release the ONNX embedding model.

A ``ModelResource`` owns one ``InferenceSession`` and the shapes read from it
at load time. The shapes never change afterwards; ``release()`` drops the
session and any later use of the resource is rejected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from huggingface_hub import hf_hub_download
from huggingface_hub.utils import HfHubHTTPError
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from facegate.errors import ModelLoadError

if TYPE_CHECKING:
    from facegate.config import Settings

logger = logging.getLogger(__name__)

_RGB_CHANNELS = 3


class TensorLayout(StrEnum):
    NHWC = "NHWC"
    NCHW = "NCHW"


# ---------------------------------------------------------------------------
# Model source
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSource:
    """Where the serialized model comes from.

    Exactly one of ``path``, ``data`` or ``repo_id`` is set.
    """

    path: Path | None = None
    data: bytes | None = None
    repo_id: str | None = None
    filename: str | None = None

    @classmethod
    def from_path(cls, path: str | Path) -> ModelSource:
        return cls(path=Path(path))

    @classmethod
    def from_bytes(cls, data: bytes) -> ModelSource:
        return cls(data=bytes(data))

    @classmethod
    def from_hub(cls, repo_id: str, filename: str) -> ModelSource:
        return cls(repo_id=repo_id, filename=filename)

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelSource:
        """Build a source from settings: a local path first, then the Hub."""
        if settings.model_path:
            return cls.from_path(settings.model_path)
        if settings.model_repo_id:
            return cls.from_hub(settings.model_repo_id, settings.model_filename)
        return cls.from_path(Path(settings.models_dir) / settings.model_filename)

    def describe(self) -> str:
        if self.path is not None:
            return str(self.path)
        if self.repo_id is not None:
            return f"hf://{self.repo_id}/{self.filename}"
        return f"<{len(self.data or b'')} bytes>"


# ---------------------------------------------------------------------------
# Model resource
# ---------------------------------------------------------------------------


class ModelResource:
    """A loaded embedding model with fixed input and output shapes."""

    def __init__(
        self,
        session: InferenceSession,
        *,
        input_name: str,
        output_name: str,
        layout: TensorLayout,
        width: int,
        height: int,
        channels: int,
        embedding_dim: int,
        source: str,
    ) -> None:
        self._session: InferenceSession | None = session
        self._input_name = input_name
        self._output_name = output_name
        self._layout = layout
        self._width = width
        self._height = height
        self._channels = channels
        self._embedding_dim = embedding_dim
        self._source = source

    @property
    def input_name(self) -> str:
        return self._input_name

    @property
    def output_name(self) -> str:
        return self._output_name

    @property
    def layout(self) -> TensorLayout:
        return self._layout

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def channels(self) -> int:
        return self._channels

    @property
    def embedding_dim(self) -> int:
        return self._embedding_dim

    @property
    def source(self) -> str:
        return self._source

    @property
    def input_nbytes(self) -> int:
        """Byte length of one float32 input tensor."""
        return self._width * self._height * self._channels * 4

    @property
    def released(self) -> bool:
        return self._session is None

    @property
    def session(self) -> InferenceSession | None:
        """The live session, or ``None`` once released."""
        return self._session

    def release(self) -> None:
        """Drop the inference session. Safe to call more than once."""
        if self._session is None:
            return
        self._session = None
        logger.info("Released model %s", self._source)

    def __repr__(self) -> str:
        state = "released" if self.released else "loaded"
        return (
            f"ModelResource({self._source!r}, {self._layout} "
            f"{self._height}x{self._width}x{self._channels} -> {self._embedding_dim}, {state})"
        )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_model(source: ModelSource, settings: Settings) -> ModelResource:
    """Load the model described by ``source`` into a new ``ModelResource``.

    Raises:
        ModelLoadError: If the artifact is missing, empty, rejected by the
            runtime, or its input/output shapes cannot be determined.
    """
    description = source.describe()
    model: str | bytes = _resolve_artifact(source, settings)

    try:
        session = InferenceSession(
            model,
            sess_options=_build_session_options(settings),
            providers=_build_providers(settings),
        )
    except Exception as exc:
        raise ModelLoadError(
            f"Model {description} could not be loaded: {exc}",
            details={"source": description},
        ) from exc

    try:
        input_name, layout, height, width, channels = _read_input_shape(session, description)
        output_name, embedding_dim = _read_output_shape(session, description)
    except ModelLoadError as exc:
        logger.warning("Discarding session for %s: %s", description, exc)
        del session
        raise

    resource = ModelResource(
        session,
        input_name=input_name,
        output_name=output_name,
        layout=layout,
        width=width,
        height=height,
        channels=channels,
        embedding_dim=embedding_dim,
        source=description,
    )
    logger.info("Loaded model %r", resource)
    return resource


def _resolve_artifact(source: ModelSource, settings: Settings) -> str | bytes:
    if source.data is not None:
        if not source.data:
            raise ModelLoadError("Model byte buffer is empty", details={"source": source.describe()})
        return source.data

    if source.repo_id is not None:
        models_dir = Path(settings.models_dir)
        models_dir.mkdir(parents=True, exist_ok=True)
        try:
            path = Path(
                hf_hub_download(
                    repo_id=source.repo_id,
                    filename=source.filename or settings.model_filename,
                    local_dir=str(models_dir),
                )
            )
        except (HfHubHTTPError, OSError, ValueError) as exc:
            raise ModelLoadError(
                f"Model {source.describe()} could not be downloaded: {exc}",
                details={"source": source.describe()},
            ) from exc
        logger.info("Downloaded %s to %s", source.describe(), path)
    else:
        path = source.path  # type: ignore[assignment]

    if path is None or not path.is_file():
        raise ModelLoadError(f"Model file not found: {path}", details={"source": str(path)})
    if path.stat().st_size == 0:
        raise ModelLoadError(f"Model file is empty: {path}", details={"source": str(path)})
    return str(path)


def _static_dim(value: Any) -> int | None:
    if isinstance(value, int) and value > 0:
        return value
    return None


def _read_input_shape(session: InferenceSession, description: str) -> tuple[str, TensorLayout, int, int, int]:
    inputs = session.get_inputs()
    if len(inputs) != 1:
        raise ModelLoadError(
            f"Model {description} must declare exactly one input, found {len(inputs)}",
            details={"source": description},
        )
    shape = list(inputs[0].shape)
    if len(shape) != 4:
        raise ModelLoadError(
            f"Model {description} input must be 4-D, got {shape}",
            details={"source": description, "input_shape": shape},
        )

    dims = [_static_dim(d) for d in shape[1:]]
    if None in dims:
        raise ModelLoadError(
            f"Model {description} input shape {shape} is not fully static",
            details={"source": description, "input_shape": shape},
        )
    d1, d2, d3 = dims  # type: ignore[misc]

    # Channels-last first: MobileFaceNet exports take packed RGB pixels.
    if d3 == _RGB_CHANNELS:
        return inputs[0].name, TensorLayout.NHWC, d1, d2, d3  # type: ignore[return-value]
    if d1 == _RGB_CHANNELS:
        return inputs[0].name, TensorLayout.NCHW, d2, d3, d1  # type: ignore[return-value]
    raise ModelLoadError(
        f"Model {description} input shape {shape} has no 3-channel axis",
        details={"source": description, "input_shape": shape},
    )


def _read_output_shape(session: InferenceSession, description: str) -> tuple[str, int]:
    outputs = session.get_outputs()
    if not outputs:
        raise ModelLoadError(f"Model {description} declares no outputs", details={"source": description})
    shape = list(outputs[0].shape)
    embedding_dim = _static_dim(shape[-1]) if shape else None
    if embedding_dim is None:
        raise ModelLoadError(
            f"Model {description} output shape {shape} has no static embedding dimension",
            details={"source": description, "output_shape": shape},
        )
    return outputs[0].name, embedding_dim


def _build_providers(settings: Settings) -> list[str | tuple[str, dict[str, object]]]:
    device = settings.device
    if device == "cuda":
        return [
            (
                "CUDAExecutionProvider",
                {
                    "device_id": 0,
                    "gpu_mem_limit": settings.gpu_mem_limit,
                    "arena_extend_strategy": "kSameAsRequested",
                },
            ),
            "CPUExecutionProvider",
        ]
    if device == "openvino":
        return [
            ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
            "CPUExecutionProvider",
        ]
    return ["CPUExecutionProvider"]


def _build_session_options(settings: Settings) -> SessionOptions:
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    opts.enable_mem_pattern = True
    opts.enable_mem_reuse = True

    if settings.device == "openvino":
        # OpenVINO does its own graph optimization
        from onnxruntime import GraphOptimizationLevel

        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts
