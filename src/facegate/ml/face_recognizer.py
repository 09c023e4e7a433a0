"""Embedding generator: one forward pass of the face recognition model."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np

from facegate.errors import InferenceError
from facegate.ml.model import TensorLayout

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facegate.ml.model import ModelResource

logger = logging.getLogger(__name__)


class FaceRecognizer(Protocol):
    """Protocol for face recognition (embedding) models."""

    def generate(self, resource: ModelResource, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run the model on one preprocessed face tensor.

        Args:
            resource: Loaded model resource.
            tensor: HxWxC float32 tensor from ``preprocessing.preprocess``.

        Returns:
            Raw (unnormalized) embedding, shape (embedding_dim,).
        """
        ...


class EmbeddingGenerator:
    """Runs a ``ModelResource`` on preprocessed face tensors."""

    def generate(self, resource: ModelResource, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Return the raw embedding for ``tensor``.

        Raises:
            InferenceError: If the resource is released, the tensor has the
                wrong byte length, the runtime fails, or the output is
                malformed (wrong length, NaN or infinity).
        """
        session = resource.session
        if session is None:
            logger.warning("Inference rejected: model %s has been released", resource.source)
            raise InferenceError(
                f"Model {resource.source} has been released",
                details={"source": resource.source},
            )

        if tensor.dtype != np.float32 or tensor.nbytes != resource.input_nbytes:
            logger.warning(
                "Input tensor size mismatch: %s bytes of %s, expected %s bytes of float32",
                tensor.nbytes,
                tensor.dtype,
                resource.input_nbytes,
            )
            raise InferenceError(
                f"Input tensor is {tensor.nbytes} bytes of {tensor.dtype}, "
                f"model expects {resource.input_nbytes} bytes of float32",
                details={"expected_nbytes": resource.input_nbytes, "actual_nbytes": tensor.nbytes},
            )

        batch = np.ascontiguousarray(tensor).reshape(1, resource.height, resource.width, resource.channels)
        if resource.layout == TensorLayout.NCHW:
            batch = np.ascontiguousarray(batch.transpose(0, 3, 1, 2))

        try:
            outputs = session.run([resource.output_name], {resource.input_name: batch})
        except Exception as exc:
            logger.warning("Inference failed on %s: %s", resource.source, exc)
            raise InferenceError(f"Inference failed: {exc}", details={"source": resource.source}) from exc

        embedding = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if embedding.shape[0] != resource.embedding_dim:
            logger.warning("Model returned %s values, expected %s", embedding.shape[0], resource.embedding_dim)
            raise InferenceError(
                f"Model returned {embedding.shape[0]} values, expected {resource.embedding_dim}",
                details={"expected_dim": resource.embedding_dim, "actual_dim": int(embedding.shape[0])},
            )
        if not np.isfinite(embedding).all():
            logger.warning("Model %s returned NaN or infinite values", resource.source)
            raise InferenceError(
                "Model returned NaN or infinite values",
                details={"source": resource.source},
            )
        return embedding
