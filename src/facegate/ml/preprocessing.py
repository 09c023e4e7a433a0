"""Face image preprocessing for the embedding model.

Tensor contract shared with ``face_recognizer.EmbeddingGenerator``:

* shape ``(height, width, channels)``, float32, C-contiguous (row-major,
  channels interleaved per pixel);
* channel order R, G, B by default, or B, G, R when ``channel_order="bgr"``;
* each 8-bit value ``v`` becomes ``v / 127.5 - 1.0``, so 0 -> -1.0 and
  255 -> 1.0;
* ``tensor.nbytes == width * height * channels * 4``.

The generator converts this channels-last tensor to NCHW itself when the
model asks for it; callers never hand it anything else.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from facegate.errors import InvalidImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

ChannelOrder = Literal["rgb", "bgr"]

_SCALE = np.float32(127.5)
_SHIFT = np.float32(1.0)


@dataclass(frozen=True, eq=False)
class FaceImage:
    """An already-cropped face as an HxWx3 RGB uint8 pixel buffer."""

    pixels: NDArray[np.uint8]

    def __post_init__(self) -> None:
        pixels = self.pixels
        if pixels.dtype != np.uint8:
            raise InvalidImageError(f"Face image must be uint8, got {pixels.dtype}")
        if pixels.ndim != 3 or pixels.shape[2] != 3:
            raise InvalidImageError(f"Face image must be HxWx3, got shape {pixels.shape}")
        if pixels.shape[0] == 0 or pixels.shape[1] == 0:
            raise InvalidImageError("Face image is empty")

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])

    @classmethod
    def from_bytes(cls, image_bytes: bytes, max_pixels: int | None = None) -> FaceImage:
        """Decode encoded image bytes (JPEG, PNG, ...) into an RGB face image.

        Raises:
            InvalidImageError: If the bytes cannot be decoded or the image
                exceeds ``max_pixels``.
        """
        if not image_bytes:
            raise InvalidImageError("Image data is empty")

        try:
            # Only the header is read here; pixels are decoded by convert().
            with Image.open(io.BytesIO(image_bytes)) as img:
                width, height = img.size
                if max_pixels is not None and width * height > max_pixels:
                    raise InvalidImageError(
                        f"Image has {width * height} pixels, limit is {max_pixels}",
                        details={"width": width, "height": height},
                    )
                rgb = img.convert("RGB")
        except Image.DecompressionBombError as exc:
            raise InvalidImageError(f"Image exceeds the decoder pixel limit: {exc}") from exc
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise InvalidImageError("Failed to decode image") from exc

        return cls(pixels=np.asarray(rgb, dtype=np.uint8).copy())


def tensor_nbytes(width: int, height: int, channels: int = 3) -> int:
    """Byte length of a float32 tensor for the given input dimensions."""
    return width * height * channels * 4


def rescale(pixels: NDArray[np.uint8]) -> NDArray[np.float32]:
    """Map 8-bit channel values to [-1, 1] as ``v / 127.5 - 1.0`` in float32."""
    return pixels.astype(np.float32) / _SCALE - _SHIFT


def preprocess(
    image: FaceImage,
    width: int = 112,
    height: int = 112,
    channel_order: ChannelOrder = "rgb",
) -> NDArray[np.float32]:
    """Resize a face image to the model input size and rescale it.

    No cropping happens here; a non-square input is stretched to
    ``width`` x ``height``. The input image is neither modified nor kept.
    """
    pixels = image.pixels
    if image.width != width or image.height != height:
        # Bilinear filtering
        pixels = cv2.resize(pixels, (width, height), interpolation=cv2.INTER_LINEAR)

    if channel_order == "bgr":
        pixels = pixels[..., ::-1]

    return np.ascontiguousarray(rescale(pixels), dtype=np.float32)
