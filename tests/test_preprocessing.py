"""Tests for face image decoding and preprocessing."""

from __future__ import annotations

import struct
import zlib

import cv2
import numpy as np
import pytest
from conftest import random_face

from facegate.errors import InvalidImageError
from facegate.ml.preprocessing import FaceImage, preprocess, rescale, tensor_nbytes


def _encode_png(rgb: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode(".png", cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR))
    assert ok
    return buffer.tobytes()


def _png_chunk(kind: bytes, data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data))


def _png_header_only(width: int, height: int) -> bytes:
    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + _png_chunk(b"IHDR", ihdr) + _png_chunk(b"IEND", b"")


class TestRescale:
    def test_endpoints(self) -> None:
        values = rescale(np.array([0, 255], dtype=np.uint8))
        assert values[0] == -1.0
        assert values[1] == pytest.approx(1.0, abs=1e-6)

    @pytest.mark.parametrize("v", [127, 128])
    def test_midpoint_is_near_zero(self, v: int) -> None:
        assert abs(float(rescale(np.array([v], dtype=np.uint8))[0])) <= 1 / 127.5

    def test_every_pixel_value_matches_formula(self) -> None:
        values = np.arange(256, dtype=np.uint8)
        expected = np.arange(256, dtype=np.float64) / 127.5 - 1.0
        np.testing.assert_allclose(rescale(values), expected, atol=1e-6)

    def test_same_input_gives_identical_bits(self) -> None:
        pixels = random_face(3)
        assert rescale(pixels).tobytes() == rescale(pixels.copy()).tobytes()


class TestPreprocess:
    @pytest.mark.parametrize(("height", "width"), [(112, 112), (240, 180), (50, 90), (1, 1)])
    def test_output_byte_length(self, height: int, width: int) -> None:
        tensor = preprocess(FaceImage(random_face(1, height, width)), width=112, height=112)
        assert tensor.dtype == np.float32
        assert tensor.shape == (112, 112, 3)
        assert tensor.flags["C_CONTIGUOUS"]
        assert tensor.nbytes == tensor_nbytes(112, 112, 3) == 112 * 112 * 3 * 4

    def test_rgb_order_is_interleaved_per_pixel(self) -> None:
        pixels = np.zeros((2, 2, 3), dtype=np.uint8)
        pixels[..., 0] = 255  # red
        tensor = preprocess(FaceImage(pixels), width=2, height=2)
        flat = tensor.reshape(-1)
        np.testing.assert_allclose(flat[:3], [1.0, -1.0, -1.0], atol=1e-6)

    def test_bgr_order_swaps_channels(self) -> None:
        pixels = np.zeros((2, 2, 3), dtype=np.uint8)
        pixels[..., 0] = 255
        tensor = preprocess(FaceImage(pixels), width=2, height=2, channel_order="bgr")
        np.testing.assert_allclose(tensor[0, 0], [-1.0, -1.0, 1.0], atol=1e-6)

    def test_input_is_not_modified(self) -> None:
        pixels = random_face(2, 40, 30)
        original = pixels.copy()
        preprocess(FaceImage(pixels), width=16, height=16)
        np.testing.assert_array_equal(pixels, original)

    def test_uniform_image_stays_uniform_after_resize(self) -> None:
        pixels = np.full((60, 45, 3), 200, dtype=np.uint8)
        tensor = preprocess(FaceImage(pixels), width=112, height=112)
        np.testing.assert_allclose(tensor, 200 / 127.5 - 1.0, atol=1e-6)


class TestFaceImage:
    def test_from_bytes_decodes_rgb(self) -> None:
        rgb = random_face(4, 20, 10)
        image = FaceImage.from_bytes(_encode_png(rgb))
        assert (image.height, image.width, image.channels) == (20, 10, 3)
        np.testing.assert_array_equal(image.pixels, rgb)

    def test_from_bytes_rejects_garbage(self) -> None:
        with pytest.raises(InvalidImageError, match="decode"):
            FaceImage.from_bytes(b"definitely not an image")

    def test_from_bytes_rejects_empty(self) -> None:
        with pytest.raises(InvalidImageError, match="empty"):
            FaceImage.from_bytes(b"")

    def test_from_bytes_enforces_pixel_limit(self) -> None:
        data = _encode_png(random_face(5, 20, 20))
        with pytest.raises(InvalidImageError, match="limit"):
            FaceImage.from_bytes(data, max_pixels=100)

    def test_pixel_limit_checked_before_decoding(self) -> None:
        # A header claiming 5000x5000 with no pixel data at all
        image = _png_header_only(5000, 5000)
        with pytest.raises(InvalidImageError, match="limit"):
            FaceImage.from_bytes(image, max_pixels=1_000_000)
        with pytest.raises(InvalidImageError, match="decode"):
            FaceImage.from_bytes(image)

    def test_rejects_wrong_channel_count(self) -> None:
        with pytest.raises(InvalidImageError, match="HxWx3"):
            FaceImage(np.zeros((8, 8, 4), dtype=np.uint8))

    def test_rejects_non_uint8(self) -> None:
        with pytest.raises(InvalidImageError, match="uint8"):
            FaceImage(np.zeros((8, 8, 3), dtype=np.float32))
