"""
Tests for decode/encode helpers, row-block execution and atomic writes.
"""
from concurrent.futures import ThreadPoolExecutor
from io import BytesIO
import os
import threading

import numpy as np
import pytest
from PIL import Image

from backdrop_service import imaging
from backdrop_service.errors import ImageDecodeError, OperationCancelled


def test_decode_rejects_garbage():
    with pytest.raises(ImageDecodeError):
        imaging.decode_image(b"definitely not an image")


def test_decode_is_value_error_for_callers():
    with pytest.raises(ValueError):
        imaging.decode_image(b"")


def test_decode_gif_to_rgb():
    buf = BytesIO()
    Image.new("P", (12, 8)).save(buf, format="GIF")
    assert imaging.decode_image(buf.getvalue()).shape == (8, 12, 3)


def test_mask_png_is_single_channel():
    mask = np.zeros((10, 20), dtype=np.uint8)
    mask[:, 10:] = 255

    with Image.open(BytesIO(imaging.encode_mask_png(mask))) as decoded:
        assert decoded.mode == "L"
        assert decoded.size == (20, 10)


def test_binary_threshold_scale():
    mask = np.array([[0, 127, 128, 255]], dtype=np.uint8)
    np.testing.assert_array_equal(imaging.binary_threshold(mask, 0.5), [[0, 0, 255, 255]])


def test_row_blocks_reassemble_in_order():
    def fill(y0, y1):
        return np.arange(y0, y1)[:, None].repeat(3, axis=1)

    with ThreadPoolExecutor(max_workers=4) as pool:
        out = imaging.map_row_blocks(fill, 37, block_rows=5, executor=pool)

    np.testing.assert_array_equal(out[:, 0], np.arange(37))


def test_row_blocks_honor_cancellation():
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(OperationCancelled):
        imaging.map_row_blocks(lambda y0, y1: np.zeros((y1 - y0, 1)), 10, cancel_event=cancel)


def test_atomic_write_replaces_file(tmp_path):
    target = tmp_path / "out" / "result.jpg"

    imaging.atomic_write_bytes(target, b"first")
    imaging.atomic_write_bytes(target, b"second")

    assert target.read_bytes() == b"second"
    assert os.listdir(target.parent) == ["result.jpg"]


def test_atomic_write_failure_keeps_previous_file(tmp_path, monkeypatch):
    target = tmp_path / "result.jpg"
    target.write_bytes(b"previous")

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(imaging.os, "replace", broken_replace)
    with pytest.raises(OSError):
        imaging.atomic_write_bytes(target, b"new")

    assert target.read_bytes() == b"previous"
    assert os.listdir(tmp_path) == ["result.jpg"]
