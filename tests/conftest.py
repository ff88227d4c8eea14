"""
Shared fixtures: synthetic images on disk and a fake inference runtime so
no test needs a real model file.
"""
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from backdrop_service.config import Settings
from backdrop_service.model_loader import ModelHandle


class FakeRunner:
    """Stands in for an inference session; emits constant logits."""

    runtime = "fake"

    def __init__(self, value: float = 10.0, fail: bool = False):
        self.value = value
        self.fail = fail
        self.calls = 0
        self.closed = False

    def run(self, tensor):
        self.calls += 1
        if self.fail:
            raise RuntimeError("boom")
        _, _, h, w = tensor.shape
        return np.full((1, 1, h, w), self.value, dtype=np.float32)

    def close(self):
        self.closed = True


def make_fake_loader(value: float = 10.0, fail_on=None):
    """Loader that builds FakeRunner handles and raises for paths named in ``fail_on``."""
    fail_on = set(fail_on or ())
    calls = []

    def loader(path: Path) -> ModelHandle:
        calls.append(path)
        if path.name in fail_on:
            raise RuntimeError(f"corrupt model {path.name}")
        return ModelHandle(session=FakeRunner(value), path=path, runtime="fake")

    loader.calls = calls
    return loader


def subject_on_background(width=200, height=200, bg=(120, 120, 120), fg=(200, 60, 160)):
    """A centred rectangle covering half of each dimension."""
    image = np.empty((height, width, 3), dtype=np.uint8)
    image[:] = bg
    image[height // 4 : height - height // 4, width // 4 : width - width // 4] = fg
    return image


def write_image(path: Path, array: np.ndarray, fmt=None) -> Path:
    mode = "RGBA" if array.ndim == 3 and array.shape[2] == 4 else "RGB"
    Image.fromarray(array, mode=mode).save(path, format=fmt)
    return path


@pytest.fixture
def settings(tmp_path):
    return Settings(
        model_path=None,
        worker_threads=2,
        row_block_size=32,
        debug_output_dir=tmp_path / "debug",
    )


@pytest.fixture
def model_file(tmp_path):
    """A 4 KB stand-in for a model file."""
    path = tmp_path / "model.onnx"
    path.write_bytes(b"\x08\x07fakeonnx" * 400)
    return path
