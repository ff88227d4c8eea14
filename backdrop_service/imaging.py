"""
Shared pixel utilities: decoding, encoding, blur/threshold primitives,
row-block parallelism and crash-safe file output.

Images are plain ``uint8`` numpy arrays (H, W, 3|4) and masks are (H, W).
Helpers never mutate their inputs; each returns a fresh buffer.
"""

from __future__ import annotations

from concurrent.futures import Executor
from io import BytesIO
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import Callable, List, Optional, Union

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import ImageDecodeError, OperationCancelled

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


def decode_image(data: bytes, mode: str = "RGB") -> np.ndarray:
    """Decode encoded bytes (JPEG/PNG/GIF/BMP) into an RGB or RGBA array."""
    try:
        image = Image.open(BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageDecodeError("Invalid image data") from exc
    return _to_array(image, mode)


def load_image(path: PathLike, mode: str = "RGB") -> np.ndarray:
    path = Path(path)
    if not path.is_file():
        raise ImageDecodeError(f"Image not found: {path}")
    try:
        with Image.open(path) as image:
            image.load()
            return _to_array(image, mode)
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageDecodeError(f"Could not read image: {path}") from exc


def _to_array(image: Image.Image, mode: str) -> np.ndarray:
    # GIFs and palette PNGs carry transparency in the palette; RGBA first keeps it.
    if image.mode in ("P", "LA") and mode == "RGBA":
        image = image.convert("RGBA")
    arr = np.asarray(image.convert(mode), dtype=np.uint8)
    if arr.shape[0] == 0 or arr.shape[1] == 0:
        raise ImageDecodeError(f"Image has zero area: {arr.shape[1]}x{arr.shape[0]}")
    return arr


def to_rgb(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return np.dstack([image, image, image])
    return np.ascontiguousarray(image[..., :3])


def encode_jpeg(image: np.ndarray, quality: int = 90) -> bytes:
    """Encode an image as an opaque RGB JPEG."""
    buf = BytesIO()
    Image.fromarray(to_rgb(image), mode="RGB").save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def encode_mask_png(mask: np.ndarray) -> bytes:
    """Encode a mask as a single-channel (L) PNG."""
    if mask.ndim != 2:
        raise ValueError(f"Expected 2D mask, got shape={mask.shape}")
    buf = BytesIO()
    Image.fromarray(np.clip(mask, 0, 255).astype(np.uint8), mode="L").save(buf, format="PNG")
    return buf.getvalue()


def resize(image: np.ndarray, width: int, height: int) -> np.ndarray:
    """Stretch to exactly width x height (no crop, no aspect preservation)."""
    if image.shape[1] == width and image.shape[0] == height:
        return image.copy()
    return cv2.resize(image, (width, height), interpolation=cv2.INTER_LINEAR)


def gaussian_blur(image: np.ndarray, sigma: float) -> np.ndarray:
    if sigma <= 0:
        return image.copy()
    return cv2.GaussianBlur(image, (0, 0), sigmaX=float(sigma), sigmaY=float(sigma))


def binary_threshold(mask: np.ndarray, threshold: float) -> np.ndarray:
    """Map values >= threshold (given on a 0..1 scale) to 255, the rest to 0."""
    cutoff = float(threshold) * 255.0
    return np.where(mask.astype(np.float32) >= cutoff, 255, 0).astype(np.uint8)


def check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled("Operation cancelled")


def map_row_blocks(
    fn: Callable[[int, int], np.ndarray],
    height: int,
    block_rows: int = 64,
    executor: Optional[Executor] = None,
    cancel_event: Optional[threading.Event] = None,
) -> np.ndarray:
    """
    Evaluate ``fn(y0, y1)`` over consecutive row ranges and stack the results.

    Each block reads shared read-only inputs and returns its own output slice,
    so blocks can run concurrently. The cancel event is checked before every
    block; a cancelled run raises OperationCancelled.
    """
    block_rows = max(1, int(block_rows))
    ranges = [(y0, min(height, y0 + block_rows)) for y0 in range(0, height, block_rows)]

    def _run(y0: int, y1: int) -> np.ndarray:
        check_cancelled(cancel_event)
        return fn(y0, y1)

    if executor is None or len(ranges) == 1:
        blocks: List[np.ndarray] = [_run(y0, y1) for y0, y1 in ranges]
    else:
        futures = [executor.submit(_run, y0, y1) for y0, y1 in ranges]
        try:
            blocks = [f.result() for f in futures]
        except BaseException:
            for f in futures:
                f.cancel()
            raise
    return np.concatenate(blocks, axis=0)


def atomic_write_bytes(path: PathLike, data: bytes) -> Path:
    """
    Write to a temporary sibling file and move it into place on success.

    A crash mid-write leaves the previous file (if any) untouched and no
    partial output behind.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    return path


def dump_debug_mask(mask: np.ndarray, debug_dir: Path, name: str) -> None:
    """Optionally write a mask for inspection when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        target = debug_dir / f"{name}.png"
        cv2.imwrite(str(target), mask)
        logger.debug("debug: wrote mask to %s", target)
    except Exception as exc:  # noqa: BLE001
        logger.warning("debug: failed to write mask %s: %s", name, exc)
