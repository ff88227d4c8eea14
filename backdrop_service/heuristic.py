"""
Model-free subject segmentation.

Used whenever the network is unavailable. Two strategies, picked per image:

 - standard: background colors are learned from the border and corners and
   every pixel is scored by its perceptual distance to the nearest of them,
   with a bonus for pixels near the image center;
 - high-contrast (e.g. a flash-lit subject at night): Sobel edges and the
   brightness deviation from the background dominate the score.

Both strategies score "subject-ness" (0 = background, 255 = subject), are
pure functions of the input pixels, and never fail on a valid image.
"""

from __future__ import annotations

from concurrent.futures import Executor
import enum
import logging
import threading
import time
from typing import List, Optional

import cv2
import numpy as np

from .config import HeuristicTuning
from .imaging import binary_threshold, check_cancelled, gaussian_blur, map_row_blocks

logger = logging.getLogger(__name__)

# Per-channel weights for human brightness perception (ITU-R BT.601).
PERCEPTUAL_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)


class ContrastClass(str, enum.Enum):
    STANDARD = "standard"
    HIGH_CONTRAST = "high_contrast"


def luminance(pixels: np.ndarray) -> np.ndarray:
    """Perceptual brightness on a 0..1 scale for (..., 3) uint8 pixels."""
    return (pixels[..., :3].astype(np.float64) @ PERCEPTUAL_WEIGHTS) / 255.0


def color_distance(pixels: np.ndarray, color: np.ndarray) -> np.ndarray:
    """Perceptually weighted Euclidean RGB distance (0..255 scale)."""
    diff = pixels[..., :3].astype(np.float64) - np.asarray(color, dtype=np.float64)[:3]
    return np.sqrt((diff * diff) @ PERCEPTUAL_WEIGHTS)


def _edge_coords(width: int, height: int, step: int) -> np.ndarray:
    """(y, x) samples along all four edges: top/bottom pairs, then left/right pairs."""
    xs = np.arange(0, width, step)
    ys = np.arange(0, height, step)
    top_bottom = np.empty((2 * xs.size, 2), dtype=np.intp)
    top_bottom[0::2] = np.column_stack([np.zeros_like(xs), xs])
    top_bottom[1::2] = np.column_stack([np.full_like(xs, height - 1), xs])
    left_right = np.empty((2 * ys.size, 2), dtype=np.intp)
    left_right[0::2] = np.column_stack([ys, np.zeros_like(ys)])
    left_right[1::2] = np.column_stack([ys, np.full_like(ys, width - 1)])
    return np.concatenate([top_bottom, left_right], axis=0)


def _corner_coords(width: int, height: int, size: int) -> np.ndarray:
    if size <= 0:
        return np.empty((0, 2), dtype=np.intp)
    offsets = np.arange(0, size, 2)
    gx, gy = np.meshgrid(offsets, offsets, indexing="ij")
    gx, gy = gx.ravel(), gy.ravel()
    coords = np.empty((4 * gx.size, 2), dtype=np.intp)
    coords[0::4] = np.column_stack([gy, gx])
    coords[1::4] = np.column_stack([gy, width - 1 - gx])
    coords[2::4] = np.column_stack([height - 1 - gy, gx])
    coords[3::4] = np.column_stack([height - 1 - gy, width - 1 - gx])
    return coords


def _center_coords(width: int, height: int, radius: int) -> np.ndarray:
    cx, cy = width // 2, height // 2
    xs = np.arange(cx - radius, cx + radius, 2)
    ys = np.arange(cy - radius, cy + radius, 2)
    xs = xs[(xs >= 0) & (xs < width)]
    ys = ys[(ys >= 0) & (ys < height)]
    if xs.size == 0 or ys.size == 0:
        return np.array([[cy, cx]], dtype=np.intp)
    gx, gy = np.meshgrid(xs, ys, indexing="ij")
    return np.column_stack([gy.ravel(), gx.ravel()])


def _gather(image: np.ndarray, coords: np.ndarray) -> np.ndarray:
    return image[coords[:, 0], coords[:, 1], :3]


def measure_contrast(image: np.ndarray, tuning: Optional[HeuristicTuning] = None) -> float:
    """Absolute difference between mean center and mean border luminance."""
    tuning = tuning or HeuristicTuning()
    height, width = image.shape[:2]
    short = min(width, height)
    step = max(1, short // tuning.contrast_border_divisor)
    border = luminance(_gather(image, _edge_coords(width, height, step)))
    center = luminance(_gather(image, _center_coords(width, height, short // tuning.contrast_center_divisor)))
    return float(abs(center.mean() - border.mean()))


def classify_contrast(image: np.ndarray, tuning: Optional[HeuristicTuning] = None) -> ContrastClass:
    tuning = tuning or HeuristicTuning()
    if measure_contrast(image, tuning) > tuning.contrast_threshold:
        return ContrastClass.HIGH_CONTRAST
    return ContrastClass.STANDARD


def sample_background(image: np.ndarray, tuning: Optional[HeuristicTuning] = None) -> np.ndarray:
    """Border samples plus densely sampled corner squares, in a fixed order."""
    tuning = tuning or HeuristicTuning()
    height, width = image.shape[:2]
    short = min(width, height)
    step = max(1, short // tuning.palette_border_divisor)
    coords = np.concatenate(
        [
            _edge_coords(width, height, step),
            _corner_coords(width, height, short // tuning.palette_corner_divisor),
        ],
        axis=0,
    )
    return _gather(image, coords)


def find_dominant_colors(samples: np.ndarray, tolerance: float = 30.0, max_colors: int = 3) -> np.ndarray:
    """
    Greedy agglomerative clustering: each sample joins the first cluster whose
    seed color is within ``tolerance``, otherwise it seeds a new cluster.
    Returns the truncated mean colors of the largest clusters, largest first.
    """
    if samples.size == 0:
        return np.empty((0, 3), dtype=np.float64)

    pixels = samples[:, :3].astype(np.float64)
    seeds = np.empty((0, 3), dtype=np.float64)
    sums: List[np.ndarray] = []
    counts: List[int] = []
    for px in pixels:
        if seeds.shape[0]:
            diff = seeds - px
            dist = np.sqrt((diff * diff) @ PERCEPTUAL_WEIGHTS)
            hits = np.flatnonzero(dist < tolerance)
            if hits.size:
                idx = int(hits[0])
                sums[idx] += px
                counts[idx] += 1
                continue
        seeds = np.vstack([seeds, px])
        sums.append(px.copy())
        counts.append(1)

    order = sorted(range(len(counts)), key=lambda i: -counts[i])[:max_colors]
    return np.array([np.floor(sums[i] / counts[i]) for i in order], dtype=np.float64)


def _closeness(width: int, height: int, y0: int, y1: int) -> np.ndarray:
    """1 at the geometric center falling to 0 at the corners."""
    cx, cy = width / 2.0, height / 2.0
    max_dist = np.hypot(cx, cy)
    xs = np.arange(width, dtype=np.float64) - cx
    ys = np.arange(y0, y1, dtype=np.float64)[:, None] - cy
    dist = np.sqrt(xs[None, :] ** 2 + ys ** 2)
    if max_dist == 0:
        return np.ones_like(dist)
    return 1.0 - dist / max_dist


def _min_palette_distance(block: np.ndarray, palette: np.ndarray) -> np.ndarray:
    if palette.shape[0] == 0:
        return np.zeros(block.shape[:2], dtype=np.float64)
    dists = [color_distance(block, color) for color in palette]
    return np.minimum.reduce(dists)


def sobel_edge_map(image: np.ndarray) -> np.ndarray:
    """Gradient magnitude of luminance as uint8; the 1-pixel frame stays 0."""
    lum = luminance(image)
    gx = cv2.Sobel(lum, cv2.CV_64F, 1, 0, ksize=3)
    gy = cv2.Sobel(lum, cv2.CV_64F, 0, 1, ksize=3)
    edges = np.clip(np.sqrt(gx * gx + gy * gy) * 255.0, 0, 255).astype(np.uint8)
    edges[0, :] = 0
    edges[-1, :] = 0
    edges[:, 0] = 0
    edges[:, -1] = 0
    return edges


def standard_scores(
    image: np.ndarray,
    palette: np.ndarray,
    tuning: HeuristicTuning,
    block_rows: int = 64,
    executor: Optional[Executor] = None,
    cancel_event: Optional[threading.Event] = None,
) -> np.ndarray:
    height, width = image.shape[:2]

    def _block(y0: int, y1: int) -> np.ndarray:
        min_dist = _min_palette_distance(image[y0:y1], palette)
        bias = _closeness(width, height, y0, y1) * tuning.center_weight
        threshold = tuning.base_distance_threshold - bias * tuning.center_threshold_relief
        prob = (min_dist - threshold) * tuning.distance_gain + bias * tuning.center_bonus
        return np.clip(prob, 0, 255).astype(np.uint8)

    return map_row_blocks(_block, height, block_rows, executor, cancel_event)


def high_contrast_scores(
    image: np.ndarray,
    palette: np.ndarray,
    tuning: HeuristicTuning,
    block_rows: int = 64,
    executor: Optional[Executor] = None,
    cancel_event: Optional[threading.Event] = None,
) -> np.ndarray:
    height, width = image.shape[:2]
    edges = sobel_edge_map(image)
    background_lum = float(luminance(palette).mean()) if palette.shape[0] else 0.0

    def _block(y0: int, y1: int) -> np.ndarray:
        block = image[y0:y1]
        edge = edges[y0:y1].astype(np.float64) / 255.0
        deviation = np.minimum(1.0, np.abs(luminance(block) - background_lum) * tuning.deviation_gain)
        color = np.minimum(1.0, _min_palette_distance(block, palette) / tuning.color_distance_scale)
        bias = _closeness(width, height, y0, y1) * tuning.high_contrast_center_weight
        score = np.minimum(
            1.0,
            edge * tuning.edge_weight + deviation * tuning.deviation_weight + color * tuning.color_weight + bias,
        )
        return (score * 255.0).astype(np.uint8)

    return map_row_blocks(_block, height, block_rows, executor, cancel_event)


class HeuristicMaskGenerator:
    """Best-effort segmentation without a model; always returns a mask."""

    name = "heuristic"

    def __init__(
        self,
        tuning: Optional[HeuristicTuning] = None,
        executor: Optional[Executor] = None,
        block_rows: int = 64,
    ):
        self.tuning = tuning or HeuristicTuning()
        self._executor = executor
        self._block_rows = block_rows

    def generate(
        self,
        image: np.ndarray,
        cancel_event: Optional[threading.Event] = None,
        label: Optional[str] = None,
    ) -> np.ndarray:
        if image.ndim != 3 or image.shape[2] not in (3, 4):
            raise ValueError(f"Expected RGB image (H,W,3), got shape={image.shape}")
        check_cancelled(cancel_event)
        tuning = self.tuning
        t0 = time.perf_counter()

        contrast = classify_contrast(image, tuning)
        palette = find_dominant_colors(
            sample_background(image, tuning),
            tolerance=tuning.cluster_tolerance,
            max_colors=tuning.max_background_colors,
        )
        logger.debug(
            "heuristic: image=%s contrast=%s palette=%s tuning=v%s",
            label,
            contrast.value,
            palette.astype(int).tolist(),
            tuning.version,
        )

        kwargs = dict(block_rows=self._block_rows, executor=self._executor, cancel_event=cancel_event)
        if contrast is ContrastClass.HIGH_CONTRAST:
            raw = high_contrast_scores(image, palette, tuning, **kwargs)
            mask = gaussian_blur(raw, tuning.high_contrast_pre_blur)
            mask = binary_threshold(mask, tuning.high_contrast_threshold)
            mask = gaussian_blur(mask, tuning.high_contrast_post_blur)
        else:
            raw = standard_scores(image, palette, tuning, **kwargs)
            mask = gaussian_blur(raw, tuning.standard_pre_blur)
            mask = binary_threshold(mask, tuning.standard_threshold)
            mask = gaussian_blur(mask, tuning.standard_post_blur)

        logger.info(
            "heuristic: mask ready image=%s path=%s ms=%.1f",
            label,
            contrast.value,
            (time.perf_counter() - t0) * 1000.0,
        )
        return mask

    def try_generate(
        self,
        image: np.ndarray,
        cancel_event: Optional[threading.Event] = None,
        label: Optional[str] = None,
    ) -> Optional[np.ndarray]:
        return self.generate(image, cancel_event=cancel_event, label=label)
