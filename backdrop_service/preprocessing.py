"""
Input preparation for the segmentation network.

The network expects a fixed square RGB input, normalized with the standard
ImageNet per-channel mean/std, laid out planar (N, C, H, W).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from .config import CompositionTuning


@dataclass
class PreprocessResult:
    tensor: np.ndarray  # (1, 3, size, size) float32
    orig_size: Tuple[int, int]  # (width, height)


def build_input_tensor(
    image: np.ndarray,
    size: int = 320,
    mean: Optional[Sequence[float]] = None,
    std: Optional[Sequence[float]] = None,
) -> PreprocessResult:
    """
    Stretch an RGB(A) uint8 image to ``size x size`` and normalize.

    Aspect ratio is not preserved; the mask is stretched back to the
    original dimensions after inference. Mean/std default to the values in
    ``CompositionTuning``.
    """
    defaults = CompositionTuning()
    mean = defaults.imagenet_mean if mean is None else mean
    std = defaults.imagenet_std if std is None else std
    if image.ndim != 3 or image.shape[2] not in (3, 4):
        raise ValueError(f"Expected RGB image (H,W,3), got shape={image.shape}")
    orig_h, orig_w = image.shape[:2]
    if orig_h <= 0 or orig_w <= 0:
        raise ValueError(f"Invalid image size: {(orig_w, orig_h)}")

    rgb = image[..., :3]
    resized = cv2.resize(rgb, (size, size), interpolation=cv2.INTER_LINEAR)

    x = resized.astype(np.float32) / 255.0
    x = (x - np.asarray(mean, dtype=np.float32).reshape(1, 1, 3)) / np.asarray(std, dtype=np.float32).reshape(1, 1, 3)
    x = np.transpose(x, (2, 0, 1))  # HWC -> CHW
    tensor = np.ascontiguousarray(x[np.newaxis, ...], dtype=np.float32)

    return PreprocessResult(tensor=tensor, orig_size=(orig_w, orig_h))
