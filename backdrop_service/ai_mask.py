"""Neural-network mask generation on top of the managed inference handle."""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional, Tuple

import cv2
import numpy as np

from .config import CompositionTuning, Settings, get_settings
from .errors import InferenceError, OperationCancelled
from .imaging import binary_threshold, check_cancelled, gaussian_blur
from .model_loader import ModelManager
from .preprocessing import build_input_tensor

logger = logging.getLogger(__name__)


def logits_to_plane(output: np.ndarray) -> np.ndarray:
    """Reduce (N,C,H,W) / (C,H,W) / (H,W) network output to its first channel."""
    y = np.asarray(output, dtype=np.float32)
    if y.ndim == 4:
        y = y[0, 0]
    elif y.ndim == 3:
        y = y[0]
    elif y.ndim != 2:
        raise InferenceError(f"Unexpected output tensor shape: {y.shape}")
    if y.size == 0:
        raise InferenceError("Empty output tensor")
    return y


def logits_to_mask(
    logits: np.ndarray,
    orig_size: Tuple[int, int],
    smoothing_sigma: float = 0.5,
    threshold: float = 0.5,
) -> np.ndarray:
    """Sigmoid -> resize to (width, height) -> light blur -> binary threshold."""
    prob = 1.0 / (1.0 + np.exp(-np.clip(logits, -60.0, 60.0)))
    if not np.isfinite(prob).all():
        raise InferenceError("NaNs detected in predicted mask")

    prob_u8 = (np.clip(prob, 0.0, 1.0) * 255.0).astype(np.uint8)
    width, height = orig_size
    restored = cv2.resize(prob_u8, (width, height), interpolation=cv2.INTER_LINEAR)
    return binary_threshold(gaussian_blur(restored, smoothing_sigma), threshold)


class AIMaskGenerator:
    """Returns a mask, or None whenever the model is missing or inference fails."""

    name = "ai"

    def __init__(self, manager: ModelManager, settings: Optional[Settings] = None):
        self._manager = manager
        self._settings = settings or get_settings()

    @property
    def tuning(self) -> CompositionTuning:
        return self._settings.composition

    def try_generate(
        self,
        image: np.ndarray,
        cancel_event: Optional[threading.Event] = None,
        label: Optional[str] = None,
    ) -> Optional[np.ndarray]:
        with self._manager.read_handle() as handle:
            if handle is None:
                logger.debug("ai: no model loaded, skipping image=%s", label)
                return None
            try:
                return self._generate(handle, image, cancel_event, label)
            except OperationCancelled:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error("ai: inference failed image=%s runtime=%s: %s", label, handle.runtime, exc)
                return None

    generate = try_generate

    def _generate(self, handle, image, cancel_event, label) -> np.ndarray:
        check_cancelled(cancel_event)
        tuning = self.tuning
        pre = build_input_tensor(
            image,
            size=self._settings.ai_input_size,
            mean=tuning.imagenet_mean,
            std=tuning.imagenet_std,
        )

        t0 = time.perf_counter()
        output = handle.run(pre.tensor)
        infer_ms = (time.perf_counter() - t0) * 1000.0
        logits = logits_to_plane(output)
        logger.debug(
            "ai: inference image=%s output_shape=%s ms=%.1f",
            label,
            getattr(output, "shape", None),
            infer_ms,
        )

        check_cancelled(cancel_event)
        mask = logits_to_mask(
            logits,
            pre.orig_size,
            smoothing_sigma=tuning.ai_smoothing_sigma,
            threshold=tuning.ai_threshold,
        )
        if mask.shape != image.shape[:2]:
            raise InferenceError(f"Mask shape {mask.shape} does not match image {image.shape[:2]}")
        return mask
