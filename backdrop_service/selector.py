"""Ordered fallback across mask backends; the last one always succeeds."""

from __future__ import annotations

from concurrent.futures import Executor
import logging
import threading
import time
from typing import List, Optional, Protocol, Sequence, Tuple

import numpy as np

from .ai_mask import AIMaskGenerator
from .config import Settings, get_settings
from .heuristic import HeuristicMaskGenerator
from .model_loader import ModelManager

logger = logging.getLogger(__name__)


class MaskBackend(Protocol):
    name: str

    def try_generate(
        self,
        image: np.ndarray,
        cancel_event: Optional[threading.Event] = None,
        label: Optional[str] = None,
    ) -> Optional[np.ndarray]:
        ...


class SegmentationBackendSelector:
    """
    Tries each backend in order and returns the first mask produced.

    A heuristic backend is appended when the list does not already end with
    one, so ``generate`` always yields a mask for a valid image.
    """

    def __init__(self, backends: Sequence[MaskBackend], fallback: Optional[HeuristicMaskGenerator] = None):
        chain: List[MaskBackend] = list(backends)
        if not chain or not isinstance(chain[-1], HeuristicMaskGenerator):
            chain.append(fallback or HeuristicMaskGenerator())
        self._backends = chain

    @property
    def backends(self) -> List[MaskBackend]:
        return list(self._backends)

    def generate_with_backend(
        self,
        image: np.ndarray,
        label: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[np.ndarray, str]:
        for backend in self._backends:
            t0 = time.perf_counter()
            mask = backend.try_generate(image, cancel_event=cancel_event, label=label)
            elapsed_ms = (time.perf_counter() - t0) * 1000.0
            if mask is not None:
                logger.info("segment: image=%s backend=%s ms=%.1f", label, backend.name, elapsed_ms)
                return mask, backend.name
            logger.info("segment: backend=%s produced no mask for image=%s; falling back", backend.name, label)
        # Only reachable if a custom terminal backend returned None.
        raise RuntimeError("No segmentation backend produced a mask")

    def generate(
        self,
        image: np.ndarray,
        label: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> np.ndarray:
        mask, _ = self.generate_with_backend(image, label=label, cancel_event=cancel_event)
        return mask


def default_selector(
    manager: ModelManager,
    settings: Optional[Settings] = None,
    executor: Optional[Executor] = None,
) -> SegmentationBackendSelector:
    """AI first (when a model is loaded), then the heuristic."""
    settings = settings or get_settings()
    heuristic = HeuristicMaskGenerator(
        tuning=settings.heuristic,
        executor=executor,
        block_rows=settings.row_block_size,
    )
    return SegmentationBackendSelector([AIMaskGenerator(manager, settings), heuristic])
