"""
High-level background replacement pipeline.

``BackgroundReplacementService`` is the entry point used by the CLI and by
any embedding application. Orchestration stays simple:
paths in -> decode -> segment (AI or heuristic) -> blend -> JPEG out.

Per-request failures come back as ``CompositionResult(success=False)``;
only cancellation propagates as an exception.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import lru_cache, partial
import logging
from pathlib import Path
import threading
import time
from typing import List, Optional, Tuple, Union

import numpy as np

from .compositor import CompositionOptions, Compositor
from .config import Settings, get_settings
from .errors import OperationCancelled
from .heuristic import HeuristicMaskGenerator
from .imaging import atomic_write_bytes, dump_debug_mask, encode_jpeg, encode_mask_png, load_image
from .model_loader import MB, ModelManager
from .provisioning import LocalModelProvisioner, ensure_model
from .selector import SegmentationBackendSelector, default_selector

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

MIN_RECOMMENDED_SIDE = 400
MIN_ASPECT_RATIO = 0.5
MAX_ASPECT_RATIO = 2.0
LARGE_FILE_BYTES = 10 * MB
MIN_SUBJECT_RATIO = 0.03
MAX_SUBJECT_RATIO = 0.98


@dataclass
class CompositionResult:
    success: bool
    message: str
    output_path: Optional[Path] = None
    data: Optional[bytes] = None  # encoded JPEG when no output path was given
    backend: Optional[str] = None


@dataclass
class ImageValidationResult:
    is_valid: bool
    message: str
    recommendations: List[str] = field(default_factory=list)
    has_detected_subject: bool = False
    confidence: float = 0.0


def calculate_mask_area_ratio(mask: np.ndarray) -> float:
    total_pixels = mask.shape[0] * mask.shape[1]
    mask_pixels = np.count_nonzero(mask > 0)
    return mask_pixels / total_pixels if total_pixels > 0 else 0.0


class BackgroundReplacementService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        manager: Optional[ModelManager] = None,
        selector: Optional[SegmentationBackendSelector] = None,
        compositor: Optional[Compositor] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings
        self.manager = manager or ModelManager(min_size_mb=s.model_min_size_mb)
        # Pixel blocks never submit work of their own; request threads may block on them.
        self._pixel_pool = ThreadPoolExecutor(max_workers=s.worker_threads, thread_name_prefix="backdrop-px")
        self._request_pool = ThreadPoolExecutor(max_workers=s.worker_threads, thread_name_prefix="backdrop-req")
        self.selector = selector or default_selector(self.manager, s, executor=self._pixel_pool)
        self.compositor = compositor or Compositor(s.composition, executor=self._pixel_pool, block_rows=s.row_block_size)
        self._heuristic = HeuristicMaskGenerator(s.heuristic, executor=self._pixel_pool, block_rows=s.row_block_size)

    # ------------------------------------------------------------------ segmentation

    def _segment(
        self,
        image: np.ndarray,
        label: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[np.ndarray, str]:
        self.manager.ensure_initialized(self.settings.model_path)
        mask, backend = self.selector.generate_with_backend(image, label=label, cancel_event=cancel_event)
        if self.settings.debug:
            dump_debug_mask(mask, Path(self.settings.debug_output_dir), f"{Path(label).stem}_{backend}")
        return mask, backend

    def generate_mask(self, image_path: PathLike, cancel_event: Optional[threading.Event] = None) -> np.ndarray:
        image = load_image(image_path)
        mask, _ = self._segment(image, str(image_path), cancel_event)
        return mask

    def generate_mask_png(self, image_path: PathLike, cancel_event: Optional[threading.Event] = None) -> Optional[bytes]:
        """Single-channel PNG mask for ``image_path``; None when the image cannot be read."""
        try:
            return encode_mask_png(self.generate_mask(image_path, cancel_event))
        except OperationCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("mask: failed for image=%s: %s", image_path, exc)
            return None

    def save_mask(self, image_path: PathLike, output_path: PathLike) -> bool:
        data = self.generate_mask_png(image_path)
        if data is None:
            return False
        try:
            atomic_write_bytes(output_path, data)
        except OSError as exc:
            logger.error("mask: could not write %s: %s", output_path, exc)
            return False
        logger.info("mask: saved image=%s output=%s", image_path, output_path)
        return True

    # ------------------------------------------------------------------ composition

    def _finish(self, composite: np.ndarray, output_path: Optional[PathLike], message: str, backend: Optional[str]) -> CompositionResult:
        data = encode_jpeg(composite, quality=self.settings.jpeg_quality)
        if output_path is None:
            return CompositionResult(True, message, data=data, backend=backend)
        target = atomic_write_bytes(output_path, data)
        return CompositionResult(True, message, output_path=target, backend=backend)

    def replace_background(
        self,
        source_path: PathLike,
        background_path: PathLike,
        output_path: Optional[PathLike] = None,
        options: Optional[CompositionOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CompositionResult:
        """
        Segment the subject of ``source_path`` and place it over ``background_path``.

        The output has the source's dimensions. With ``output_path`` the JPEG
        is written atomically; otherwise it is returned in ``result.data``.
        """
        if not Path(source_path).is_file() or not Path(background_path).is_file():
            logger.warning("replace: source images not found source=%s background=%s", source_path, background_path)
            return CompositionResult(False, "Source images not found")

        backend: Optional[str] = None
        t0 = time.perf_counter()
        try:
            source = load_image(source_path)
            background = load_image(background_path)
            mask, backend = self._segment(source, str(source_path), cancel_event)
            composite = self.compositor.blend_with_mask(source, background, mask, options, cancel_event=cancel_event)
            result = self._finish(composite, output_path, "Background replaced successfully", backend)
        except OperationCancelled:
            logger.info("replace: cancelled source=%s", source_path)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "replace: failed source=%s background=%s backend=%s: %s",
                source_path,
                background_path,
                backend,
                exc,
            )
            return CompositionResult(False, f"Error processing image: {exc}", backend=backend)

        logger.info(
            "replace: done source=%s backend=%s size=%dx%d ms=%.1f",
            source_path,
            backend,
            source.shape[1],
            source.shape[0],
            (time.perf_counter() - t0) * 1000.0,
        )
        return result

    def compose_transparent(
        self,
        subject_path: PathLike,
        background_path: PathLike,
        output_path: Optional[PathLike] = None,
        options: Optional[CompositionOptions] = None,
    ) -> CompositionResult:
        """Place an already cut-out (RGBA) subject over a background."""
        if not Path(subject_path).is_file() or not Path(background_path).is_file():
            logger.warning("compose: source images not found subject=%s background=%s", subject_path, background_path)
            return CompositionResult(False, "Source images not found")
        try:
            subject = load_image(subject_path, mode="RGBA")
            background = load_image(background_path)
            composite = self.compositor.overlay_transparent(subject, background, options)
            result = self._finish(composite, output_path, "Image composed successfully", None)
        except Exception as exc:  # noqa: BLE001
            logger.error("compose: failed subject=%s background=%s: %s", subject_path, background_path, exc)
            return CompositionResult(False, f"Error composing image: {exc}")
        logger.info("compose: done subject=%s output=%s", subject_path, output_path)
        return result

    def watermark_image(self, image_path: PathLike, logo_path: PathLike) -> Optional[bytes]:
        """JPEG bytes of ``image_path`` with the logo in the top-right corner."""
        try:
            image = load_image(image_path)
        except Exception as exc:  # noqa: BLE001
            logger.error("watermark: could not read image=%s: %s", image_path, exc)
            return None
        if not Path(logo_path).is_file():
            logger.warning("watermark: logo not found at %s; returning image unchanged", logo_path)
            return encode_jpeg(image, quality=self.settings.jpeg_quality)
        try:
            logo = load_image(logo_path, mode="RGBA")
            marked = self.compositor.apply_logo_watermark(image, logo)
        except Exception as exc:  # noqa: BLE001
            logger.error("watermark: failed image=%s logo=%s: %s", image_path, logo_path, exc)
            return None
        return encode_jpeg(marked, quality=self.settings.jpeg_quality)

    # ------------------------------------------------------------------ validation

    def validate_image(self, image_path: PathLike) -> ImageValidationResult:
        path = Path(image_path)
        if not path.is_file():
            return ImageValidationResult(False, "Image file not found")
        try:
            image = load_image(path)
        except Exception as exc:  # noqa: BLE001
            logger.warning("validate: could not read image=%s: %s", path, exc)
            return ImageValidationResult(False, f"Error validating image: {exc}")

        recommendations: List[str] = []
        height, width = image.shape[:2]
        if width < MIN_RECOMMENDED_SIDE or height < MIN_RECOMMENDED_SIDE:
            recommendations.append(
                f"Image resolution should be at least {MIN_RECOMMENDED_SIDE}x{MIN_RECOMMENDED_SIDE} pixels for better results"
            )
        aspect = width / height
        if aspect < MIN_ASPECT_RATIO or aspect > MAX_ASPECT_RATIO:
            recommendations.append("Images with extreme aspect ratios may not process well")
        if path.stat().st_size > LARGE_FILE_BYTES:
            recommendations.append("Large images may take longer to process")

        ratio = calculate_mask_area_ratio(self._heuristic.generate(image, label=str(path)))
        has_subject = MIN_SUBJECT_RATIO <= ratio <= MAX_SUBJECT_RATIO
        if not has_subject:
            recommendations.append("No clear subject detected - background replacement may not work well")
        logger.debug("validate: image=%s subject_ratio=%.3f", path, ratio)

        return ImageValidationResult(
            is_valid=True,
            message="Image is suitable for processing",
            recommendations=recommendations,
            has_detected_subject=has_subject,
            confidence=0.8 if has_subject else 0.3,
        )

    # ------------------------------------------------------------------ async

    async def _offload(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._request_pool, partial(func, *args, **kwargs))

    async def areplace_background(self, *args, **kwargs) -> CompositionResult:
        return await self._offload(self.replace_background, *args, **kwargs)

    async def agenerate_mask_png(self, *args, **kwargs) -> Optional[bytes]:
        return await self._offload(self.generate_mask_png, *args, **kwargs)

    async def acompose_transparent(self, *args, **kwargs) -> CompositionResult:
        return await self._offload(self.compose_transparent, *args, **kwargs)

    def close(self) -> None:
        self._request_pool.shutdown(wait=True)
        self._pixel_pool.shutdown(wait=True)
        self.manager.close()


@lru_cache()
def get_service() -> BackgroundReplacementService:
    """Process-wide service built from environment settings."""
    settings = get_settings()
    service = BackgroundReplacementService(settings)
    if settings.model_path is not None:
        provisioner = LocalModelProvisioner(
            download_urls=settings.model_download_urls,
            timeout_seconds=settings.request_timeout_seconds,
        )
        ensure_model(service.manager, provisioner, settings.model_path)
    else:
        logger.info("No model path configured; using heuristic segmentation only")
    return service
