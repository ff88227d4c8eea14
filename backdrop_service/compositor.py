"""Compositing a segmented subject over a replacement background."""

from __future__ import annotations

from concurrent.futures import Executor
from dataclasses import dataclass
import logging
import threading
from typing import Optional

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from .config import CompositionTuning
from .errors import CompositionError
from .imaging import gaussian_blur, map_row_blocks, resize, to_rgb

logger = logging.getLogger(__name__)


@dataclass
class CompositionOptions:
    background_blur: float = 0.0  # Gaussian sigma; 0 disables
    lighting_adjustment: float = 0.0  # brightness delta in [-1, 1]
    edge_smoothing: bool = True
    watermark_text: Optional[str] = None


def smoothstep(t: np.ndarray) -> np.ndarray:
    t = np.clip(t, 0.0, 1.0)
    return t * t * (3.0 - 2.0 * t)


def adjust_brightness(image: np.ndarray, delta: float) -> np.ndarray:
    """Scale RGB by ``1 + delta``; delta is clamped to [-1, 1]."""
    factor = 1.0 + float(np.clip(delta, -1.0, 1.0))
    return np.clip(image.astype(np.float32) * factor, 0, 255).astype(np.uint8)


def _check_area(image: np.ndarray, what: str) -> None:
    if image.ndim < 2 or image.shape[0] == 0 or image.shape[1] == 0:
        raise CompositionError(f"{what} has zero area: shape={image.shape}")


class Compositor:
    def __init__(
        self,
        tuning: Optional[CompositionTuning] = None,
        executor: Optional[Executor] = None,
        block_rows: int = 64,
    ):
        self.tuning = tuning or CompositionTuning()
        self._executor = executor
        self._block_rows = block_rows
        gamma = self.tuning.gamma
        self._to_linear = (np.arange(256, dtype=np.float64) / 255.0) ** gamma

    def _prepare_background(self, background: np.ndarray, width: int, height: int, options: CompositionOptions) -> np.ndarray:
        _check_area(background, "Background")
        bg = resize(to_rgb(background), width, height)
        if options.background_blur > 0:
            bg = gaussian_blur(bg, options.background_blur)
        if options.lighting_adjustment != 0:
            bg = adjust_brightness(bg, options.lighting_adjustment)
        return bg

    def blend_with_mask(
        self,
        foreground: np.ndarray,
        background: np.ndarray,
        mask: np.ndarray,
        options: Optional[CompositionOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> np.ndarray:
        """
        Blend ``foreground`` over ``background`` using ``mask`` as subject weight.

        The background is stretched to the foreground size. With edge smoothing
        the mask is feathered and eased with smoothstep before a gamma-correct
        blend, and the result gets a light anti-alias blur. Returns a new RGB
        array the size of the foreground.
        """
        options = options or CompositionOptions()
        tuning = self.tuning
        _check_area(foreground, "Foreground")
        height, width = foreground.shape[:2]
        if mask.shape[:2] != (height, width):
            raise CompositionError(
                f"Mask size {mask.shape[1]}x{mask.shape[0]} does not match image size {width}x{height}"
            )

        fg = to_rgb(foreground)
        bg = self._prepare_background(background, width, height, options)

        if options.edge_smoothing:
            weights = smoothstep(gaussian_blur(mask, tuning.feather_sigma).astype(np.float64) / 255.0)
        else:
            weights = mask.astype(np.float64) / 255.0

        to_linear = self._to_linear
        inv_gamma = 1.0 / tuning.gamma

        def _block(y0: int, y1: int) -> np.ndarray:
            a = weights[y0:y1, :, None]
            linear = to_linear[fg[y0:y1]] * a + to_linear[bg[y0:y1]] * (1.0 - a)
            return np.clip(np.rint((linear ** inv_gamma) * 255.0), 0, 255).astype(np.uint8)

        out = map_row_blocks(_block, height, self._block_rows, self._executor, cancel_event)
        if options.edge_smoothing:
            out = gaussian_blur(out, tuning.antialias_sigma)

        if options.watermark_text:
            out = self.apply_text_watermark(out, options.watermark_text)
        return out

    def overlay_transparent(
        self,
        subject: np.ndarray,
        background: np.ndarray,
        options: Optional[CompositionOptions] = None,
    ) -> np.ndarray:
        """Copy every subject pixel with non-zero alpha onto the prepared background."""
        options = options or CompositionOptions()
        _check_area(subject, "Subject")
        height, width = subject.shape[:2]
        bg = self._prepare_background(background, width, height, options)

        if subject.ndim == 3 and subject.shape[2] == 4:
            visible = subject[..., 3] > 0
        else:
            logger.warning("compose: subject has no alpha channel; treating it as fully opaque")
            visible = np.ones((height, width), dtype=bool)

        out = np.where(visible[..., None], to_rgb(subject), bg).astype(np.uint8)
        if options.watermark_text:
            out = self.apply_text_watermark(out, options.watermark_text)
        return out

    def apply_text_watermark(self, image: np.ndarray, text: str) -> np.ndarray:
        """Semi-transparent text in the bottom-right corner."""
        _check_area(image, "Image")
        tuning = self.tuning
        base = Image.fromarray(to_rgb(image), mode="RGB").convert("RGBA")
        layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)
        font = ImageFont.load_default()

        left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
        x = max(0, base.width - (right - left) - tuning.watermark_margin)
        y = max(0, base.height - (bottom - top) - tuning.watermark_margin)
        alpha = int(round(255 * tuning.watermark_opacity))
        draw.text((x - left, y - top), text, font=font, fill=(255, 255, 255, alpha))

        return np.asarray(Image.alpha_composite(base, layer).convert("RGB"), dtype=np.uint8)

    def apply_logo_watermark(self, image: np.ndarray, logo: np.ndarray) -> np.ndarray:
        """
        Scale ``logo`` to fit min(180, W/6) x min(150, H/8) keeping its aspect
        ratio, fade it to 70 % and place it top-right with a 15 px margin.
        """
        _check_area(image, "Image")
        _check_area(logo, "Logo")
        tuning = self.tuning
        height, width = image.shape[:2]

        max_w = min(tuning.watermark_max_width, width // 6)
        max_h = min(tuning.watermark_max_height, height // 8)
        if max_w <= 0 or max_h <= 0:
            logger.warning("watermark: image %dx%d too small for a logo; skipping", width, height)
            return image.copy()

        logo_h, logo_w = logo.shape[:2]
        aspect = logo_w / logo_h
        if max_w / aspect <= max_h:
            target_w, target_h = max_w, int(max_w / aspect)
        else:
            target_w, target_h = int(max_h * aspect), max_h
        target_w, target_h = max(1, target_w), max(1, target_h)

        if logo.ndim == 3 and logo.shape[2] == 4:
            logo_img = Image.fromarray(logo, mode="RGBA")
        else:
            logo_img = Image.fromarray(to_rgb(logo), mode="RGB").convert("RGBA")
        logo_img = logo_img.resize((target_w, target_h), Image.LANCZOS)

        faded = np.asarray(logo_img, dtype=np.float32).copy()
        faded[..., 3] *= tuning.watermark_opacity
        logo_img = Image.fromarray(faded.astype(np.uint8), mode="RGBA")

        base = Image.fromarray(to_rgb(image), mode="RGB").convert("RGBA")
        x = max(0, width - target_w - tuning.watermark_margin)
        y = tuning.watermark_margin
        base.alpha_composite(logo_img, dest=(x, y))
        logger.debug("watermark: logo %dx%d at (%d, %d)", target_w, target_h, x, y)
        return np.asarray(base.convert("RGB"), dtype=np.uint8)
