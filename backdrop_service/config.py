"""
Configuration loader for the background-replacement engine.

Environment variables are centralized here to keep the rest of the code
focused on image logic and to make operational tuning clear. Every heuristic
threshold lives in a named, versioned tuning model so it can be adjusted and
unit-tested without touching the algorithms that consume it.
"""

from functools import lru_cache
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class HeuristicTuning(BaseModel):
    """Thresholds for the model-free segmentation fallback."""

    version: str = "2"

    # Contrast classification
    contrast_threshold: float = 0.3
    contrast_border_divisor: int = 50
    contrast_center_divisor: int = 6

    # Background palette
    palette_border_divisor: int = 30
    palette_corner_divisor: int = 10
    cluster_tolerance: float = 30.0
    max_background_colors: int = 3

    # Standard path
    center_weight: float = 2.0
    base_distance_threshold: float = 45.0
    center_threshold_relief: float = 15.0
    distance_gain: float = 4.0
    center_bonus: float = 30.0
    standard_pre_blur: float = 1.5
    standard_threshold: float = 0.4
    standard_post_blur: float = 0.5

    # High-contrast path
    edge_weight: float = 0.45
    deviation_weight: float = 0.35
    color_weight: float = 0.20
    deviation_gain: float = 2.0
    color_distance_scale: float = 100.0
    high_contrast_center_weight: float = 0.3
    high_contrast_pre_blur: float = 1.0
    high_contrast_threshold: float = 0.45
    high_contrast_post_blur: float = 0.3


class CompositionTuning(BaseModel):
    """Constants for the AI postprocess and the compositor."""

    ai_smoothing_sigma: float = 0.5
    ai_threshold: float = 0.5
    imagenet_mean: Tuple[float, float, float] = (0.485, 0.456, 0.406)
    imagenet_std: Tuple[float, float, float] = (0.229, 0.224, 0.225)

    feather_sigma: float = 2.0
    antialias_sigma: float = 0.3
    gamma: float = 2.2

    watermark_opacity: float = 0.7
    watermark_margin: int = 15
    watermark_max_width: int = 180
    watermark_max_height: int = 150


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BACKDROP_",
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Model
    model_path: Optional[Path] = None
    model_min_size_mb: float = 10.0
    ai_input_size: int = 320
    model_download_urls: List[str] = []
    request_timeout_seconds: float = 60.0

    # Execution
    worker_threads: int = Field(4, ge=1)
    row_block_size: int = Field(64, ge=1)
    jpeg_quality: int = Field(90, ge=1, le=100)

    log_level: str = "INFO"

    heuristic: HeuristicTuning = HeuristicTuning()
    composition: CompositionTuning = CompositionTuning()

    # Debugging
    debug: bool = False
    debug_output_dir: Path = Path("/tmp/backdrop_debug")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("LOG_LEVEL must be one of DEBUG|INFO|WARNING|ERROR|CRITICAL")
        return level


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
