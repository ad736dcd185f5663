"""
Configuration loader for the cutout service.

Environment variables are centralized here so the refinement and compositing
code can stay focused on pixels and the tunables stay visible in one place.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

QUALITY_MODES = {"fast", "standard", "high"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Segmenter + preprocessing
    segmenter_model_path: Optional[Path] = None
    segmenter_max_long_edge: int = 512
    segmenter_max_long_edge_standard: int = 1024
    segmenter_max_long_edge_high_quality: int = 1536
    default_quality_mode: str = "standard"
    segmentation_timeout_seconds: float = Field(30.0, gt=0)

    # Refinement tunables
    aspect_ratio_tolerance: float = Field(0.02, ge=0)
    feather_px_per_step: int = Field(2, ge=1)
    sharpen_gain_per_step: float = Field(2.0, gt=0)
    default_refinement: int = 0

    # Compositing
    defringe: bool = False
    defringe_blend: float = Field(0.35, ge=0, le=1)

    # API
    request_timeout_seconds: int = 30
    log_level: str = "INFO"

    # Debugging
    debug: bool = False
    debug_output_dir: Path = Path("/tmp/cutout_debug")

    @field_validator("default_quality_mode")
    @classmethod
    def validate_quality_mode(cls, v: str) -> str:
        if v not in QUALITY_MODES:
            raise ValueError("DEFAULT_QUALITY_MODE must be one of fast|standard|high")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def quality_to_long_edge(quality_mode: str, settings: Optional[Settings] = None) -> int:
    """
    Translate a quality string into the segmenter resize target for the longest edge.

    Higher values give finer mattes at the cost of speed/memory.
    """
    settings = settings or get_settings()
    if quality_mode == "high":
        return settings.segmenter_max_long_edge_high_quality
    if quality_mode == "fast":
        return settings.segmenter_max_long_edge
    return settings.segmenter_max_long_edge_standard
