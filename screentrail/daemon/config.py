"""Configuration management for screentrail."""

from pathlib import Path
from typing import Optional, Tuple

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator

from .errors import ConfigError
from .languages import DEFAULT_LANGUAGE, Language, normalize_language


class CaptureConfig(BaseModel):
    sample_interval_ms: int = 5000
    diff_threshold: float = 0.03
    image_quality: int = 80
    source_ended_backoff_s: float = 1.0
    grab_error_backoff_s: float = 2.0
    max_restart_attempts: int = 5

    @field_validator('sample_interval_ms')
    @classmethod
    def validate_interval(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("sample_interval_ms must be positive")
        return v

    @field_validator('diff_threshold')
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("diff_threshold must be between 0 and 1")
        return v

    @field_validator('image_quality')
    @classmethod
    def validate_quality(cls, v: int) -> int:
        if not 1 <= v <= 100:
            raise ValueError("image_quality must be between 1 and 100")
        return v


class EnrichmentConfig(BaseModel):
    language: Language = DEFAULT_LANGUAGE
    max_raster_dimensions: Tuple[int, int] = (2000, 2000)
    max_workers: int = 2
    max_resource_retries: int = 3
    downscale_factor: float = 0.5

    @field_validator('language', mode='before')
    @classmethod
    def validate_language(cls, v) -> Language:
        return normalize_language(v)

    @field_validator('max_raster_dimensions')
    @classmethod
    def validate_dimensions(cls, v: Tuple[int, int]) -> Tuple[int, int]:
        if v[0] <= 0 or v[1] <= 0:
            raise ValueError("max_raster_dimensions must be positive")
        return v

    @field_validator('downscale_factor')
    @classmethod
    def validate_factor(cls, v: float) -> float:
        if not 0 < v < 1:
            raise ValueError("downscale_factor must be between 0 and 1 (exclusive)")
        return v


class CapabilityConfig(BaseModel):
    pending_limit: int = 100
    replay_limit: int = 5


class IndexConfig(BaseModel):
    flush_interval_s: float = 300.0


class SummariesConfig(BaseModel):
    interval_min: float = 30.0
    window_min: float = 40.0

    @field_validator('window_min')
    @classmethod
    def validate_window(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("window_min must be positive")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: Path = Field(default_factory=lambda: Path.home() / ".local" / "share" / "screentrail" / "logs")


class Config(BaseModel):
    """Main configuration for the screentrail daemon."""

    storage_path: Path
    retention_days: int = 30
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    capability: CapabilityConfig = Field(default_factory=CapabilityConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    summaries: SummariesConfig = Field(default_factory=SummariesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('storage_path')
    @classmethod
    def validate_storage_path(cls, v: Path) -> Path:
        if isinstance(v, str):
            v = Path(v)
        return v.expanduser()

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file."""
        if config_path is None:
            candidates = [
                Path("screentrail.yaml"),
                Path.home() / ".config" / "screentrail" / "config.yaml",
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                raise FileNotFoundError(
                    f"No config file found. Searched: {[str(c) for c in candidates]}"
                )

        logger.info(f"Loading config from: {config_path}")
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        if "storage_path" not in data:
            raise ConfigError(f"{config_path}: storage_path is required")

        return cls(**data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)
