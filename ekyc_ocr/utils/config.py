"""Configuration management for the eKYC extraction service.

Loads and validates YAML configuration with sensible defaults
for preprocessing, OCR, document fetching, and reconciliation settings.
"""

import logging
from enum import StrEnum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from ekyc_ocr.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class RetryPolicy(StrEnum):
    """How failed extraction runs are re-entered."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"


class PreprocessingConfig(BaseModel):
    """Configuration for image preprocessing."""

    binarize_enabled: bool = True
    threshold: int = Field(default=127, ge=0, le=255)


class OCRConfig(BaseModel):
    """Configuration for the Tesseract recognition engine."""

    tesseract_cmd: str | None = None
    default_lang: str = "eng+hin"
    psm: int = 3
    char_whitelist: str | None = None
    timeout_s: float = Field(default=30.0, gt=0)
    pool_size: int = Field(default=2, ge=1)


class FetchConfig(BaseModel):
    """Configuration for downloading stored documents."""

    timeout_s: float = Field(default=20.0, gt=0)


class ReconciliationConfig(BaseModel):
    """Configuration for extraction run reconciliation and retries."""

    retry_policy: RetryPolicy = RetryPolicy.MANUAL
    max_auto_retries: int = Field(default=2, ge=0)
    retry_delay_s: float = Field(default=2.0, ge=0)
    stale_pending_after_s: float = Field(default=120.0, gt=0)
    poll_interval_s: float = Field(default=3.0, gt=0)


class AppConfig(BaseModel):
    """Top-level application configuration."""

    preprocessing: PreprocessingConfig = Field(default_factory=PreprocessingConfig)
    ocr: OCRConfig = Field(default_factory=OCRConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    log_level: str = "INFO"


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.
            Defaults to configs/config.yaml.

    Returns:
        Validated application configuration.

    Raises:
        ConfigurationError: If the file is not a mapping or fails validation.
    """
    if path is None:
        path = Path("configs/config.yaml")

    if path.exists():
        logger.info("Loading configuration from %s", path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        try:
            return AppConfig(**raw)
        except ValidationError as exc:
            first = exc.errors()[0]
            key = ".".join(str(part) for part in first["loc"])
            raise ConfigurationError(
                f"Invalid configuration in {path}: {first['msg']}", config_key=key
            ) from exc

    logger.info("No config file found at %s, using defaults", path)
    return AppConfig()
