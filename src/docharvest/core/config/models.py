"""
Pydantic configuration models for DocHarvest.

These models provide type-safe configuration with validation for:
- Orchestrator limits, delays and timeouts
- Browser (execution context) settings
- Persistent store connection
- Logging
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enums
# =============================================================================


class JobKind(str, Enum):
    """How a job's extracted output is handled."""

    CONTENT = "content"
    RENDERED_DOCUMENT = "rendered_document"
    PACKAGED_ARCHIVE = "packaged_archive"


class JobStatus(str, Enum):
    """Job lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class BrowserType(str, Enum):
    """Supported Playwright browser engines."""

    CHROMIUM = "chromium"
    FIREFOX = "firefox"
    WEBKIT = "webkit"


# =============================================================================
# Orchestrator Configuration
# =============================================================================


MIB = 1024 * 1024


class OrchestratorConfig(BaseModel):
    """Concurrency, retry and timing settings for the batch orchestrator."""

    hard_max_concurrency: int = Field(
        default=3,
        ge=1,
        le=16,
        description="Upper bound for the operator-configured ceiling",
    )
    default_concurrency: int = Field(
        default=1,
        ge=1,
        description="Ceiling used until an operator or job option sets one",
    )
    throttle_cooldown_seconds: float = Field(
        default=45.0,
        ge=0.0,
        description="Cooldown after a failed job before concurrency may recover",
    )
    storage_low_water_bytes: int = Field(
        default=350 * MIB,
        ge=0,
        description="Stored result size above which concurrency is capped at 2",
    )
    storage_high_water_bytes: int = Field(
        default=650 * MIB,
        ge=0,
        description="Stored result size above which concurrency is forced to 1",
    )
    extract_timeout_seconds: float = Field(
        default=360.0,
        gt=0.0,
        description="Per-attempt extraction timeout",
    )
    extract_timeout_local_images_seconds: float = Field(
        default=720.0,
        gt=0.0,
        description="Per-attempt extraction timeout when images are bundled locally",
    )
    extract_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Extraction attempts per job",
    )
    extract_retry_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Fixed delay between extraction attempts",
    )
    settle_delay_seconds: float = Field(
        default=4.0,
        ge=0.0,
        description="Wait after page load before extraction starts",
    )
    load_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Maximum wait for an execution context to finish loading",
    )
    backfill_delay_seconds: float = Field(
        default=0.3,
        ge=0.0,
        description="Delay before refilling a slot freed by a finished job",
    )
    progress_persist_interval_seconds: float = Field(
        default=1.5,
        ge=0.0,
        description="Minimum interval between persisted progress updates",
    )

    @field_validator("storage_high_water_bytes")
    @classmethod
    def high_water_gte_low(cls, v: int, info: Any) -> int:
        """Ensure the high-water mark is at least the low-water mark."""
        low = info.data.get("storage_low_water_bytes", 0)
        if v < low:
            raise ValueError("storage_high_water_bytes must be >= storage_low_water_bytes")
        return v

    @field_validator("default_concurrency")
    @classmethod
    def default_within_hard_max(cls, v: int, info: Any) -> int:
        hard_max = info.data.get("hard_max_concurrency", 3)
        return min(v, hard_max)


# =============================================================================
# Browser Configuration
# =============================================================================


class BrowserConfig(BaseModel):
    """Playwright execution context settings."""

    browser: BrowserType = Field(
        default=BrowserType.CHROMIUM,
        description="Browser engine",
    )
    headless: bool = Field(
        default=True,
        description="Run browser in headless mode",
    )
    viewport_width: int = Field(default=1440, ge=320, le=7680)
    viewport_height: int = Field(default=900, ge=240, le=4320)
    user_agent: str | None = Field(
        default=None,
        description="Custom user agent (browser default if unset)",
    )
    storage_state_path: Path | None = Field(
        default=None,
        description="Playwright storage state (cookies) to load into every context",
    )


# =============================================================================
# Store Configuration
# =============================================================================


class StoreConfig(BaseModel):
    """Persistent store connection settings."""

    url: str = Field(
        default="sqlite:///data/docharvest.db",
        description="SQLAlchemy database URL",
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements (debugging)",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging settings."""

    level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )
    file: Path | None = Field(
        default=Path("logs/docharvest.log"),
        description="Log file path",
    )
    json_format: bool = Field(
        default=True,
        description="Use JSON format for file logs",
    )
    rich_console: bool = Field(
        default=True,
        description="Use Rich for console output",
    )


# =============================================================================
# Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """Root application configuration.

    This is the main configuration object loaded from app.yaml.
    """

    config_dir: Path = Field(
        default=Path("configs"),
        description="Configuration directory",
    )
    data_dir: Path = Field(
        default=Path("data"),
        description="Data storage directory",
    )
    export_dir: Path = Field(
        default=Path("exports"),
        description="Default directory for exported results",
    )

    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        for dir_path in [self.config_dir, self.data_dir, self.export_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

        if self.logging.file:
            self.logging.file.parent.mkdir(parents=True, exist_ok=True)
