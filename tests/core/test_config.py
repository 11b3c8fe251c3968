"""Tests for configuration models and the YAML loader."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from docharvest.core.config import (
    AppConfig,
    ConfigError,
    OrchestratorConfig,
    load_app_config,
    validate_app_config_file,
)
from docharvest.core.config.models import MIB


def write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


class TestOrchestratorConfig:
    def test_defaults(self) -> None:
        config = OrchestratorConfig()
        assert config.hard_max_concurrency == 3
        assert config.default_concurrency == 1
        assert config.throttle_cooldown_seconds == 45
        assert config.storage_low_water_bytes == 350 * MIB
        assert config.storage_high_water_bytes == 650 * MIB
        assert config.extract_timeout_seconds == 360
        assert config.extract_timeout_local_images_seconds == 720
        assert config.extract_attempts == 3
        assert config.extract_retry_delay_seconds == 2
        assert config.backfill_delay_seconds == 0.3
        assert config.progress_persist_interval_seconds == 1.5

    def test_high_water_must_not_be_below_low_water(self) -> None:
        with pytest.raises(ValidationError):
            OrchestratorConfig(storage_low_water_bytes=10, storage_high_water_bytes=5)

    def test_default_concurrency_clamped_to_hard_max(self) -> None:
        assert OrchestratorConfig(hard_max_concurrency=2, default_concurrency=5).default_concurrency == 2


class TestLoadAppConfig:
    def test_missing_file_gives_defaults(self, tmp_path) -> None:
        config = load_app_config(tmp_path / "nope.yaml")
        assert config == AppConfig()
        assert config.store.url == "sqlite:///data/docharvest.db"

    def test_loads_nested_sections(self, tmp_path) -> None:
        path = write(
            tmp_path / "app.yaml",
            """
orchestrator:
  default_concurrency: 2
  throttle_cooldown_seconds: 10
browser:
  browser: firefox
  headless: false
logging:
  level: DEBUG
  file: null
""",
        )
        config = load_app_config(path)
        assert config.orchestrator.default_concurrency == 2
        assert config.orchestrator.throttle_cooldown_seconds == 10
        assert config.browser.browser.value == "firefox"
        assert config.browser.headless is False
        assert config.logging.file is None

    def test_env_expansion(self, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("DOCHARVEST_TEST_DB", "sqlite:///tmp/test.db")
        monkeypatch.delenv("DOCHARVEST_UNSET", raising=False)
        path = write(
            tmp_path / "app.yaml",
            """
store:
  url: ${DOCHARVEST_TEST_DB}
export_dir: ${DOCHARVEST_UNSET:-out/files}
""",
        )
        config = load_app_config(path)
        assert config.store.url == "sqlite:///tmp/test.db"
        assert config.export_dir == Path("out/files")

    def test_expansion_can_be_disabled(self, tmp_path) -> None:
        path = write(tmp_path / "app.yaml", "export_dir: ${SOME_VAR:-x}\n")
        assert load_app_config(path, expand_env=False).export_dir == Path("${SOME_VAR:-x}")

    def test_invalid_values_raise_config_error(self, tmp_path) -> None:
        path = write(tmp_path / "app.yaml", "orchestrator:\n  extract_attempts: 0\n")
        with pytest.raises(ConfigError) as exc_info:
            load_app_config(path)
        assert exc_info.value.path == path
        assert "extract_attempts" in exc_info.value.details

    def test_bad_yaml(self, tmp_path) -> None:
        path = write(tmp_path / "app.yaml", "orchestrator: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_app_config(path)

    def test_top_level_must_be_mapping(self, tmp_path) -> None:
        path = write(tmp_path / "app.yaml", "- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_app_config(path)


class TestValidateAppConfigFile:
    def test_valid_file(self, tmp_path) -> None:
        path = write(tmp_path / "app.yaml", "export_dir: out\n")
        assert validate_app_config_file(path) == []

    def test_reports_field_errors(self, tmp_path) -> None:
        path = write(tmp_path / "app.yaml", "browser:\n  viewport_width: 10\n")
        errors = validate_app_config_file(path)
        assert len(errors) == 1
        assert errors[0].startswith("browser.viewport_width")

    def test_missing_file(self, tmp_path) -> None:
        errors = validate_app_config_file(tmp_path / "missing.yaml")
        assert "not found" in errors[0]

    def test_ensure_directories(self, tmp_path) -> None:
        config = AppConfig(
            config_dir=tmp_path / "c",
            data_dir=tmp_path / "d",
            export_dir=tmp_path / "e",
            logging={"file": tmp_path / "logs" / "x.log"},
        )
        config.ensure_directories()
        for name in ("c", "d", "e", "logs"):
            assert (tmp_path / name).is_dir()
