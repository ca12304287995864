"""
Tests for engine configuration.

Focus areas:
1. Defaults when the environment is empty
2. Environment overrides and invalid values
3. Dotenv loading never overrides the process environment
"""

import logging

import pytest

from trialtimeline.config import EngineConfig, get_config, load_environment
from trialtimeline.dates import AnchorConvention


ENV_VARS = (
    "TRIALTIMELINE_ANCHOR_DAY",
    "TRIALTIMELINE_COMPLIANCE_THRESHOLD",
    "TRIALTIMELINE_OVERUSE_THRESHOLD",
    "TRIALTIMELINE_DEFAULT_DOSING_FREQUENCY",
    "TRIALTIMELINE_ENV_PATH",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    # setenv first so teardown also removes values written by load_dotenv
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


class TestEngineConfig:
    """Test defaults, overrides and validation."""

    def test_defaults(self):
        config = EngineConfig()

        assert config.anchor_day == 0
        assert config.anchor_convention is AnchorConvention.DAY_0
        assert config.compliance_threshold == 80.0
        assert config.overuse_threshold == 100.0
        assert config.default_dosing_frequency is None

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TRIALTIMELINE_ANCHOR_DAY", "1")
        monkeypatch.setenv("TRIALTIMELINE_COMPLIANCE_THRESHOLD", "85")
        monkeypatch.setenv("TRIALTIMELINE_OVERUSE_THRESHOLD", "110")
        monkeypatch.setenv("TRIALTIMELINE_DEFAULT_DOSING_FREQUENCY", "BID")

        config = EngineConfig()

        assert config.anchor_convention is AnchorConvention.DAY_1
        assert config.compliance_threshold == 85.0
        assert config.overuse_threshold == 110.0
        assert config.default_dosing_frequency == "BID"

    def test_invalid_values_fall_back_with_warning(self, monkeypatch, caplog):
        monkeypatch.setenv("TRIALTIMELINE_ANCHOR_DAY", "2")
        monkeypatch.setenv("TRIALTIMELINE_COMPLIANCE_THRESHOLD", "eighty")

        config = EngineConfig()

        assert config.anchor_day == 0
        assert config.compliance_threshold == 80.0
        assert "Invalid TRIALTIMELINE_ANCHOR_DAY" in caplog.text
        assert "Invalid TRIALTIMELINE_COMPLIANCE_THRESHOLD" in caplog.text

    def test_explicit_arguments_win(self, monkeypatch):
        monkeypatch.setenv("TRIALTIMELINE_ANCHOR_DAY", "1")
        assert EngineConfig(anchor_day=0).anchor_day == 0

    def test_invalid_anchor_day_argument_fails(self):
        with pytest.raises(ValueError, match="anchor_day must be 0 or 1"):
            EngineConfig(anchor_day=2)

    def test_threshold_above_overuse_fails(self):
        with pytest.raises(ValueError, match="compliance_threshold must be between"):
            EngineConfig(compliance_threshold=120.0, overuse_threshold=100.0)


class TestLoadEnvironment:
    """Test dotenv file loading."""

    def test_no_path_configured(self):
        assert load_environment() is False

    def test_missing_file_logged_at_info(self, tmp_path, caplog):
        with caplog.at_level(logging.INFO, logger="trialtimeline.config"):
            assert load_environment(str(tmp_path / "absent.env")) is False

        assert "not found" in caplog.text
        assert not [r for r in caplog.records if r.levelname == "WARNING"]

    def test_loads_file(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("TRIALTIMELINE_COMPLIANCE_THRESHOLD=75\n")
        monkeypatch.setenv("TRIALTIMELINE_ENV_PATH", str(env_file))

        config = get_config()

        assert config.compliance_threshold == 75.0

    def test_process_environment_not_overridden(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("TRIALTIMELINE_COMPLIANCE_THRESHOLD=75\n")
        monkeypatch.setenv("TRIALTIMELINE_COMPLIANCE_THRESHOLD", "90")

        config = get_config(str(env_file))

        assert config.compliance_threshold == 90.0
