"""Tests for Settings and the immutable GovernanceConfig."""

from __future__ import annotations

import logging

import pydantic
import pytest
import structlog

from src.carsearch.config import Environment, GovernanceConfig, Settings
from src.carsearch.core.logging_config import configure_structlog, resolve_log_level


class TestGovernanceConfig:
    def test_defaults(self) -> None:
        config = GovernanceConfig()
        assert config.enabled is True
        assert config.offer_approval_threshold == 15000
        assert config.viewing_requires_approval is True
        assert config.max_auto_followups == 3
        assert config.portfolio_exposure_alert is None
        assert config.max_exchanges == 6
        assert config.max_offer_fraction == 0.95
        assert config.approval_ttl_hours is None

    def test_frozen(self) -> None:
        config = GovernanceConfig()
        with pytest.raises(pydantic.ValidationError):
            config.offer_approval_threshold = 1

    def test_fraction_bounds(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            GovernanceConfig(max_offer_fraction=1.5)


class TestSettings:
    def test_env_overrides(self, monkeypatch) -> None:
        monkeypatch.setenv("CHECKPOINTS_ENABLED", "false")
        monkeypatch.setenv("OFFER_APPROVAL_THRESHOLD", "20000")
        monkeypatch.setenv("PORTFOLIO_EXPOSURE_ALERT", "60000")
        monkeypatch.setenv("APPROVAL_TTL_HOURS", "48")

        config = Settings(_env_file=None).governance_config()
        assert config.enabled is False
        assert config.offer_approval_threshold == 20000
        assert config.portfolio_exposure_alert == 60000
        assert config.approval_ttl_hours == 48

    def test_defaults_build_default_config(self, monkeypatch) -> None:
        for name in ("CHECKPOINTS_ENABLED", "OFFER_APPROVAL_THRESHOLD", "MAX_EXCHANGES"):
            monkeypatch.delenv(name, raising=False)
        config = Settings(_env_file=None).governance_config()
        assert config.enabled is True
        assert config.max_exchanges == 6


class TestConfigureStructlog:
    @pytest.mark.parametrize("environment", [Environment.production, Environment.development])
    def test_configures_renderer(self, environment) -> None:
        settings = Settings(ENVIRONMENT=environment, LOG_LEVEL="debug", _env_file=None)
        previous = logging.getLogger().level
        try:
            configure_structlog(settings)
            processors = structlog.get_config()["processors"]
            expected = (
                structlog.processors.JSONRenderer
                if environment == Environment.production
                else structlog.dev.ConsoleRenderer
            )
            assert isinstance(processors[-1], expected)
        finally:
            logging.getLogger().setLevel(previous)
            structlog.reset_defaults()

    @pytest.mark.parametrize(
        ("log_level", "expected"),
        [("debug", logging.DEBUG), ("WARNING", logging.WARNING), ("verbose", logging.INFO)],
    )
    def test_log_level_applied_to_root_logger(self, log_level, expected) -> None:
        root = logging.getLogger()
        previous = root.level
        settings = Settings(LOG_LEVEL=log_level, _env_file=None)
        try:
            configure_structlog(settings)
            assert root.level == expected
            processors = structlog.get_config()["processors"]
            assert processors[0] is structlog.stdlib.filter_by_level
        finally:
            root.setLevel(previous)
            structlog.reset_defaults()

    def test_resolve_log_level(self) -> None:
        assert resolve_log_level("error") == logging.ERROR
        assert resolve_log_level("") == logging.INFO
