"""
Unit tests for settings and logging setup.
"""

import logging

import pytest
import structlog
from pydantic import ValidationError

from scorekeeper.core.config import Settings, get_settings
from scorekeeper.core.logging import configure_from_settings, configure_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    level = root.level
    formatters = [(handler, handler.formatter) for handler in root.handlers]
    yield
    root.setLevel(level)
    for handler, formatter in formatters:
        handler.setFormatter(formatter)
    structlog.reset_defaults()


class TestSettings:
    """Test settings validation."""

    def test_test_environment_is_loaded(self):
        settings = get_settings()
        assert settings.ENVIRONMENT == "test"
        assert settings.API_BASE_URL == "http://scoring.test"
        assert settings.API_RETRY_DELAY_SECONDS == 0
        assert settings.SERIALIZE_MUTATIONS is True

    def test_log_level_is_normalized(self):
        assert Settings(LOG_LEVEL="warning").LOG_LEVEL == "WARNING"

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            Settings(LOG_LEVEL="LOUD")

    def test_invalid_environment(self):
        with pytest.raises(ValidationError):
            Settings(ENVIRONMENT="moon")

    def test_api_base_url_trailing_slash_is_stripped(self):
        assert Settings(API_BASE_URL="https://scores.example/").API_BASE_URL == (
            "https://scores.example"
        )

    def test_api_base_url_must_be_http(self):
        with pytest.raises(ValidationError):
            Settings(API_BASE_URL="ftp://scores.example")

    def test_negative_record_version_is_rejected(self):
        with pytest.raises(ValidationError):
            Settings(PERSISTED_RECORD_VERSION=-1)

    def test_environment_flags(self):
        assert Settings(ENVIRONMENT="production").is_production
        assert Settings(ENVIRONMENT="development").is_development


class TestLogging:
    """Test shared stdlib/structlog configuration."""

    def test_configure_logging_sets_level_and_formatter(self, restore_logging):
        configure_logging("WARNING", json_output=True)

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert root.handlers
        assert all(
            isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter)
            for handler in root.handlers
        )
        assert structlog.is_configured()

    def test_configure_from_settings(self, restore_logging):
        configure_from_settings(Settings(LOG_LEVEL="ERROR"))
        assert logging.getLogger().level == logging.ERROR

    def test_structlog_records_reach_stdlib(self, restore_logging, caplog):
        configure_logging("DEBUG")
        with caplog.at_level(logging.INFO, logger="scorekeeper.test"):
            structlog.get_logger("scorekeeper.test").info("cache purged", cache="judge")
        assert any(record.name == "scorekeeper.test" for record in caplog.records)
