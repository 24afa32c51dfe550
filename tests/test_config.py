"""Tests for settings and logging setup."""

import logging

from cnn_visualizer.config import Settings
from cnn_visualizer.logging_config import LOGGER_NAME, setup_logging


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.port == 3000
        assert settings.engine == 'mock'
        assert settings.chat_model == 'gpt-3.5-turbo'
        assert settings.chat_timeout == 30.0
        assert not settings.chat_enabled

    def test_from_environment(self):
        settings = Settings.from_env({
            'PORT': '8080',
            'OPENAI_API_KEY': 'sk-test',
            'OPENAI_BASE_URL': 'http://localhost:11434/v1',
            'CNN_ENGINE': 'NUMPY',
            'CNN_PACING': '0.5',
            'LOG_LEVEL': 'debug',
        })
        assert settings.port == 8080
        assert settings.chat_enabled
        assert settings.openai_base_url == 'http://localhost:11434/v1'
        assert settings.engine == 'numpy'
        assert settings.pacing == 0.5
        assert settings.log_level == 'DEBUG'

    def test_invalid_numbers_fall_back(self):
        settings = Settings.from_env({'PORT': 'eighty', 'CNN_PACING': '-2'})
        assert settings.port == 3000
        assert settings.pacing == 0.0

    def test_override_skips_none(self):
        settings = Settings().override(port=None, engine='numpy')
        assert settings.port == 3000
        assert settings.engine == 'numpy'


class TestLogging:
    def test_single_handler(self):
        setup_logging('debug')
        logger = setup_logging('DEBUG')
        assert logger.name == LOGGER_NAME
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert logger.propagate is False

    def test_unknown_level_defaults_to_info(self):
        assert setup_logging('chatty').level == logging.INFO
