"""
Tests for configuration loading and validation.
"""

import os
from unittest.mock import patch

import pytest

from src.phone_orders.config import ConfigError, get_config, init_config


class TestConfig:

    def test_defaults(self):
        config = get_config()

        assert config.public_host == "test.ngrok.io"
        assert config.settle_window_ms == 5000
        assert config.greeting_grace_ms == 2000
        assert config.response_debounce_ms == 800
        assert config.duplicate_threshold == 0.75
        assert config.tax_rate == 0.08
        assert config.openai_realtime_vad_threshold == 0.7
        assert config.openai_realtime_max_output_tokens == 256

    def test_urls(self):
        config = get_config()

        assert config.ws_url == "wss://test.ngrok.io/media-stream"
        assert config.realtime_ws_url == "wss://api.openai.com/v1/realtime?model=gpt-realtime-mini"

    def test_config_is_cached(self):
        assert get_config() is get_config()

    def test_malformed_numbers_fall_back_to_defaults(self):
        with patch.dict(os.environ, {"SETTLE_WINDOW_MS": "soon", "TAX_RATE": "eight", "LOG_TRANSCRIPTS": "no"}):
            get_config.cache_clear()
            config = get_config()

        assert config.settle_window_ms == 5000
        assert config.tax_rate == 0.08
        assert config.log_transcripts is False

    def test_init_config_validates(self):
        assert init_config().public_host == "test.ngrok.io"

    def test_missing_required_keys_listed(self):
        with patch.dict(os.environ, {"PUBLIC_HOST": "", "OPENAI_API_KEY": ""}):
            get_config.cache_clear()

            with pytest.raises(ConfigError) as exc_info:
                init_config()

        message = str(exc_info.value)
        assert "PUBLIC_HOST" in message
        assert "OPENAI_API_KEY" in message

    @pytest.mark.parametrize(
        "env",
        [
            {"OPENAI_REALTIME_VAD_THRESHOLD": "1.5"},
            {"TAX_RATE": "-0.1"},
            {"SETTLE_WINDOW_MS": "1000", "GREETING_GRACE_MS": "2000"},
        ],
    )
    def test_out_of_range_tuning_rejected(self, env):
        with patch.dict(os.environ, env):
            get_config.cache_clear()

            with pytest.raises(ConfigError):
                get_config().validate()
