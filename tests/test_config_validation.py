"""Tests for gateway configuration resolution."""

import pytest

from isogate.config import BIND_TIMEOUT_ENV, DEFAULT_GATEWAY_CONFIG, resolve_gateway_config


class TestResolveGatewayConfig:
    def test_defaults(self):
        config = resolve_gateway_config()
        assert config == DEFAULT_GATEWAY_CONFIG
        assert config is not DEFAULT_GATEWAY_CONFIG
        assert config["bind_timeout"] is None
        assert config["address"] == "127.0.0.1"

    def test_overrides_win(self):
        config = resolve_gateway_config({"connect_timeout": 1.5, "default_python": "pypy3"})
        assert config["connect_timeout"] == 1.5
        assert config["default_python"] == "pypy3"
        assert config["read_timeout"] == DEFAULT_GATEWAY_CONFIG["read_timeout"]

    def test_bind_timeout_from_environment(self, monkeypatch):
        monkeypatch.setenv(BIND_TIMEOUT_ENV, "2.5")
        assert resolve_gateway_config()["bind_timeout"] == 2.5

    def test_explicit_bind_timeout_beats_environment(self, monkeypatch):
        monkeypatch.setenv(BIND_TIMEOUT_ENV, "2.5")
        assert resolve_gateway_config({"bind_timeout": None})["bind_timeout"] is None

    @pytest.mark.parametrize("raw", ["", "soon", "0", "-3"])
    def test_unusable_environment_values_keep_wait_unbounded(self, monkeypatch, raw):
        monkeypatch.setenv(BIND_TIMEOUT_ENV, raw)
        assert resolve_gateway_config()["bind_timeout"] is None

    @pytest.mark.parametrize("interval", [0, -0.1])
    def test_poll_interval_must_be_positive(self, interval):
        with pytest.raises(ValueError, match="poll_interval"):
            resolve_gateway_config({"poll_interval": interval})
