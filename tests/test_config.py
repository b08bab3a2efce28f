"""
test_config.py — Tests for settings loading and fail-fast configuration.

Run with:
    pytest tests/test_config.py -v
"""

from __future__ import annotations

import pytest

from weather_bridge.app.core.config import Settings, get_settings, load_settings
from weather_bridge.app.core.errors import ConfigMissingError
from weather_bridge.cli import EXIT_CONFIG, build_parser, main


class TestLoadSettings:

    def test_defaults(self, settings):
        assert settings.PORT == 5005
        assert settings.HOST == "127.0.0.1"
        assert settings.SCHEDULER_INTERVAL_SECONDS == 600.0
        assert settings.ORCHESTRATOR_INTERVAL_SECONDS == 600.0
        assert settings.WEATHER_FETCH_TIMEOUT == 10.0
        assert settings.WEATHER_API_PARAMS is None

    def test_missing_base_url(self, monkeypatch):
        monkeypatch.delenv("WEATHER_API_BASE_URL", raising=False)
        with pytest.raises(ConfigMissingError) as exc:
            load_settings(_env_file=None)
        assert "WEATHER_API_BASE_URL" in exc.value.message

    def test_blank_base_url(self):
        with pytest.raises(ConfigMissingError):
            load_settings(WEATHER_API_BASE_URL="   ")

    def test_blank_params_become_none(self):
        s = load_settings(WEATHER_API_BASE_URL="https://p.test", WEATHER_API_PARAMS="  ")
        assert s.WEATHER_API_PARAMS is None

    def test_non_positive_interval_rejected(self):
        with pytest.raises(ConfigMissingError):
            load_settings(WEATHER_API_BASE_URL="https://p.test", SCHEDULER_INTERVAL_SECONDS=0)

    def test_env_var_read(self, monkeypatch):
        monkeypatch.setenv("WEATHER_API_BASE_URL", "https://env.test/forecast")
        monkeypatch.setenv("WEATHER_API_PARAMS", "hourly=temperature_2m")
        s = get_settings()
        assert s.WEATHER_API_BASE_URL == "https://env.test/forecast"
        assert s.WEATHER_API_PARAMS == "hourly=temperature_2m"
        assert get_settings() is s


class TestDerivedProperties:

    def test_endpoint_host_and_health_url(self):
        s = Settings(
            WEATHER_API_BASE_URL="https://p.test",
            ORCHESTRATOR_ENDPOINT_URL="http://localhost:8080/weather/latest",
        )
        assert s.orchestrator_endpoint_host == "localhost"
        assert s.orchestrator_health_url == "http://localhost:8080/health"

    def test_environment_flags(self):
        s = Settings(WEATHER_API_BASE_URL="https://p.test", ENVIRONMENT="production")
        assert s.is_production
        assert not s.is_development


class TestCli:

    def test_config_failure_exit_code(self, monkeypatch, capsys):
        monkeypatch.delenv("WEATHER_API_BASE_URL", raising=False)
        monkeypatch.chdir("/")
        assert main(["check"]) == EXIT_CONFIG
        assert "WEATHER_API_BASE_URL" in capsys.readouterr().err

    def test_subcommands(self):
        parser = build_parser()
        args = parser.parse_args(["orchestrate", "--once"])
        assert args.command == "orchestrate"
        assert args.once is True
        args = parser.parse_args(["orchestrate", "--location", "3"])
        assert args.location == 3
        args = parser.parse_args(["provision", "--no-probe"])
        assert args.no_probe is True and args.no_seed is False

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
