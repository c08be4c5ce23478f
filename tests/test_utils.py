"""Tests for vmlab.utils module."""

from __future__ import annotations

import subprocess
from unittest.mock import patch

import pytest

from vmlab import utils
from vmlab.exceptions import ConfigError
from vmlab.utils import (
    get_env,
    get_env_bool,
    log,
    parse_float_env,
    parse_int_env,
    random_identifier,
    require_env,
    run,
    sanitize_identifier,
    set_verbose,
)


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_debug_suppressed_by_default(self, capsys, monkeypatch):
        monkeypatch.setattr(utils, "_verbose", False)
        log("DEBUG", "should not appear")
        assert capsys.readouterr().out == ""

    def test_set_verbose_enables_debug(self, capsys, monkeypatch):
        monkeypatch.setattr(utils, "_verbose", False)
        set_verbose(True)
        log("DEBUG", "now visible")
        assert "now visible" in capsys.readouterr().out


class TestGetEnv:
    def test_returns_trimmed_value(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "  hello  ")
        assert get_env("TEST_VAR") == "hello"

    def test_empty_counts_as_unset(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "   ")
        assert get_env("TEST_VAR", "fallback") == "fallback"

    def test_returns_none_without_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR") is None


class TestRequireEnv:
    def test_uses_fallback_name(self, monkeypatch):
        monkeypatch.delenv("GUAC_ADMIN_USER", raising=False)
        monkeypatch.setenv("GUAC_USER", "admin")
        assert require_env("GUAC_ADMIN_USER", "GUAC_USER") == "admin"

    def test_missing_names_primary_variable(self, monkeypatch):
        monkeypatch.delenv("GUAC_ADMIN_USER", raising=False)
        monkeypatch.delenv("GUAC_USER", raising=False)
        with pytest.raises(ConfigError, match="GUAC_ADMIN_USER"):
            require_env("GUAC_ADMIN_USER", "GUAC_USER")


class TestGetEnvBool:
    @pytest.mark.parametrize("value", ["1", "true", "yes", "on", "TRUE"])
    def test_truthy_values(self, monkeypatch, value):
        monkeypatch.setenv("TEST_BOOL", value)
        assert get_env_bool("TEST_BOOL") is True

    @pytest.mark.parametrize("value", ["0", "false", "off", "random"])
    def test_falsy_values(self, monkeypatch, value):
        monkeypatch.setenv("TEST_BOOL", value)
        assert get_env_bool("TEST_BOOL") is False


class TestParseNumbers:
    def test_int_bounds(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "0")
        with pytest.raises(ConfigError, match=">= 1"):
            parse_int_env("MY_INT", "10")

    def test_int_non_integer(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "abc")
        with pytest.raises(ConfigError, match="must be an integer"):
            parse_int_env("MY_INT", "10")

    def test_float_default(self, monkeypatch):
        monkeypatch.delenv("MY_FLOAT", raising=False)
        assert parse_float_env("MY_FLOAT", 2.5) == 2.5

    @pytest.mark.parametrize("value", ["0", "-1", "soon"])
    def test_float_rejects_invalid(self, monkeypatch, value):
        monkeypatch.setenv("MY_FLOAT", value)
        with pytest.raises(ConfigError):
            parse_float_env("MY_FLOAT", 1.0)


class TestSanitizeIdentifier:
    def test_connection_name(self):
        assert sanitize_identifier("My Connection/01") == "my-connection-01"

    def test_collapses_and_strips(self):
        assert sanitize_identifier("--Foo__Bar!!") == "foo-bar"

    def test_non_ascii_is_dropped(self):
        assert sanitize_identifier("Ünïcode Box") == "n-code-box"

    def test_nothing_usable(self):
        assert sanitize_identifier("!!!") == ""

    def test_random_identifier_is_hex(self):
        ident = random_identifier()
        assert len(ident) == 32
        assert sanitize_identifier(ident) == ident


class TestRun:
    @patch("vmlab.utils.subprocess.run")
    def test_passes_text_and_check(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["true"], 0)
        run(["true"], capture_output=True)
        mock_run.assert_called_once_with(["true"], check=True, text=True, capture_output=True)
