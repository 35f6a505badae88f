"""Tests for bhyvemgr.utils module."""

from __future__ import annotations

import subprocess
from unittest.mock import patch

import pytest

from bhyvemgr.exceptions import ManagerError, ValidationError
from bhyvemgr.utils import (
    ensure_directory,
    get_env,
    log,
    parse_bool,
    parse_int_env,
    run,
    write_file_atomically,
)


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_unknown_level_has_no_colour(self, capsys):
        log("TRACE", "plain")
        assert capsys.readouterr().out == "[TRACE] plain\n"

    def test_debug_suppressed_by_default(self, capsys):
        log("DEBUG", "should not appear")
        captured = capsys.readouterr()
        assert captured.out == ""

    def test_debug_shown_when_verbose(self, capsys):
        with patch("bhyvemgr.utils._LOG_VERBOSE", True):
            log("DEBUG", "visible")
        assert "visible" in capsys.readouterr().out


class TestGetEnv:
    def test_returns_value(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "hello")
        assert get_env("TEST_VAR") == "hello"

    def test_returns_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR", "fallback") == "fallback"
        assert get_env("TEST_VAR") is None


class TestParseIntEnv:
    def test_valid_value(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "42")
        assert parse_int_env("MY_INT", "10") == 42

    def test_default_value(self, monkeypatch):
        monkeypatch.delenv("MY_INT", raising=False)
        assert parse_int_env("MY_INT", "10") == 10

    def test_non_integer_raises(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "abc")
        with pytest.raises(ManagerError, match="must be an integer"):
            parse_int_env("MY_INT", "10")

    def test_bounds(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "0")
        with pytest.raises(ManagerError, match="must be >= 1"):
            parse_int_env("MY_INT", "10")
        monkeypatch.setenv("MY_INT", "70000")
        with pytest.raises(ManagerError, match="must be <= 65535"):
            parse_int_env("MY_INT", "10", max_val=65535)


class TestParseBool:
    @pytest.mark.parametrize("raw,expected", [("true", True), (" Yes ", True), ("0", False), ("off", False)])
    def test_known_values(self, raw, expected):
        assert parse_bool(raw, "flag") is expected

    def test_unknown_value(self):
        with pytest.raises(ValidationError, match="wire must be a boolean"):
            parse_bool("maybe", "wire")


class TestFiles:
    def test_ensure_directory_nested(self, tmp_path):
        target = tmp_path / "a" / "b"
        ensure_directory(target)
        ensure_directory(target)
        assert target.is_dir()

    def test_write_file_atomically(self, tmp_path):
        path = tmp_path / "record.bvmx"
        path.write_text("old")
        write_file_atomically(path, "new")
        assert path.read_text() == "new"
        assert [p.name for p in tmp_path.iterdir()] == ["record.bvmx"]

    def test_failed_rename_cleans_up(self, tmp_path):
        path = tmp_path / "record.bvmx"
        with patch("bhyvemgr.utils.os.replace", side_effect=OSError("read-only")):
            with pytest.raises(OSError, match="read-only"):
                write_file_atomically(path, "data")
        assert list(tmp_path.iterdir()) == []


class TestRun:
    @patch("bhyvemgr.utils.subprocess.run")
    def test_passes_through(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["true"], 0)
        result = run(["true"], check=False, capture_output=True)
        assert result.returncode == 0
        mock_run.assert_called_once_with(["true"], check=False, text=True, capture_output=True)
