"""Tests for the package logger's log directory resolution."""

from __future__ import annotations

import logging
from pathlib import Path

import invoice_engine


def test_log_dir_defaults_to_working_directory(tmp_path):
    assert invoice_engine.resolve_log_dir(environ={}, cwd=tmp_path) == tmp_path / ".logs"


def test_log_dir_honours_environment_override(tmp_path):
    target = tmp_path / "custom-logs"
    environ = {invoice_engine.LOG_DIR_ENV: str(target)}

    assert invoice_engine.resolve_log_dir(environ=environ, cwd=Path("/unused")) == target


def test_blank_override_falls_back_to_working_directory(tmp_path):
    environ = {invoice_engine.LOG_DIR_ENV: "   "}

    assert invoice_engine.resolve_log_dir(environ=environ, cwd=tmp_path) == tmp_path / ".logs"


def test_log_dir_follows_the_current_directory(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    assert invoice_engine.resolve_log_dir(environ={}) == tmp_path / ".logs"


def test_package_logger_has_console_handler():
    handlers = logging.getLogger("invoice_engine").handlers
    assert any(isinstance(handler, logging.StreamHandler) for handler in handlers)
