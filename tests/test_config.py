"""
tests/test_config.py — YAML Configuration Loader Tests
=======================================================
"""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from lumina.config import load_config


def _write(tmp_path, text: str):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_loads_required_and_defaults(tmp_path):
    cfg = load_config(_write(tmp_path, (
        "platform_name: Lumina\n"
        "api_port: 8000\n"
        "program_start_date: 2025-01-01\n"
    )))
    assert cfg.platform_name == "Lumina"
    assert cfg.api_port == 8000
    assert cfg.program_start_date == date(2025, 1, 1)
    assert cfg.program_start == datetime(2025, 1, 1, tzinfo=UTC)
    assert cfg.currency_symbol == "AXM"
    assert cfg.referral_code_length == 8
    assert cfg.pending_expiry_days == 30


def test_quoted_date_and_overrides(tmp_path):
    cfg = load_config(_write(tmp_path, (
        "platform_name: Lumina\n"
        "api_port: '9000'\n"
        "program_start_date: '2025-06-15'\n"
        "currency_symbol: LUM\n"
        "referral_code_length: 10\n"
        "pending_expiry_days: 14\n"
    )))
    assert cfg.api_port == 9000
    assert cfg.program_start_date == date(2025, 6, 15)
    assert cfg.currency_symbol == "LUM"
    assert cfg.referral_code_length == 10
    assert cfg.pending_expiry_days == 14


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError, match="config.yaml.example"):
        load_config(tmp_path / "absent.yaml")


def test_missing_required_key(tmp_path):
    with pytest.raises(KeyError):
        load_config(_write(tmp_path, "platform_name: Lumina\napi_port: 8000\n"))


def test_config_is_frozen(tmp_path):
    cfg = load_config(_write(tmp_path, (
        "platform_name: Lumina\napi_port: 8000\nprogram_start_date: 2025-01-01\n"
    )))
    with pytest.raises(AttributeError):
        cfg.api_port = 1
