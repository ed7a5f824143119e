"""
tests/test_api_runner.py — ``python -m lumina.api`` Entry Point Tests
======================================================================
"""

from __future__ import annotations

import importlib

import pytest


@pytest.fixture
def runner(monkeypatch, test_config):
    module = importlib.import_module("lumina.api.__main__")
    calls = []
    monkeypatch.setattr(module, "get_config", lambda: test_config)
    monkeypatch.setattr(module.uvicorn, "run", lambda app, **kw: calls.append((app, kw)))
    return module, calls


def test_serves_on_configured_port(runner, monkeypatch):
    module, calls = runner
    monkeypatch.delenv("API_HOST", raising=False)
    module.main()

    ((app, kwargs),) = calls
    assert app is module.app
    assert kwargs["port"] == 8000
    assert kwargs["host"] == "127.0.0.1"
    assert kwargs["proxy_headers"] is False


def test_host_from_environment(runner, monkeypatch):
    module, calls = runner
    monkeypatch.setenv("API_HOST", "0.0.0.0")
    module.main()
    assert calls[0][1]["host"] == "0.0.0.0"
