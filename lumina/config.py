"""
lumina.config — YAML Configuration Loader
==========================================

Reads ``config.yaml`` for **infrastructure-only** settings (platform
identity, API port, program start date, code length).  All program
tuning values (base reward, decay, caps, anti-Sybil thresholds) live in
the ``referral_program_settings`` table, editable from the admin API.

Usage::

    from lumina.config import load_config

    cfg = load_config()            # reads ./config.yaml by default
    print(cfg.platform_name)       # "Lumina"
    print(cfg.program_start_date)  # 2025-01-01
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object — infrastructure/identity only.
# Program tuning lives in the DB ``referral_program_settings`` table.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class LuminaConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    platform_name: str

    # API
    api_port: int

    # Program
    program_start_date: date  # Day zero for reward decay
    currency_symbol: str = "AXM"
    referral_code_length: int = 8
    pending_expiry_days: int = 30

    @property
    def program_start(self) -> datetime:
        """Program start as a UTC midnight timestamp."""
        return datetime(
            self.program_start_date.year,
            self.program_start_date.month,
            self.program_start_date.day,
            tzinfo=UTC,
        )


def _parse_date(value: object) -> date:
    # PyYAML already turns unquoted ISO dates into ``date`` objects
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> LuminaConfig:
    """Read *path* and return a :class:`LuminaConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return LuminaConfig(
        platform_name=raw["platform_name"],
        api_port=int(raw["api_port"]),
        program_start_date=_parse_date(raw["program_start_date"]),
        currency_symbol=str(raw.get("currency_symbol") or "AXM"),
        referral_code_length=int(raw.get("referral_code_length") or 8),
        pending_expiry_days=int(raw.get("pending_expiry_days") or 30),
    )
