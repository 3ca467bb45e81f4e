"""
Configuration Loader (``guarantee_config.loader``).

Responsibility
--------------
Loads the engine YAML file and parses it into a frozen ``EngineConfig``.
Runtime callers go through ``guarantee_config.get_active_config()``.

Invariants enforced
-------------------
* Unknown keys are rejected at every level; a typo never silently falls
  back to a default.
* Monetary values are parsed as Decimal via ``str()``, never float.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the
  parsed document.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown key or bad value  -> ``ConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from guarantee_config.schema import EngineConfig
from guarantee_kernel.domain.dtos import RefundSettings
from guarantee_kernel.domain.roles import DEFAULT_ROLE_LEVELS
from guarantee_kernel.exceptions import ConfigurationError

ENGINE_KEYS = frozenset(
    {
        "tax_rate",
        "currency",
        "currency_decimal_places",
        "default_refund_settings",
        "role_levels",
        "notifications_enabled",
    }
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _parse_decimal(value: Any, key: str, source: str) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ConfigurationError(source, f"{key} is not a number: {value!r}") from exc


def parse_engine_config(data: dict[str, Any], source: str = "<dict>") -> EngineConfig:
    """Parse an EngineConfig from a dict.

    The document may nest everything under a top-level ``engine`` key.
    """
    if not isinstance(data, dict):
        raise ConfigurationError(source, "top level must be a mapping")
    if set(data) == {"engine"}:
        data = data["engine"] or {}

    unknown = set(data) - ENGINE_KEYS
    if unknown:
        raise ConfigurationError(source, f"unknown keys: {sorted(unknown)}")

    kwargs: dict[str, Any] = {}
    if "tax_rate" in data:
        kwargs["tax_rate"] = _parse_decimal(data["tax_rate"], "tax_rate", source)
    if "currency" in data:
        kwargs["currency"] = str(data["currency"])
    if "currency_decimal_places" in data:
        kwargs["currency_decimal_places"] = int(data["currency_decimal_places"])
    if "notifications_enabled" in data:
        kwargs["notifications_enabled"] = bool(data["notifications_enabled"])

    if "default_refund_settings" in data:
        try:
            kwargs["default_refund_settings"] = RefundSettings.from_mapping(
                data["default_refund_settings"]
            )
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(source, f"default_refund_settings: {exc}") from exc

    if "role_levels" in data:
        raw = data["role_levels"] or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(source, "role_levels must be a mapping")
        levels = dict(DEFAULT_ROLE_LEVELS)
        for role, level in raw.items():
            if not isinstance(level, int) or isinstance(level, bool):
                raise ConfigurationError(source, f"role level for {role!r} must be an integer")
            levels[str(role).lower()] = level
        kwargs["role_levels"] = levels

    try:
        return EngineConfig(checksum=compute_checksum(data), **kwargs)
    except ValueError as exc:
        raise ConfigurationError(source, str(exc)) from exc


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
