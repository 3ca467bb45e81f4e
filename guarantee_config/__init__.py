"""
guarantee_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the ONLY way to obtain engine configuration at runtime
    through ``get_active_config()``.  Returns a frozen ``EngineConfig``.

Architecture position:
    Configuration -- YAML-driven, validated at load time.  Sits above
    ``guarantee_kernel`` and below ``guarantee_services``; the kernel and
    engines never import from this package.

Invariants enforced:
    - Single entrypoint: runtime config flows through ``get_active_config()``.
    - Resolution order: explicit path, then the ``GUARANTEE_ENGINE_CONFIG``
      environment variable, then built-in defaults.
    - Unknown keys are rejected.

Failure modes:
    - ``FileNotFoundError`` -- the configured path does not exist.
    - ``ConfigurationError`` -- schema or value errors.

Audit relevance:
    Every call emits an ``engine_config_loaded`` record with the source
    and the checksum of the parsed document.
"""

from __future__ import annotations

import os
from pathlib import Path

from guarantee_config.loader import compute_checksum, load_yaml_file, parse_engine_config
from guarantee_config.schema import EngineConfig
from guarantee_kernel.logging_config import get_logger

_logger = get_logger("config")

CONFIG_ENV_VAR = "GUARANTEE_ENGINE_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(config_path: Path | str | None = None) -> EngineConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: Explicit YAML path.  Falls back to the
            ``GUARANTEE_ENGINE_CONFIG`` environment variable, then to the
            built-in defaults.
    """
    path = config_path or os.environ.get(CONFIG_ENV_VAR)
    if path:
        source = str(path)
        config = parse_engine_config(load_yaml_file(Path(path)), source=source)
    else:
        source = "<defaults>"
        config = EngineConfig(checksum=compute_checksum({}))

    _logger.info(
        "engine_config_loaded",
        extra={
            "source": source,
            "checksum": config.checksum,
            "currency": config.currency,
            "tax_rate": str(config.tax_rate),
            "notifications_enabled": config.notifications_enabled,
        },
    )
    return config


__all__ = [
    "CONFIG_ENV_VAR",
    "DEFAULT_CONFIG_PATH",
    "EngineConfig",
    "get_active_config",
    "load_yaml_file",
    "parse_engine_config",
]
