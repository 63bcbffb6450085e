"""
recon_config -- single public entrypoint for matching configuration.

Responsibility:
    ``get_active_config()`` is the only way services obtain a
    ``MatchingConfig`` at runtime.  The configuration set is chosen from,
    in order: the ``path`` argument, the ``RECON_CONFIG_PATH`` environment
    variable, and the packaged ``sets/default.yaml``.

Architecture position:
    Configuration -- above ``recon_kernel``, below ``recon_engines`` and
    ``recon_services``.  The kernel never imports this package.

Audit relevance:
    Each call emits a ``RECON_CONFIG_TRACE`` record with the source path
    and a checksum of the parsed document, tying every match decision to
    the exact settings in force.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from recon_config.loader import compute_checksum, load_yaml_file, parse_config
from recon_config.schema import MatchingConfig, SignalWeights

_logger = logging.getLogger("recon_kernel.config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"

CONFIG_PATH_ENV_VAR = "RECON_CONFIG_PATH"


def get_active_config(
    tenant_id: object | None = None,
    path: Path | None = None,
) -> MatchingConfig:
    """
    Load the active matching configuration.

    Args:
        tenant_id: When given, the tenant's overrides are applied.
        path: Explicit configuration file; overrides the environment.

    Raises:
        FileNotFoundError: If the selected file does not exist.
        ValueError: If the file contains invalid settings.
    """
    env_path = os.environ.get(CONFIG_PATH_ENV_VAR)
    source = path or (Path(env_path) if env_path else _DEFAULT_CONFIG_PATH)

    data = load_yaml_file(source)
    config = parse_config(data).for_tenant(tenant_id)

    _logger.info(
        "RECON_CONFIG_TRACE",
        extra={
            "trace_type": "RECON_CONFIG_TRACE",
            "config_path": str(source),
            "checksum": compute_checksum(data),
            "tenant_id": str(tenant_id) if tenant_id is not None else None,
            "auto_match_threshold": str(config.auto_match_threshold),
            "tolerance": str(config.tolerance),
        },
    )
    return config


__all__ = ["get_active_config", "MatchingConfig", "SignalWeights", "CONFIG_PATH_ENV_VAR"]
