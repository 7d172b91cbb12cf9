"""
stock_config -- single public entrypoint for stock policy.

Responsibility:
    ``get_active_config()`` is the only way runtime code obtains policy.
    It layers an optional deployment file and in-process overrides over
    the packaged ``defaults.yaml`` and returns a frozen ``StockPolicy``.

Architecture position:
    Configuration -- above ``stock_kernel`` and below ``stock_services``.
    The kernel MUST NEVER import from ``stock_config``; the StockCore
    facade maps policy values onto kernel constructor arguments.

Failure modes:
    - ``FileNotFoundError`` -- config_path does not exist.
    - ``ValueError`` -- unknown section/key, wrong type, failed validation.

Audit relevance:
    Every call emits a ``STOCK_CONFIG_TRACE`` record with the policy
    checksum and the values that govern lot creation and risk.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from stock_config.loader import (
    DEFAULTS_PATH,
    compute_checksum,
    load_policy,
    load_yaml_file,
    merge_policy_data,
    parse_policy,
)
from stock_config.schema import (
    BatchPolicy,
    FifoPolicy,
    LotPolicy,
    ReconciliationPolicy,
    RetryPolicy,
    RiskPolicy,
    RotationPolicy,
    StockPolicy,
)

_logger = logging.getLogger("stock_kernel.config")


def get_active_config(
    config_path: Path | str | None = None,
    overrides: dict[str, dict[str, Any]] | None = None,
) -> StockPolicy:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: deployment YAML layered over the defaults.
        overrides: ``{section: {key: value}}`` applied last (tests,
            per-tenant tweaks).
    """
    data = load_yaml_file(DEFAULTS_PATH)
    if config_path is not None:
        data = merge_policy_data(data, load_yaml_file(Path(config_path)))
    if overrides:
        data = merge_policy_data(data, overrides)
    policy = parse_policy(data)

    _logger.info(
        "STOCK_CONFIG_TRACE",
        extra={
            "trace_type": "STOCK_CONFIG_TRACE",
            "checksum": policy.checksum,
            "source": str(config_path) if config_path is not None else "defaults",
            "override_sections": sorted(overrides) if overrides else [],
            "one_lot_per_reception": policy.lots.one_lot_per_reception,
            "auto_generate_lot_numbers": policy.lots.auto_generate_lot_numbers,
            "chunk_size": policy.batch.chunk_size,
        },
    )
    return policy


__all__ = [
    "BatchPolicy",
    "FifoPolicy",
    "LotPolicy",
    "ReconciliationPolicy",
    "RetryPolicy",
    "RiskPolicy",
    "RotationPolicy",
    "StockPolicy",
    "compute_checksum",
    "get_active_config",
    "load_policy",
]
