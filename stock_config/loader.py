"""
Policy loader (``stock_config.loader``).

Responsibility
--------------
Reads YAML policy files, layers them over the packaged defaults, and
parses the result into ``stock_config.schema`` dataclasses.  Runtime code
goes through ``stock_config.get_active_config()`` instead of calling this
module directly.

Invariants enforced
-------------------
* Unknown sections or keys raise ``ValueError``; a typo never silently
  falls back to a default.
* Money and rates are parsed to ``Decimal`` from their string form.
* ``compute_checksum`` is a deterministic SHA-256 of the effective
  (merged) policy.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Wrong value type or failed section validation  -> ``ValueError``.
"""

from __future__ import annotations

import copy
import dataclasses
import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

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

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

SECTIONS: dict[str, type] = {
    "lots": LotPolicy,
    "fifo": FifoPolicy,
    "risk": RiskPolicy,
    "rotation": RotationPolicy,
    "reconciliation": ReconciliationPolicy,
    "batch": BatchPolicy,
    "retry": RetryPolicy,
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML mapping; an empty file gives {}."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def merge_policy_data(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Section-wise merge; override keys win.  Inputs are not modified."""
    merged = copy.deepcopy(base)
    for section, values in (override or {}).items():
        if section not in SECTIONS:
            raise ValueError(f"Unknown policy section {section!r}")
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ValueError(f"Policy section {section!r} must be a mapping")
        merged.setdefault(section, {}).update(values)
    return merged


def _coerce(section: str, name: str, type_name: str, value: Any) -> Any:
    where = f"{section}.{name}"
    if type_name == "bool":
        if not isinstance(value, bool):
            raise ValueError(f"{where} must be true or false, got {value!r}")
        return value
    if type_name == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{where} must be an integer, got {value!r}")
        return value
    if type_name == "float":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{where} must be a number, got {value!r}")
        return float(value)
    if type_name == "Decimal":
        try:
            return Decimal(str(value))
        except InvalidOperation as exc:
            raise ValueError(f"{where} must be a decimal, got {value!r}") from exc
    if type_name == "str":
        if not isinstance(value, str):
            raise ValueError(f"{where} must be a string, got {value!r}")
        return value
    raise ValueError(f"{where}: unsupported field type {type_name}")


def parse_section(section: str, data: dict[str, Any]) -> Any:
    cls = SECTIONS[section]
    fields = {f.name: f for f in dataclasses.fields(cls)}
    unknown = set(data) - set(fields)
    if unknown:
        raise ValueError(f"Unknown key(s) in {section!r}: {', '.join(sorted(unknown))}")
    kwargs = {
        name: _coerce(section, name, str(fields[name].type), value)
        for name, value in data.items()
    }
    return cls(**kwargs)


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_policy(data: dict[str, Any]) -> StockPolicy:
    for section in data:
        if section not in SECTIONS:
            raise ValueError(f"Unknown policy section {section!r}")
    sections = {name: parse_section(name, data.get(name) or {}) for name in SECTIONS}
    return StockPolicy(**sections, checksum=compute_checksum(data))


def load_policy(path: Path | None = None) -> StockPolicy:
    """
    Parse a policy file layered over the packaged defaults.

    Args:
        path: YAML file with any subset of sections/keys.  None loads the
            defaults alone.
    """
    data = load_yaml_file(DEFAULTS_PATH)
    if path is not None:
        data = merge_policy_data(data, load_yaml_file(Path(path)))
    return parse_policy(data)
