from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


def load_yaml_dict(
    path: str | Path,
    *,
    error_message: str | None = None,
) -> dict[str, Any]:
    resolved = Path(path)
    with resolved.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if isinstance(payload, dict):
        return payload
    if error_message is not None:
        raise ValueError(error_message)
    raise ValueError(f"Expected YAML object in '{resolved}'.")


def coerce_string_map(value: Any, *, field_name: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Expected '{field_name}' to be a mapping.")
    coerced: dict[str, str] = {}
    for raw_key, raw_value in value.items():
        if not isinstance(raw_key, str) or not isinstance(raw_value, str):
            raise TypeError(f"Entries of '{field_name}' must map strings to strings.")
        key = raw_key.strip()
        mapped = raw_value.strip()
        if key and mapped:
            coerced[key] = mapped
    return coerced
