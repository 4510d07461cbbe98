from __future__ import annotations

import logging
import os
import re
from typing import Any, Dict, List, Optional

import yaml

from .bucket import Bucket, Clock, Sleeper
from .models import AppConfig, BucketConfig

logger = logging.getLogger(__name__)

_BUCKET_KEYS = {"name", "capacity", "rate", "fill_interval", "quantum"}


def _coerce_list(val: Any) -> List[Any]:
    if val is None:
        return []
    if isinstance(val, list):
        return val
    return [val]


def _deep_merge(a: Any, b: Any) -> Any:
    """Deep-merge two YAML-loaded structures. Lists of dicts with 'name' merge by name."""
    if isinstance(a, dict) and isinstance(b, dict):
        out = dict(a)
        for k, v in b.items():
            # An explicit null in a later file removes the key
            if v is None:
                out.pop(k, None)
                continue
            out[k] = _deep_merge(out.get(k), v)
        return out
    if isinstance(a, list) and isinstance(b, list):
        if all(isinstance(i, dict) and "name" in i for i in a) and all(
            isinstance(i, dict) and "name" in i for i in b
        ):
            by_name: Dict[str, Dict[str, Any]] = {str(i["name"]): dict(i) for i in a}
            for item in b:
                name = str(item.get("name"))
                if name in by_name:
                    by_name[name] = _deep_merge(by_name[name], item)
                else:
                    by_name[name] = dict(item)
            return list(by_name.values())
        return list(b)
    return b if b is not None else a


_VAR_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def _interpolate(obj: Any, vars_map: Dict[str, str]) -> Any:
    """Recursively interpolate {{ VAR }} in strings using vars_map.
    Raises ValueError if a placeholder has no value.
    """
    if isinstance(obj, str):
        def replace(match: re.Match[str]) -> str:
            key = match.group(1)
            if key not in vars_map or vars_map[key] is None:
                raise ValueError(f"Missing variable '{key}' for template interpolation")
            return str(vars_map[key])

        return _VAR_PATTERN.sub(replace, obj)
    if isinstance(obj, dict):
        return {k: _interpolate(v, vars_map) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate(v, vars_map) for v in obj]
    return obj


def _number(label: str, key: str, val: Any, kind: type) -> Any:
    # Interpolated values arrive as strings
    if isinstance(val, bool):
        raise ValueError(f"Bucket '{label}': '{key}' must be a number")
    if kind is int and isinstance(val, float) and not val.is_integer():
        raise ValueError(f"Bucket '{label}': '{key}' must be an integer, got {val!r}")
    try:
        return kind(val)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Bucket '{label}': '{key}' must be a number, got {val!r}") from e


def _parse_bucket(raw: Any) -> BucketConfig:
    if not isinstance(raw, dict):
        raise ValueError(f"Bucket entries must be mappings, got {raw!r}")
    name = raw.get("name")
    if not name:
        raise ValueError("Every bucket needs a 'name'")
    label = str(name)
    unknown = set(raw) - _BUCKET_KEYS
    if unknown:
        raise ValueError(f"Bucket '{label}' has unknown keys: {', '.join(sorted(unknown))}")
    if "capacity" not in raw:
        raise ValueError(f"Bucket '{label}' is missing 'capacity'")
    has_rate = raw.get("rate") is not None
    has_interval = raw.get("fill_interval") is not None
    if has_rate == has_interval:
        raise ValueError(f"Bucket '{label}' needs exactly one of 'rate' or 'fill_interval'")
    if has_rate and raw.get("quantum") is not None:
        raise ValueError(f"Bucket '{label}': 'quantum' is fitted automatically when 'rate' is set")

    return BucketConfig(
        name=label,
        capacity=_number(label, "capacity", raw["capacity"], int),
        rate=_number(label, "rate", raw["rate"], float) if has_rate else None,
        fill_interval=(
            _number(label, "fill_interval", raw["fill_interval"], float) if has_interval else None
        ),
        quantum=(
            _number(label, "quantum", raw["quantum"], int) if raw.get("quantum") is not None else 1
        ),
    )


def load_config_from_files(paths: List[str]) -> AppConfig:
    if not paths:
        raise ValueError("At least one config file must be provided")
    merged: Dict[str, Any] = {}
    for p in paths:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file '{p}' must contain a mapping at the top level")
        merged = _deep_merge(merged, data)

    # Build vars map: environment first, then config vars override env
    env_vars = dict(os.environ)
    cfg_vars = merged.get("vars", {}) or {}
    if not isinstance(cfg_vars, dict):
        raise ValueError("'vars' must be a mapping of key: value")
    vars_map: Dict[str, str] = {**env_vars, **{k: str(v) for k, v in cfg_vars.items()}}

    merged = _interpolate(merged, vars_map)

    buckets: List[BucketConfig] = []
    seen = set()
    for raw in _coerce_list(merged.get("buckets")):
        if not raw:
            continue
        b = _parse_bucket(raw)
        if b.name in seen:
            raise ValueError(f"Duplicate bucket name '{b.name}'")
        seen.add(b.name)
        buckets.append(b)
    logger.debug("Loaded %d bucket definitions: %s", len(buckets), ", ".join(b.name for b in buckets))

    return AppConfig(buckets=buckets)


def build_bucket(
    cfg: BucketConfig,
    *,
    clock: Optional[Clock] = None,
    sleep: Optional[Sleeper] = None,
) -> Bucket:
    try:
        if cfg.rate is not None:
            return Bucket.with_rate(cfg.rate, cfg.capacity, clock=clock, sleep=sleep)
        if cfg.fill_interval is None:
            raise ValueError("needs exactly one of 'rate' or 'fill_interval'")
        return Bucket(cfg.fill_interval, cfg.capacity, cfg.quantum, clock=clock, sleep=sleep)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Bucket '{cfg.name}': {e}") from e


def build_buckets(
    cfg: AppConfig,
    *,
    clock: Optional[Clock] = None,
    sleep: Optional[Sleeper] = None,
) -> Dict[str, Bucket]:
    return {b.name: build_bucket(b, clock=clock, sleep=sleep) for b in cfg.buckets}
