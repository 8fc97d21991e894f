"""Configuration loading and validation."""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Mapping

from facility_etl.common.constants import DEFAULT_PIPELINE_CONFIG
from facility_etl.common.errors import ConfigError
from facility_etl.common.fs import read_yaml
from facility_etl.common.schema import validate_pipeline_config

CONFIG_FILENAME = "pipeline.yml"

# (env var, config path, cast)
ENV_OVERRIDES: tuple[tuple[str, tuple[str, ...], type], ...] = (
    ("DATABASE_URI", ("database", "uri"), str),
    ("ETL_BATCH_SIZE", ("load", "batch_size"), int),
    ("ETL_RETRY_ATTEMPTS", ("load", "max_attempts"), int),
    ("ETL_CONCURRENCY", ("load", "workers"), int),
    ("ETL_TIMEOUT_SECONDS", ("api", "timeout_seconds"), float),
    ("ETL_TIMEOUT_SECONDS", ("database", "connect_timeout_seconds"), float),
)


def _deep_merge(base: Any, overlay: Any) -> Any:
    if isinstance(base, dict) and isinstance(overlay, dict):
        merged = dict(base)
        for key, value in overlay.items():
            if key in merged:
                merged[key] = _deep_merge(merged[key], value)
            else:
                merged[key] = value
        return merged
    return overlay


def _load_yaml_with_overlay(path: Path, overlay_path: Path | None) -> dict:
    base = read_yaml(path) if path.exists() else {}
    if overlay_path is None or not overlay_path.exists():
        return base or {}
    overlay = read_yaml(overlay_path)
    return _deep_merge(base or {}, overlay or {})


def _set_path(cfg: dict, path: tuple[str, ...], value: Any) -> None:
    node = cfg
    for key in path[:-1]:
        node = node.setdefault(key, {})
    node[path[-1]] = value


def apply_env_overrides(cfg: dict, env: Mapping[str, str]) -> dict:
    out = copy.deepcopy(cfg)
    for var, path, cast in ENV_OVERRIDES:
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {var}: {raw!r}") from exc
        _set_path(out, path, value)

    api_url = env.get("FINDTREATMENT_API_URL")
    if api_url:
        out["api"]["endpoints"] = [{"name": "env", "url": api_url}]
    return out


def load_pipeline_config(
    config_dir: Path | None,
    *,
    overlay_config_dir: Path | None = None,
    env: Mapping[str, str] | None = None,
    allow_unknown: bool = False,
) -> dict:
    cfg = copy.deepcopy(DEFAULT_PIPELINE_CONFIG)
    if config_dir is not None:
        overlay_path = overlay_config_dir / CONFIG_FILENAME if overlay_config_dir is not None else None
        file_cfg = _load_yaml_with_overlay(config_dir / CONFIG_FILENAME, overlay_path)
        if not isinstance(file_cfg, dict):
            raise ConfigError(f"{config_dir / CONFIG_FILENAME} must contain a mapping")
        cfg = _deep_merge(cfg, file_cfg)

    cfg = apply_env_overrides(cfg, os.environ if env is None else env)
    return validate_pipeline_config(cfg, allow_unknown=allow_unknown)
