"""Minimal strict schemas for YAML config validation."""

from __future__ import annotations

from facility_etl.common.errors import ConfigError

TOP_LEVEL_KEYS = {"database", "load", "geo", "file", "api"}


def _assert_required_keys(obj: dict, required: set[str], ctx: str) -> None:
    if not isinstance(obj, dict):
        raise ConfigError(f"{ctx} must be a mapping")
    missing = required - set(obj)
    if missing:
        missing_str = ", ".join(sorted(missing))
        raise ConfigError(f"Missing keys in {ctx}: {missing_str}")


def _assert_no_unknown_keys(obj: dict, known: set[str], ctx: str, allow_unknown: bool) -> None:
    if allow_unknown:
        return
    unknown = set(obj) - known
    if unknown:
        unknown_str = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown keys in {ctx}: {unknown_str}")


def _assert_positive_int(value, ctx: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{ctx} must be a positive integer, got {value!r}")


def _assert_non_negative_number(value, ctx: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigError(f"{ctx} must be a non-negative number, got {value!r}")


def validate_bbox(bbox, ctx: str) -> None:
    _assert_required_keys(bbox, {"min_lat", "max_lat", "min_lon", "max_lon"}, ctx)
    if bbox["min_lat"] > bbox["max_lat"] or bbox["min_lon"] > bbox["max_lon"]:
        raise ConfigError(f"{ctx} has inverted bounds")


def validate_endpoint(endpoint: dict, idx: int) -> None:
    ctx = f"api.endpoints[{idx}]"
    _assert_required_keys(endpoint, {"name", "url"}, ctx)
    _assert_no_unknown_keys(
        endpoint,
        {"name", "url", "location_param", "page_param", "limit_param", "params", "paginated"},
        ctx,
        allow_unknown=False,
    )


def validate_pipeline_config(cfg: dict, *, allow_unknown: bool = False) -> dict:
    _assert_required_keys(cfg, TOP_LEVEL_KEYS, "pipeline config")
    _assert_no_unknown_keys(cfg, TOP_LEVEL_KEYS, "pipeline config", allow_unknown)

    _assert_required_keys(cfg["database"], {"uri", "connect_timeout_seconds"}, "database")
    _assert_non_negative_number(cfg["database"]["connect_timeout_seconds"], "database.connect_timeout_seconds")

    load = cfg["load"]
    _assert_required_keys(
        load,
        {"batch_size", "workers", "max_attempts", "backoff_initial_seconds", "backoff_max_seconds"},
        "load",
    )
    _assert_positive_int(load["batch_size"], "load.batch_size")
    _assert_positive_int(load["workers"], "load.workers")
    _assert_positive_int(load["max_attempts"], "load.max_attempts")
    _assert_non_negative_number(load["backoff_initial_seconds"], "load.backoff_initial_seconds")
    _assert_non_negative_number(load["backoff_max_seconds"], "load.backoff_max_seconds")

    _assert_required_keys(cfg["geo"], {"source_epsg", "region_bbox"}, "geo")
    _assert_positive_int(cfg["geo"]["source_epsg"], "geo.source_epsg")
    if cfg["geo"]["region_bbox"] is not None:
        validate_bbox(cfg["geo"]["region_bbox"], "geo.region_bbox")

    _assert_required_keys(cfg["file"], {"delimiter", "encoding"}, "file")

    api = cfg["api"]
    _assert_required_keys(
        api,
        {"timeout_seconds", "max_attempts", "rate_per_sec", "page_size", "max_pages", "endpoints"},
        "api",
    )
    _assert_positive_int(api["max_attempts"], "api.max_attempts")
    _assert_positive_int(api["page_size"], "api.page_size")
    _assert_positive_int(api["max_pages"], "api.max_pages")
    _assert_non_negative_number(api["timeout_seconds"], "api.timeout_seconds")
    _assert_non_negative_number(api["rate_per_sec"], "api.rate_per_sec")
    if api["rate_per_sec"] == 0:
        raise ConfigError("api.rate_per_sec must be greater than zero")
    locations = api.get("locations", [])
    if not isinstance(locations, list) or not all(isinstance(loc, str) and loc.strip() for loc in locations):
        raise ConfigError("api.locations must be a list of non-empty strings")
    if not isinstance(api["endpoints"], list):
        raise ConfigError("api.endpoints must be a list")
    for idx, endpoint in enumerate(api["endpoints"]):
        validate_endpoint(endpoint, idx)

    return cfg
