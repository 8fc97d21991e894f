"""Extraction orchestration with per-location isolation and endpoint fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from facility_etl.common.context import RunContext
from facility_etl.common.errors import ConfigError, PipelineFatalError
from facility_etl.common.fs import read_json, write_json
from facility_etl.common.http import HttpClient, HttpRequestError, RetryConfig, TimeoutConfig
from facility_etl.common.logging import log_event
from facility_etl.common.models import RawRecord, SourceFormat
from facility_etl.extract.api_source import fetch_endpoint
from facility_etl.extract.file_source import read_records

STAGE = "extract"


@dataclass(frozen=True)
class Extraction:
    source: str
    source_format: SourceFormat
    origin: str
    rows: list[RawRecord]
    failed_locations: tuple[str, ...] = ()


def extract_file(path: Path, cfg: dict, ctx: RunContext) -> Extraction:
    source_format, rows = read_records(
        path,
        delimiter=cfg["file"]["delimiter"],
        encoding=cfg["file"]["encoding"],
    )
    log_event(
        ctx.logger,
        f"read {len(rows)} rows from {path}",
        run_id=ctx.run_id,
        stage=STAGE,
        source="file",
        event="EXTRACT_END",
        status="ok",
        rows_out=len(rows),
    )
    return Extraction(source="file", source_format=source_format, origin=str(path), rows=rows)


def build_http_client(cfg: dict, ctx: RunContext) -> HttpClient:
    api = cfg["api"]
    timeout = float(api["timeout_seconds"])
    return HttpClient(
        timeout=TimeoutConfig(connect=min(timeout, 10.0), read=timeout),
        retry=RetryConfig(max_attempts=int(api["max_attempts"])),
        rate_per_sec=float(api["rate_per_sec"]),
        sleep=ctx.sleep,
        logger=ctx.logger,
        run_id=ctx.run_id,
    )


def load_checkpoint(path: Path | None, ctx: RunContext) -> dict[str, dict]:
    """Locations already extracted by an earlier, unfinished run."""
    if path is None or not path.exists():
        return {}
    try:
        payload = read_json(path)
    except (OSError, ValueError) as exc:
        log_event(
            ctx.logger,
            f"ignoring unreadable checkpoint {path}: {exc}",
            level=logging.WARNING,
            run_id=ctx.run_id,
            stage=STAGE,
            event="CHECKPOINT_INVALID",
            status="error",
        )
        return {}
    locations = payload.get("locations") if isinstance(payload, dict) else None
    return locations if isinstance(locations, dict) else {}


def save_checkpoint(path: Path | None, completed: dict[str, dict], ctx: RunContext) -> None:
    if path is None:
        return
    try:
        write_json(path, {"run_id": ctx.run_id, "locations": completed})
    except OSError as exc:
        log_event(
            ctx.logger,
            f"unable to save checkpoint {path}: {exc}",
            level=logging.WARNING,
            run_id=ctx.run_id,
            stage=STAGE,
            event="CHECKPOINT_FAIL",
            status="error",
        )


def clear_checkpoint(path: Path | None) -> None:
    if path is not None and path.exists():
        path.unlink()


def _extract_location(
    client: HttpClient,
    cfg: dict,
    ctx: RunContext,
    location: str | None,
) -> tuple[str, list[RawRecord]]:
    """Try each endpoint in order for one location; the first yielding rows wins."""
    endpoints = cfg["api"]["endpoints"]
    failures: list[str] = []
    for endpoint in endpoints:
        try:
            rows = fetch_endpoint(
                client,
                endpoint,
                ctx,
                location=location,
                page_size=int(cfg["api"]["page_size"]),
                max_pages=int(cfg["api"]["max_pages"]),
            )
        except HttpRequestError as exc:
            failures.append(endpoint["name"])
            log_event(
                ctx.logger,
                f"endpoint {endpoint['name']} failed for {location or 'all locations'}: {exc}",
                level=logging.WARNING,
                run_id=ctx.run_id,
                stage=STAGE,
                source=endpoint["name"],
                event="ENDPOINT_FAIL",
                status="error",
                error_code=exc.error_code,
            )
            continue

        if rows:
            return endpoint["name"], rows

        log_event(
            ctx.logger,
            f"endpoint {endpoint['name']} returned no rows for {location or 'all locations'}",
            run_id=ctx.run_id,
            stage=STAGE,
            source=endpoint["name"],
            event="ENDPOINT_EMPTY",
            status="ok",
        )

    if len(failures) == len(endpoints):
        raise PipelineFatalError(f"All API endpoints failed: {', '.join(failures)}")
    return "none", []


def extract_api(
    cfg: dict,
    ctx: RunContext,
    *,
    locations: Sequence[str] | None = None,
    http_client: HttpClient | None = None,
    checkpoint_path: Path | None = None,
) -> Extraction:
    """Extract every location, isolating failures per location.

    Locations default to ``api.locations``; with none configured a single
    unfiltered query is made. Completed locations are checkpointed so an
    interrupted run resumes without refetching them. The run is fatal only
    when every location fails.
    """
    if not cfg["api"]["endpoints"]:
        raise ConfigError("No API endpoints configured (api.endpoints or FINDTREATMENT_API_URL)")
    targets: list[str | None] = list(locations or cfg["api"].get("locations") or []) or [None]

    completed = load_checkpoint(checkpoint_path, ctx)
    owns_client = http_client is None
    client = http_client or build_http_client(cfg, ctx)
    rows: list[RawRecord] = []
    origins: list[str] = []
    failed: list[str] = []
    try:
        for location in targets:
            if ctx.cancelled:
                break
            key = location or ""
            cached = completed.get(key)
            if cached is not None:
                log_event(
                    ctx.logger,
                    f"reusing checkpointed rows for {location or 'all locations'}",
                    run_id=ctx.run_id,
                    stage=STAGE,
                    source=cached.get("origin"),
                    event="LOCATION_RESUME",
                    status="ok",
                    rows_out=len(cached.get("rows", [])),
                )
                origin, location_rows = cached.get("origin", "none"), list(cached.get("rows", []))
            else:
                try:
                    origin, location_rows = _extract_location(client, cfg, ctx, location)
                except PipelineFatalError as exc:
                    failed.append(key)
                    log_event(
                        ctx.logger,
                        f"location {location or 'all locations'} skipped: {exc}",
                        level=logging.ERROR,
                        run_id=ctx.run_id,
                        stage=STAGE,
                        event="LOCATION_FAIL",
                        status="error",
                        error_code=exc.error_code,
                    )
                    continue
                completed[key] = {"origin": origin, "rows": location_rows}
                save_checkpoint(checkpoint_path, completed, ctx)

            log_event(
                ctx.logger,
                f"extracted {len(location_rows)} rows for {location or 'all locations'} from {origin}",
                run_id=ctx.run_id,
                stage=STAGE,
                source=origin,
                event="EXTRACT_END",
                status="ok",
                rows_out=len(location_rows),
            )
            rows.extend(location_rows)
            if origin != "none" and origin not in origins:
                origins.append(origin)
    finally:
        if owns_client:
            client.close()

    if failed and len(failed) == len(targets):
        raise PipelineFatalError(f"All locations failed: {', '.join(loc or 'all locations' for loc in failed)}")
    return Extraction(
        source="api",
        source_format=SourceFormat.API,
        origin=",".join(origins) or "none",
        rows=rows,
        failed_locations=tuple(failed),
    )


def run_extract(
    source: str,
    cfg: dict,
    ctx: RunContext,
    *,
    path: Path | None = None,
    locations: Sequence[str] | None = None,
    http_client: HttpClient | None = None,
    checkpoint_path: Path | None = None,
) -> Extraction:
    if source == "file":
        if path is None:
            raise ConfigError("--path is required for the file source")
        return extract_file(path, cfg, ctx)
    if source == "api":
        return extract_api(
            cfg,
            ctx,
            locations=locations,
            http_client=http_client,
            checkpoint_path=checkpoint_path,
        )
    raise ConfigError(f"Unknown source: {source}")
