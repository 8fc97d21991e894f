"""Paginated extraction from a facility locator HTTP API."""

from __future__ import annotations

import logging
from typing import Any

from facility_etl.common.context import RunContext
from facility_etl.common.http import HttpClient, HttpRequestError
from facility_etl.common.logging import log_event
from facility_etl.common.models import RawRecord

PAGE_ROW_KEYS = ("facilities", "results", "data", "rows")
STAGE = "extract"


def parse_page(payload: Any) -> tuple[list[RawRecord], bool | None]:
    """Return the page's rows and whether the payload says another page exists.

    The second value is None when the payload carries no pagination hint.
    """
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)], None
    if not isinstance(payload, dict):
        raise HttpRequestError(f"Unexpected payload type: {type(payload).__name__}")

    rows = next((payload[key] for key in PAGE_ROW_KEYS if isinstance(payload.get(key), list)), [])
    rows = [row for row in rows if isinstance(row, dict)]

    pagination = payload.get("pagination")
    if isinstance(pagination, dict) and "hasNextPage" in pagination:
        return rows, bool(pagination["hasNextPage"])
    page, total_pages = payload.get("page"), payload.get("totalPages")
    if isinstance(page, int) and isinstance(total_pages, int):
        return rows, page < total_pages
    return rows, None


def build_params(endpoint: dict, *, location: str | None, page: int, page_size: int) -> dict[str, Any]:
    params = dict(endpoint.get("params") or {})
    if location:
        params[endpoint.get("location_param", "location")] = location
    if endpoint.get("paginated", True):
        params[endpoint.get("page_param", "page")] = page
        params[endpoint.get("limit_param", "limit")] = page_size
    return params


def fetch_endpoint(
    client: HttpClient,
    endpoint: dict,
    ctx: RunContext,
    *,
    location: str | None = None,
    page_size: int = 100,
    max_pages: int = 50,
) -> list[RawRecord]:
    paginated = endpoint.get("paginated", True)
    rows: list[RawRecord] = []

    for page in range(1, max_pages + 1):
        params = build_params(endpoint, location=location, page=page, page_size=page_size)
        try:
            payload = client.get_json(endpoint["url"], params=params)
            page_rows, has_next = parse_page(payload)
        except HttpRequestError as exc:
            if page == 1:
                raise
            # Keep what earlier pages returned.
            log_event(
                ctx.logger,
                f"pagination stopped at page {page}: {exc}",
                level=logging.WARNING,
                run_id=ctx.run_id,
                stage=STAGE,
                source=endpoint["name"],
                event="PAGE_FAIL",
                status="partial",
                error_code=exc.error_code,
                rows_out=len(rows),
            )
            break

        rows.extend(page_rows)
        log_event(
            ctx.logger,
            f"fetched page {page}",
            level=logging.DEBUG,
            run_id=ctx.run_id,
            stage=STAGE,
            source=endpoint["name"],
            event="PAGE_OK",
            status="ok",
            rows_in=len(page_rows),
        )

        if not paginated or not page_rows or has_next is False:
            break
        if has_next is None and len(page_rows) < page_size:
            break
        if ctx.cancelled:
            break
    else:
        log_event(
            ctx.logger,
            f"page cap of {max_pages} reached",
            level=logging.WARNING,
            run_id=ctx.run_id,
            stage=STAGE,
            source=endpoint["name"],
            event="PAGE_CAP",
            status="partial",
            rows_out=len(rows),
        )

    return rows
