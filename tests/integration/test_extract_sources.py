from __future__ import annotations

import copy
import json
from pathlib import Path

import pytest

from facility_etl.common.constants import DEFAULT_PIPELINE_CONFIG
from facility_etl.common.errors import ConfigError, PipelineFatalError
from facility_etl.common.http import HttpRequestError, RetryableHttpError
from facility_etl.common.models import SourceFormat
from facility_etl.extract.api_source import build_params, fetch_endpoint, parse_page
from facility_etl.extract.file_source import read_records
from facility_etl.extract.runner import load_checkpoint, run_extract


class FakeClient:
    """Serves canned payloads per (url, page[, location]); an Exception value is raised instead."""

    def __init__(self, pages: dict):
        self.pages = pages
        self.calls: list[tuple[str, dict]] = []
        self.closed = False

    def get_json(self, url, *, params=None, headers=None, timeout=None):
        params = params or {}
        self.calls.append((url, dict(params)))
        page = params.get("pageNum", params.get("page", 1))
        location = params.get("location")
        payload = self.pages.get((url, page, location), self.pages.get((url, page), []))
        if isinstance(payload, Exception):
            raise payload
        return payload

    def close(self):
        self.closed = True


def _cfg(endpoints: list[dict], **api) -> dict:
    cfg = copy.deepcopy(DEFAULT_PIPELINE_CONFIG)
    cfg["api"]["endpoints"] = endpoints
    cfg["api"].update(api)
    return cfg


def _facility(i: int) -> dict:
    return {"name1": f"Facility {i}", "city": "Reno", "state": "NV"}


def test_read_csv_and_tsv_files(tmp_path: Path):
    csv_path = tmp_path / "facilities.csv"
    csv_path.write_text("name,city,state\nHope House,Reno,NV\n", encoding="utf-8")
    tsv_path = tmp_path / "facilities.tsv"
    tsv_path.write_text("name\tcity\tstate\nHope House\tReno\tNV\n", encoding="utf-8")

    csv_format, csv_rows = read_records(csv_path)
    tsv_format, tsv_rows = read_records(tsv_path)

    assert csv_format is SourceFormat.CSV
    assert csv_rows == tsv_rows == [{"name": "Hope House", "city": "Reno", "state": "NV"}]
    assert tsv_format is SourceFormat.CSV


@pytest.mark.parametrize(
    "payload",
    [
        [{"name": "Hope House"}],
        {"rows": [{"name": "Hope House"}]},
        {"facilities": [{"name": "Hope House"}], "total": 1},
        {"data": [{"name": "Hope House"}, "not a row"]},
    ],
)
def test_read_json_accepts_array_and_wrapped_shapes(tmp_path: Path, payload):
    path = tmp_path / "facilities.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    source_format, rows = read_records(path)

    assert source_format is SourceFormat.JSON
    assert rows == [{"name": "Hope House"}]


def test_missing_file_is_fatal(tmp_path: Path):
    with pytest.raises(PipelineFatalError):
        read_records(tmp_path / "nope.csv")


def test_invalid_json_is_fatal(tmp_path: Path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(PipelineFatalError):
        read_records(path)


def test_parse_page_pagination_hints():
    assert parse_page([{"a": 1}]) == ([{"a": 1}], None)
    assert parse_page({"results": [{"a": 1}], "pagination": {"hasNextPage": False}}) == ([{"a": 1}], False)
    assert parse_page({"rows": [], "page": 1, "totalPages": 3}) == ([], True)
    with pytest.raises(HttpRequestError):
        parse_page("<html>")


def test_build_params_uses_endpoint_names():
    endpoint = {"name": "x", "url": "u", "location_param": "sAddr", "page_param": "pageNum", "params": {"sType": "SA"}}

    assert build_params(endpoint, location="Reno, NV", page=2, page_size=50) == {
        "sType": "SA",
        "sAddr": "Reno, NV",
        "pageNum": 2,
        "limit": 50,
    }


@pytest.mark.integration
def test_fetch_endpoint_follows_has_next_page(run_ctx):
    url = "https://api.example.test/facilities"
    client = FakeClient(
        {
            (url, 1): {"facilities": [_facility(1), _facility(2)], "pagination": {"hasNextPage": True}},
            (url, 2): {"facilities": [_facility(3)], "pagination": {"hasNextPage": False}},
        }
    )

    rows = fetch_endpoint(client, {"name": "primary", "url": url}, run_ctx, location="NV", page_size=2)

    assert [row["name1"] for row in rows] == ["Facility 1", "Facility 2", "Facility 3"]
    assert [params["page"] for _url, params in client.calls] == [1, 2]
    assert client.calls[0][1]["location"] == "NV"


@pytest.mark.integration
def test_fetch_endpoint_stops_on_empty_page_and_page_cap(run_ctx):
    url = "https://api.example.test/facilities"
    client = FakeClient({(url, page): [_facility(page)] for page in range(1, 10)})

    rows = fetch_endpoint(client, {"name": "primary", "url": url}, run_ctx, page_size=1, max_pages=3)
    assert len(rows) == 3

    client = FakeClient({(url, 1): [_facility(1)], (url, 2): []})
    rows = fetch_endpoint(client, {"name": "primary", "url": url}, run_ctx, page_size=1, max_pages=10)
    assert len(rows) == 1


@pytest.mark.integration
def test_failure_after_first_page_keeps_partial_rows(run_ctx):
    url = "https://api.example.test/facilities"
    client = FakeClient({(url, 1): [_facility(1)], (url, 2): RetryableHttpError("503")})

    rows = fetch_endpoint(client, {"name": "primary", "url": url}, run_ctx, page_size=1)

    assert len(rows) == 1


@pytest.mark.integration
def test_first_endpoint_failure_falls_back_to_next(run_ctx):
    primary = "https://primary.example.test/locator"
    fallback = "https://fallback.example.test/locator"
    client = FakeClient(
        {
            (primary, 1): RetryableHttpError("Retryable HTTP status: 503"),
            (fallback, 1): [_facility(1)],
        }
    )
    cfg = _cfg(
        [
            {"name": "primary", "url": primary, "page_param": "pageNum"},
            {"name": "fallback", "url": fallback, "page_param": "pageNum"},
        ],
        page_size=100,
    )

    extraction = run_extract("api", cfg, run_ctx, locations=["Reno, NV"], http_client=client)

    assert extraction.origin == "fallback"
    assert extraction.source_format is SourceFormat.API
    assert len(extraction.rows) == 1
    assert client.closed is False


@pytest.mark.integration
def test_empty_first_endpoint_falls_back_to_next(run_ctx):
    primary = "https://primary.example.test/locator"
    fallback = "https://fallback.example.test/locator"
    client = FakeClient({(primary, 1): {"results": []}, (fallback, 1): [_facility(1), _facility(2)]})
    cfg = _cfg([{"name": "primary", "url": primary}, {"name": "fallback", "url": fallback}])

    extraction = run_extract("api", cfg, run_ctx, http_client=client)

    assert extraction.origin == "fallback"
    assert len(extraction.rows) == 2


@pytest.mark.integration
def test_all_endpoints_failing_is_fatal(run_ctx):
    url = "https://primary.example.test/locator"
    client = FakeClient({(url, 1): HttpRequestError("HTTP status: 500")})

    with pytest.raises(PipelineFatalError):
        run_extract("api", _cfg([{"name": "primary", "url": url}]), run_ctx, http_client=client)


def test_api_source_without_endpoints_is_a_config_error(run_ctx):
    with pytest.raises(ConfigError):
        run_extract("api", _cfg([]), run_ctx, http_client=FakeClient({}))


@pytest.mark.integration
def test_failing_location_is_skipped_and_reported(run_ctx):
    url = "https://primary.example.test/locator"
    client = FakeClient(
        {
            (url, 1, "Reno, NV"): [_facility(1)],
            (url, 1, "Austin, TX"): HttpRequestError("HTTP status 500"),
            (url, 1, "Boise, ID"): [_facility(2)],
        }
    )
    cfg = _cfg([{"name": "primary", "url": url}])

    locations = ["Reno, NV", "Austin, TX", "Boise, ID"]

    extraction = run_extract("api", cfg, run_ctx, locations=locations, http_client=client)

    assert [row["name1"] for row in extraction.rows] == ["Facility 1", "Facility 2"]
    assert extraction.failed_locations == ("Austin, TX",)
    assert extraction.origin == "primary"


@pytest.mark.integration
def test_configured_locations_are_used_and_all_failing_is_fatal(run_ctx):
    url = "https://primary.example.test/locator"
    client = FakeClient(
        {
            (url, 1, "Reno, NV"): HttpRequestError("HTTP status 500"),
            (url, 1, "Boise, ID"): RetryableHttpError("Retryable HTTP status 503"),
        }
    )
    cfg = _cfg([{"name": "primary", "url": url}], locations=["Reno, NV", "Boise, ID"])

    with pytest.raises(PipelineFatalError):
        run_extract("api", cfg, run_ctx, http_client=client)
    assert [params["location"] for _url, params in client.calls] == ["Reno, NV", "Boise, ID"]


@pytest.mark.integration
def test_checkpoint_resumes_without_refetching(tmp_path: Path, run_ctx):
    url = "https://primary.example.test/locator"
    checkpoint = tmp_path / "run_meta" / "api_checkpoint.json"
    checkpoint.parent.mkdir(parents=True)
    checkpoint.write_text(
        json.dumps({"run_id": "run-old", "locations": {"Reno, NV": {"origin": "primary", "rows": [_facility(1)]}}}),
        encoding="utf-8",
    )
    client = FakeClient({(url, 1, "Boise, ID"): [_facility(2)]})
    cfg = _cfg([{"name": "primary", "url": url}])

    extraction = run_extract(
        "api",
        cfg,
        run_ctx,
        locations=["Reno, NV", "Boise, ID"],
        http_client=client,
        checkpoint_path=checkpoint,
    )

    assert len(extraction.rows) == 2
    assert [params["location"] for _url, params in client.calls] == ["Boise, ID"]
    saved = json.loads(checkpoint.read_text(encoding="utf-8"))
    assert sorted(saved["locations"]) == ["Boise, ID", "Reno, NV"]


def test_unreadable_checkpoint_is_ignored(tmp_path: Path, run_ctx):
    checkpoint = tmp_path / "api_checkpoint.json"
    checkpoint.write_text("{not json", encoding="utf-8")

    assert load_checkpoint(checkpoint, run_ctx) == {}
