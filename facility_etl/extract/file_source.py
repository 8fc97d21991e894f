"""Flat-file extraction: delimited text and JSON exports."""

from __future__ import annotations

import json
from pathlib import Path

from facility_etl.common.errors import PipelineFatalError
from facility_etl.common.fs import iter_csv_rows, read_json
from facility_etl.common.models import RawRecord, SourceFormat

JSON_ROW_KEYS = ("rows", "facilities", "results", "data")
TAB_SUFFIXES = {".tsv", ".tab"}


def infer_format(path: Path) -> SourceFormat:
    if path.suffix.lower() in {".json", ".jsonl"}:
        return SourceFormat.JSON
    return SourceFormat.CSV


def rows_from_payload(payload) -> list[RawRecord]:
    if isinstance(payload, list):
        rows = payload
    elif isinstance(payload, dict):
        rows = next((payload[key] for key in JSON_ROW_KEYS if isinstance(payload.get(key), list)), None)
        if rows is None:
            raise PipelineFatalError(f"JSON payload has no row list under any of {', '.join(JSON_ROW_KEYS)}")
    else:
        raise PipelineFatalError(f"Unsupported JSON payload type: {type(payload).__name__}")
    return [row for row in rows if isinstance(row, dict)]


def _read_json_lines(path: Path, encoding: str) -> list[RawRecord]:
    rows: list[RawRecord] = []
    with path.open("r", encoding=encoding) as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                row = json.loads(line)
            except ValueError as exc:
                raise PipelineFatalError(f"{path}:{line_no} is not valid JSON") from exc
            if isinstance(row, dict):
                rows.append(row)
    return rows


def read_records(
    path: Path,
    *,
    delimiter: str = ",",
    encoding: str = "utf-8",
) -> tuple[SourceFormat, list[RawRecord]]:
    if not path.is_file():
        raise PipelineFatalError(f"Source file not found: {path}")

    source_format = infer_format(path)
    try:
        if source_format is SourceFormat.JSON:
            if path.suffix.lower() == ".jsonl":
                return source_format, _read_json_lines(path, encoding)
            try:
                payload = read_json(path, encoding=encoding)
            except ValueError as exc:
                raise PipelineFatalError(f"{path} is not valid JSON") from exc
            return source_format, rows_from_payload(payload)

        if path.suffix.lower() in TAB_SUFFIXES:
            delimiter = "\t"
        return source_format, list(iter_csv_rows(path, delimiter=delimiter, encoding=encoding))
    except OSError as exc:
        raise PipelineFatalError(f"Unable to read {path}: {exc}") from exc
