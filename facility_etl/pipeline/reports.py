"""Run outcome summary."""

from __future__ import annotations

from pathlib import Path

from facility_etl.common.fs import write_json
from facility_etl.pipeline.runner import RunResult


def build_summary(result: RunResult) -> dict:
    report = result.report
    return {
        "run_id": result.run_id,
        "source": result.source,
        "state": result.state.value,
        "outcome": result.outcome,
        "exit_code": result.exit_code,
        "dry_run": result.dry_run,
        "started_at": result.started_at.isoformat() if result.started_at else None,
        "finished_at": result.finished_at.isoformat() if result.finished_at else None,
        "message": result.message,
        "counts": {
            "extracted": result.extracted,
            "rejected": len(result.rejected),
            "geo_invalid": len(result.geo_warnings),
            "processed": report.processed,
            "created": report.created,
            "updated": report.updated,
            "unchanged": report.unchanged,
            "failed": report.failed,
        },
        "load_errors": [dict(error) for error in report.errors],
        "rejected": [dict(error) for error in result.rejected],
        "geo_warnings": [dict(warning) for warning in result.geo_warnings],
        "failed_locations": list(result.failed_locations),
    }


def write_run_summary(path: Path, result: RunResult) -> Path:
    write_json(path, build_summary(result))
    return path
