"""Domain errors and failure typing."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline failures."""

    error_code = "PIPELINE_ERROR"


class ConfigError(PipelineError):
    """Raised for invalid or missing configuration."""

    error_code = "CONFIG_ERROR"


class RecordError(PipelineError):
    """Record-level failure. Returned by stages, never raised across them."""

    error_code = "RECORD_ERROR"
    kinds: tuple[str, ...] = ()

    def __init__(self, kind: str, message: str, *, record_id: str | None = None) -> None:
        if self.kinds and kind not in self.kinds:
            raise ValueError(f"Unknown {type(self).__name__} kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.record_id = record_id

    def to_dict(self) -> dict:
        return {
            "error_code": self.error_code,
            "kind": self.kind,
            "record_id": self.record_id,
            "message": self.message,
        }


class NormalizationError(RecordError):
    error_code = "NORMALIZATION_ERROR"
    kinds = ("MissingRequiredField", "UnparsableServiceList")


class GeoValidationError(RecordError):
    error_code = "GEO_VALIDATION_ERROR"
    kinds = ("OutOfRange",)


class SinkError(PipelineError):
    """Raised by the persistence sink."""

    error_code = "SINK_ERROR"


class TransientSinkError(SinkError):
    """Timeouts and dropped connections; retried with backoff."""

    error_code = "SINK_TRANSIENT"


class PermanentSinkError(SinkError):
    """Constraint violations; recorded as a per-record failure."""

    error_code = "SINK_PERMANENT"


class PipelineFatalError(PipelineError):
    """Source or sink unreachable after retries. Aborts the run."""

    error_code = "PIPELINE_FATAL"


class RunCancelled(PipelineError):
    """Raised between chunks once cancellation has been requested."""

    error_code = "RUN_CANCELLED"

    def __init__(self, message: str, report=None) -> None:
        super().__init__(message)
        self.report = report


class StageError(PipelineError):
    """Raised for stage failures outside record handling."""

    error_code = "STAGE_ERROR"
