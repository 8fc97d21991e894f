"""Application constants."""

USER_AGENT = "facility-etl/1.0 (+directory-sync; contact: configured-email)"
SOURCE_KINDS = ("file", "api")
RUN_STATES = (
    "PENDING",
    "EXTRACTING",
    "TRANSFORMING",
    "LOADING",
    "REFRESHING",
    "COMPLETED",
    "FAILED",
    "CANCELLED",
)
DEFAULT_BATCH_SIZE = 500
EXIT_SUCCESS = 0
EXIT_HARD_FAIL = 20
EXIT_CANCELLED = 30
SERVICE_DELIMITER = ";"
DEDUPE_KEY_DELIMITER = "|"
JSON_LOG_FIELDS = (
    "timestamp",
    "level",
    "run_id",
    "stage",
    "source",
    "event",
    "status",
    "attempt",
    "record_id",
    "chunk",
    "rows_in",
    "rows_out",
    "error_code",
    "message",
)
DEFAULT_PIPELINE_CONFIG = {
    "database": {
        "uri": None,
        "connect_timeout_seconds": 10,
    },
    "load": {
        "batch_size": DEFAULT_BATCH_SIZE,
        "workers": 1,
        "max_attempts": 3,
        "backoff_initial_seconds": 1.0,
        "backoff_max_seconds": 30.0,
    },
    "geo": {
        "source_epsg": 4326,
        "region_bbox": None,
    },
    "file": {
        "delimiter": ",",
        "encoding": "utf-8",
    },
    "api": {
        "timeout_seconds": 30,
        "max_attempts": 3,
        "rate_per_sec": 5.0,
        "page_size": 100,
        "max_pages": 50,
        "locations": [],
        "endpoints": [],
    },
}
