"""Run and facility identifier helpers."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone

from facility_etl.common.constants import DEDUPE_KEY_DELIMITER

_WHITESPACE_RE = re.compile(r"\s+")
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def generate_run_id() -> str:
    now = datetime.now(tz=timezone.utc)
    return now.strftime("run-%Y%m%dT%H%M%S%fZ")


def collapse(value: str | None) -> str:
    if value is None:
        return ""
    return _WHITESPACE_RE.sub(" ", str(value)).strip().lower()


def facility_key(name: str, city: str, state: str) -> str:
    return DEDUPE_KEY_DELIMITER.join(collapse(part) for part in (name, city, state))


def facility_id(name: str, city: str, state: str) -> str:
    key = facility_key(name, city, state)
    slug = _SLUG_RE.sub("-", key).strip("-")[:64]
    # Slugs alone can collide ("a-b" vs "a b"); the digest keeps ids one-to-one with keys.
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
    return f"{slug}-{digest}" if slug else digest
