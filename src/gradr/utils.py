from __future__ import annotations

from datetime import UTC, datetime, timedelta


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def utc_iso_seconds_ago(seconds: float) -> str:
    return (datetime.now(UTC) - timedelta(seconds=seconds)).isoformat()


def truncate_output(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return "[truncated]\n" + text[-limit:]
