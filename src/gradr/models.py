from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any


class EntryStatus(IntEnum):
    PENDING = 0
    IN_PROGRESS = 1
    DONE = 2


class StepOutcome(str, Enum):
    IDLE = "idle"
    PASSED = "passed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class BuildRequest:
    clone_url: str
    branch: str
    commit: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"clone_url": self.clone_url, "branch": self.branch, "commit": self.commit}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> BuildRequest:
        return cls(
            clone_url=str(raw["clone_url"]),
            branch=str(raw["branch"]),
            commit=str(raw["commit"]) if raw.get("commit") else None,
        )


@dataclass(slots=True)
class BuildResult:
    passed: bool
    output: str = ""
    returncode: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def serialize(self) -> str:
        return json.dumps(
            {
                "pass": self.passed,
                "output": self.output,
                "returncode": self.returncode,
                "details": self.details,
            },
            sort_keys=True,
        )

    @classmethod
    def deserialize(cls, raw: str) -> BuildResult:
        payload = json.loads(raw)
        return cls(
            passed=bool(payload["pass"]),
            output=str(payload.get("output", "")),
            returncode=payload.get("returncode"),
            details=dict(payload.get("details") or {}),
        )


@dataclass(slots=True)
class QueueEntry:
    entry_id: int
    status: EntryStatus
    request: BuildRequest
    created_at: str
    results: str | None = None
    claim_token: str | None = None
    claimed_by: str | None = None
    claimed_at: str | None = None
    completed_at: str | None = None
    last_error: str | None = None

    def get_base(self) -> BuildRequest:
        return self.request

    def build_result(self) -> BuildResult | None:
        if self.results is None:
            return None
        return BuildResult.deserialize(self.results)
