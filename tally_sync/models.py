"""
Result types passed between the sync stages.

Every batch stage converts per-record problems into these structures
instead of raising, so one bad record or one failing entity never aborts
a whole run.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

STATUS_COMPLETED = "completed"
STATUS_COMPLETED_WITH_ERRORS = "completed_with_errors"
STATUS_REJECTED = "rejected"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RecordFailure:
    """A single record that was dropped, with the reason."""

    index: int
    reason: str
    name: str = ""
    raw: Any = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {"index": self.index, "name": self.name, "reason": self.reason}


@dataclass
class BatchResult:
    """Output of normalizing one entity batch."""

    entity: str
    records: list[dict] = field(default_factory=list)
    failures: list[RecordFailure] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)


@dataclass
class WriteResult:
    """Output of writing one batch to the document store."""

    written: int = 0
    failures: list[RecordFailure] = field(default_factory=list)

    def merge(self, other: "WriteResult") -> "WriteResult":
        self.written += other.written
        self.failures.extend(other.failures)
        return self


@dataclass
class EntityResult:
    """Outcome of fetching, normalizing and writing one entity type."""

    entity: str
    fetched: int = 0
    written: int = 0
    failures: list[RecordFailure] = field(default_factory=list)


@dataclass
class SyncResult:
    """Outcome of one scheduler run (full, partial, vouchers, ...)."""

    sync_type: str
    trigger: str = "manual"
    status: str = STATUS_COMPLETED
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    counts: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    failures: dict[str, list[RecordFailure]] = field(default_factory=dict)
    relationships: Optional[int] = None
    message: str = ""

    @classmethod
    def rejected(cls, sync_type: str, message: str, trigger: str = "manual") -> "SyncResult":
        now = utcnow()
        return cls(
            sync_type=sync_type,
            trigger=trigger,
            status=STATUS_REJECTED,
            started_at=now,
            finished_at=now,
            message=message,
        )

    @property
    def ok(self) -> bool:
        return self.status == STATUS_COMPLETED

    def add_entity(self, result: EntityResult) -> None:
        self.counts[result.entity] = result.written
        if result.failures:
            self.failures[result.entity] = result.failures
            self.warnings.append(
                f"{result.entity}: {len(result.failures)} record(s) skipped"
            )

    def add_error(self, entity: str, error: Exception | str) -> None:
        self.errors.append(f"{entity} sync error: {error}")

    def finish(self) -> "SyncResult":
        self.finished_at = utcnow()
        if self.status != STATUS_REJECTED:
            self.status = STATUS_COMPLETED_WITH_ERRORS if self.errors else STATUS_COMPLETED
        return self

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return round((self.finished_at - self.started_at).total_seconds(), 3)

    def to_dict(self) -> dict:
        return {
            "syncType": self.sync_type,
            "trigger": self.trigger,
            "status": self.status,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "durationSeconds": self.duration_seconds,
            "counts": dict(self.counts),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "failures": {
                entity: [f.to_dict() for f in failures]
                for entity, failures in self.failures.items()
            },
            "relationships": self.relationships,
            "message": self.message,
        }
