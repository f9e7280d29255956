"""Core types."""

from __future__ import annotations

import base64
import enum
from dataclasses import dataclass, field
from typing import Any, Union

# Closed set of values allowed in custom data, replay events and metadata.
CustomValue = Union[None, bool, int, float, str, list["CustomValue"], dict[str, "CustomValue"]]


@dataclass(frozen=True, slots=True)
class Span:
    """A detected PII range within a string."""
    start: int
    end: int
    kind: str              # e.g. "email", "phone", "creditcard"
    confidence: float      # 0.0–1.0
    detector: str = ""     # id of the detector that produced it

    @property
    def length(self) -> int:
        return self.end - self.start

    def overlaps(self, other: Span) -> bool:
        return self.start < other.end and other.start < self.end


@dataclass(slots=True)
class RedactionReport:
    """Counts of redacted spans. Never holds original content."""
    total_spans: int = 0
    by_kind: dict[str, int] = field(default_factory=dict)

    def add(self, kind: str, count: int = 1) -> None:
        self.total_spans += count
        self.by_kind[kind] = self.by_kind.get(kind, 0) + count

    def merge(self, other: RedactionReport) -> RedactionReport:
        for kind, count in other.by_kind.items():
            self.add(kind, count)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {"total_spans": self.total_spans, "by_kind": dict(self.by_kind)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RedactionReport:
        return cls(total_spans=data.get("total_spans", 0), by_kind=dict(data.get("by_kind", {})))


@dataclass(slots=True)
class SanitizedText:
    """Result of sanitizing a string."""
    text: str
    report: RedactionReport = field(default_factory=RedactionReport)
    spans: list[Span] = field(default_factory=list)   # winning spans, original offsets


@dataclass(frozen=True, slots=True)
class Rect:
    """Axis-aligned rectangle in image pixel coordinates."""
    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return max(self.width, 0) * max(self.height, 0)

    def pad(self, amount: int) -> Rect:
        return Rect(self.x - amount, self.y - amount, self.width + 2 * amount, self.height + 2 * amount)

    def clamp(self, width: int, height: int) -> Rect | None:
        """Clip to a width x height image; None if nothing is left."""
        x1, y1 = max(self.x, 0), max(self.y, 0)
        x2, y2 = min(self.x + self.width, width), min(self.y + self.height, height)
        if x2 <= x1 or y2 <= y1:
            return None
        return Rect(x1, y1, x2 - x1, y2 - y1)

    def box(self) -> tuple[int, int, int, int]:
        return (self.x, self.y, self.x + self.width, self.y + self.height)


@dataclass(frozen=True, slots=True)
class TextRun:
    """A run of DOM-rendered text and its on-screen bounding box."""
    text: str
    rect: Rect


class EntryStatus(str, enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    FAILED_PERMANENT = "failed_permanent"

    @property
    def is_terminal(self) -> bool:
        return self in (EntryStatus.DELIVERED, EntryStatus.FAILED_PERMANENT)


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def _b64(data: bytes | None) -> str | None:
    return base64.b64encode(data).decode("ascii") if data is not None else None


def _unb64(data: str | None) -> bytes | None:
    return base64.b64decode(data) if data is not None else None


@dataclass(slots=True)
class BugReport:
    """A sanitized bug report, ready for the queue."""
    id: str                                     # fingerprint
    title: str
    description: str
    severity: Severity = Severity.MEDIUM
    tags: frozenset[str] = frozenset()
    custom_data: dict[str, CustomValue] = field(default_factory=dict)
    text_fields: dict[str, str] = field(default_factory=dict)   # console, network, ...
    stack: str | None = None
    screenshot: bytes | None = None             # PNG
    replay: list[CustomValue] | None = None
    metadata: dict[str, CustomValue] = field(default_factory=dict)
    redactions: RedactionReport = field(default_factory=RedactionReport)
    created_at: float = 0.0
    attempts: int = 0
    status: EntryStatus = EntryStatus.PENDING

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "tags": sorted(self.tags),
            "custom_data": self.custom_data,
            "text_fields": self.text_fields,
            "stack": self.stack,
            "screenshot": _b64(self.screenshot),
            "replay": self.replay,
            "metadata": self.metadata,
            "redactions": self.redactions.to_dict(),
            "created_at": self.created_at,
            "attempts": self.attempts,
            "status": self.status.value,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> BugReport:
        return cls(
            id=data["id"],
            title=data["title"],
            description=data["description"],
            severity=Severity(data.get("severity", "medium")),
            tags=frozenset(data.get("tags", [])),
            custom_data=data.get("custom_data", {}),
            text_fields=data.get("text_fields", {}),
            stack=data.get("stack"),
            screenshot=_unb64(data.get("screenshot")),
            replay=data.get("replay"),
            metadata=data.get("metadata", {}),
            redactions=RedactionReport.from_dict(data.get("redactions", {})),
            created_at=data.get("created_at", 0.0),
            attempts=data.get("attempts", 0),
            status=EntryStatus(data.get("status", "pending")),
        )


@dataclass(slots=True)
class QueueEntry:
    """A report plus its delivery bookkeeping."""
    entry_id: str
    report: BugReport
    seq: int                                    # insertion order
    enqueued_at: float
    next_attempt_at: float
    backoff_exponent: int = 0
    last_error: str | None = None

    @property
    def status(self) -> EntryStatus:
        return self.report.status

    def to_record(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "report": self.report.to_record(),
            "seq": self.seq,
            "enqueued_at": self.enqueued_at,
            "next_attempt_at": self.next_attempt_at,
            "backoff_exponent": self.backoff_exponent,
            "last_error": self.last_error,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> QueueEntry:
        return cls(
            entry_id=data["entry_id"],
            report=BugReport.from_record(data["report"]),
            seq=data["seq"],
            enqueued_at=data["enqueued_at"],
            next_attempt_at=data["next_attempt_at"],
            backoff_exponent=data.get("backoff_exponent", 0),
            last_error=data.get("last_error"),
        )
