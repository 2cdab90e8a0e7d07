"""Data models for the screentrail daemon."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional


class EnrichmentState(str, Enum):
    """Lifecycle of a sample's extracted text."""
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


@dataclass
class Sample:
    """One accepted capture."""
    timestamp: str
    media_ref: Optional[str] = None
    extracted_text: str = ""
    enrichment_state: EnrichmentState = EnrichmentState.PENDING
    reconstructed: bool = False

    @property
    def sort_key(self) -> str:
        return self.timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "media_ref": self.media_ref,
            "extracted_text": self.extracted_text,
            "enrichment_state": self.enrichment_state.value,
            "reconstructed": self.reconstructed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Sample":
        return cls(
            timestamp=data["timestamp"],
            media_ref=data.get("media_ref"),
            extracted_text=data.get("extracted_text") or "",
            enrichment_state=EnrichmentState(data.get("enrichment_state", "pending")),
            reconstructed=bool(data.get("reconstructed", False)),
        )


def summary_id(start_time: str, end_time: str) -> str:
    """Deterministic summary id for a time span."""
    return f"{start_time}_{end_time}"


@dataclass
class Summary:
    """Derived text covering a time span."""
    start_time: str
    end_time: str
    text: str
    id: str = ""

    def __post_init__(self):
        if self.start_time > self.end_time:
            raise ValueError(
                f"Summary start {self.start_time} is after end {self.end_time}"
            )
        if not self.id:
            self.id = summary_id(self.start_time, self.end_time)

    @property
    def sort_key(self) -> str:
        return self.end_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "text": self.text,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Summary":
        return cls(
            start_time=data["start_time"],
            end_time=data["end_time"],
            text=data.get("text") or "",
        )


@dataclass
class Index:
    """
    Serializable snapshot of every sample and summary.

    The committed index file in the store always holds one of these in full.
    """
    samples: Dict[str, Sample] = field(default_factory=dict)
    summaries: Dict[str, Summary] = field(default_factory=dict)
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "samples": [s.to_dict() for s in sorted(self.samples.values(), key=lambda s: s.timestamp)],
            "summaries": [s.to_dict() for s in sorted(self.summaries.values(), key=lambda s: s.id)],
            "exported_at": datetime.utcnow().isoformat() + "Z",
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Index":
        samples = [Sample.from_dict(s) for s in data.get("samples", [])]
        summaries = [Summary.from_dict(s) for s in data.get("summaries", [])]
        return cls(
            samples={s.timestamp: s for s in samples},
            summaries={s.id: s for s in summaries},
            version=int(data.get("version", 1)),
        )


class OperationKind(str, Enum):
    """Kinds of store writes that can be deferred."""
    PERSIST_SAMPLE = "persist_sample"
    FLUSH_INDEX = "flush_index"


@dataclass
class PendingOperation:
    """A store write deferred while the capability is not active."""
    kind: OperationKind
    payload: Any
    run: Callable[[], Awaitable[Any]]
    enqueued_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SessionState:
    """
    Mutable session flags shared by the scheduler, store and index.

    Owned by the daemon and passed by reference; nothing reads these as
    module globals.
    """
    capture_intent: bool = False
    needs_save: bool = False
    skipped_similar: int = 0
    restart_attempts: int = 0
    last_flush: Optional[datetime] = None
    storage_label: Optional[str] = None


@dataclass
class ReconcileReport:
    """Outcome of a full reconciliation scan."""
    scanned: int = 0
    matched: int = 0
    pending: int = 0
    reconstructed: int = 0
    dropped_records: int = 0
    source: Optional[str] = None
    reconstructed_names: List[str] = field(default_factory=list)
