"""Error taxonomy and error tracking for the capture pipeline.

Every failure the pipeline can observe maps onto one of these classes:
- Capture source failures (transient grab errors, terminal source end)
- Capability failures (storage grant lost or not yet restored)
- Persistence failures (write abandoned for this cycle)
- Extraction failures (resource exhaustion, missing language data)
"""

from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional


class ScreentrailError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(ScreentrailError):
    """Invalid or missing configuration."""


class CaptureSourceError(ScreentrailError):
    """Transient failure grabbing a frame; retried with backoff."""


class CaptureSourceEnded(CaptureSourceError):
    """The capture source terminated (e.g. the user stopped sharing)."""


class AuthorizationError(ScreentrailError):
    """Raised by a storage container when access to it has been revoked."""


class CapabilityUnavailable(ScreentrailError):
    """The storage capability is not granted in the current context."""

    def __init__(self, message: str = "storage capability unavailable", queued: bool = False):
        super().__init__(message)
        self.queued = queued


class PersistenceError(ScreentrailError):
    """A store write failed for a reason other than authorization."""


class ExtractionError(ScreentrailError):
    """Text extraction failed."""


class EnrichmentResourceError(ExtractionError):
    """Extraction ran out of memory or another bounded resource."""


class EnrichmentLanguageError(ExtractionError):
    """The requested extraction language could not be loaded."""


_LANGUAGE_MARKERS = (
    "failed loading language",
    "error opening data file",
    "language data",
    "traineddata",
)

_RESOURCE_MARKERS = (
    "out of memory",
    "cannot allocate",
    "memory",
    "too large",
)


def classify_extraction_error(error: BaseException) -> ExtractionError:
    """
    Map a raw backend exception onto the extraction taxonomy.

    Already-classified errors pass through untouched.
    """
    if isinstance(error, ExtractionError):
        return error

    message = str(error).lower()

    if isinstance(error, MemoryError) or any(m in message for m in _RESOURCE_MARKERS):
        return EnrichmentResourceError(str(error) or type(error).__name__)
    if any(m in message for m in _LANGUAGE_MARKERS):
        return EnrichmentLanguageError(str(error))

    return ExtractionError(str(error) or type(error).__name__)


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3


@dataclass
class ErrorEvent:
    """A single recorded error."""
    component: str
    error_type: str
    message: str
    severity: ErrorSeverity
    timestamp: datetime = field(default_factory=datetime.utcnow)
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "component": self.component,
            "error_type": self.error_type,
            "message": self.message,
            "severity": self.severity.name.lower(),
            "context": self.context,
        }


class ErrorTracker:
    """Keeps the most recent errors per component for status reporting."""

    def __init__(self, max_per_component: int = 20):
        self.max_per_component = max_per_component
        self._events: Dict[str, Deque[ErrorEvent]] = defaultdict(
            lambda: deque(maxlen=self.max_per_component)
        )
        self._counts: Dict[str, int] = defaultdict(int)

    def record(
        self,
        component: str,
        error: BaseException,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        **context: Any,
    ) -> ErrorEvent:
        event = ErrorEvent(
            component=component,
            error_type=type(error).__name__,
            message=str(error),
            severity=severity,
            context=context,
        )
        self._events[component].append(event)
        self._counts[component] += 1
        return event

    def recent(self, component: Optional[str] = None, limit: int = 10) -> List[ErrorEvent]:
        """Most recent errors, newest first."""
        if component is not None:
            events = list(self._events.get(component, ()))
        else:
            events = [e for q in self._events.values() for e in q]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

    def counts(self) -> Dict[str, int]:
        return dict(self._counts)


# Global error tracker instance
_error_tracker: Optional[ErrorTracker] = None


def get_error_tracker() -> ErrorTracker:
    """Get the global error tracker instance."""
    global _error_tracker
    if _error_tracker is None:
        _error_tracker = ErrorTracker()
    return _error_tracker
