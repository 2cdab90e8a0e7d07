"""Async event bus decoupling the pipeline from whoever presents it."""

import asyncio
import inspect
import weakref
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from loguru import logger


class EventType(str, Enum):
    """Events the pipeline emits. Values follow ``category.action``."""
    SAMPLE_ADDED = "sample.added"
    SAMPLE_SKIPPED = "sample.skipped"
    ENRICHMENT_COMPLETED = "enrichment.completed"
    CAPABILITY_LOST = "capability.lost"
    CAPABILITY_RESTORED = "capability.restored"
    PERSISTENCE_FAILED = "persistence.failed"
    INDEX_FLUSHED = "index.flushed"
    SUMMARY_ADDED = "summary.added"
    CAPTURE_STATE_CHANGED = "capture.state_changed"
    CAPTURE_FAILED = "capture.failed"


@dataclass
class Event:
    """Base event class."""
    type: Union[EventType, str]
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)
    source: Optional[str] = None

    @property
    def name(self) -> str:
        return self.type.value if isinstance(self.type, EventType) else self.type


class EventBus:
    """
    Async pub/sub event bus for in-process communication.

    Patterns can use wildcards: 'capability.*' matches every capability event,
    '*' matches everything.
    """

    def __init__(self, max_queue: int = 1000):
        self._subscribers: Dict[str, List[weakref.ref]] = defaultdict(list)
        self._event_queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._running = False
        self._processor_task: Optional[asyncio.Task] = None
        self._stats = defaultdict(int)

    def subscribe(self, event_pattern: Union[EventType, str], handler: Callable[[Event], Any]) -> None:
        """Subscribe a handler. Bound methods are held weakly."""
        pattern = event_pattern.value if isinstance(event_pattern, EventType) else event_pattern
        if inspect.ismethod(handler):
            handler_ref = weakref.WeakMethod(handler)
        else:
            handler_ref = weakref.ref(handler)
        self._subscribers[pattern].append(handler_ref)
        logger.debug(f"Subscribed handler to pattern: {pattern}")

    def unsubscribe(self, event_pattern: Union[EventType, str], handler: Callable[[Event], Any]) -> None:
        """Unsubscribe handler from event pattern."""
        pattern = event_pattern.value if isinstance(event_pattern, EventType) else event_pattern
        self._subscribers[pattern] = [
            ref for ref in self._subscribers[pattern]
            if ref() is not None and ref() != handler
        ]

    async def emit(self, event: Event) -> None:
        """Emit an event to the bus."""
        self.emit_nowait(event)

    def emit_nowait(self, event: Event) -> bool:
        """
        Emit an event without waiting.
        Returns True if queued, False if the queue is full and it was dropped.
        """
        try:
            self._event_queue.put_nowait(event)
            self._stats['emitted'] += 1
            logger.debug(f"Emitted event: {event.name}")
            return True
        except asyncio.QueueFull:
            logger.warning(f"Event queue full, dropping event: {event.name}")
            self._stats['dropped'] += 1
            return False

    async def start(self) -> None:
        """Start the event processor."""
        if self._running:
            logger.warning("Event bus already running")
            return

        self._running = True
        self._processor_task = asyncio.create_task(self._process_events())
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the event processor."""
        self._running = False
        if self._processor_task:
            await self._processor_task
            self._processor_task = None
        logger.info("Event bus stopped")

    async def _process_events(self) -> None:
        """Process events from the queue."""
        while self._running:
            try:
                # Wake up periodically to notice stop()
                event = await asyncio.wait_for(self._event_queue.get(), timeout=0.2)
            except asyncio.TimeoutError:
                continue

            try:
                await self._dispatch(event)
                self._stats['processed'] += 1
            except Exception as e:
                logger.error(f"Error processing event: {e}")
                self._stats['processing_errors'] += 1

    async def _dispatch(self, event: Event) -> None:
        handlers = []
        for pattern, refs in list(self._subscribers.items()):
            if not self._matches_pattern(event.name, pattern):
                continue
            valid_refs = []
            for ref in refs:
                handler = ref()
                if handler is not None:
                    handlers.append(handler)
                    valid_refs.append(ref)
            self._subscribers[pattern] = valid_refs

        if not handlers:
            return

        tasks = []
        for handler in handlers:
            if asyncio.iscoroutinefunction(handler):
                tasks.append(asyncio.create_task(handler(event)))
            else:
                tasks.append(asyncio.create_task(asyncio.to_thread(handler, event)))

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Handler error for event {event.name}: {result}")
                self._stats['handler_errors'] += 1

    def _matches_pattern(self, event_type: str, pattern: str) -> bool:
        """Check if event type matches subscription pattern."""
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            prefix = pattern[:-2]
            return event_type.startswith(prefix + ".")
        return event_type == pattern

    def get_stats(self) -> Dict[str, int]:
        """Get event bus statistics."""
        return dict(self._stats)

    def reset_stats(self) -> None:
        """Reset statistics."""
        self._stats.clear()


# Global event bus instance
_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get the global event bus instance."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
