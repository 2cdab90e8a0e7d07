"""Capture scheduler: the timer-driven loop producing samples.

States: IDLE -> CAPTURING -> PAUSED, with a transient RECOVERING while a
failed source is being reacquired.

Each tick grabs one frame and compares it with the last *accepted* frame
(rejected frames are never remembered). Accepted frames are persisted
through the durable store; once on disk they are indexed and handed to the
enrichment queue, which runs in the background.
"""

import asyncio
from enum import Enum
from typing import Any, Dict, Optional, Set

import numpy as np
from loguru import logger

from .bus import Event, EventBus, EventType
from .diffing import is_distinct
from .enrichment import EnrichmentQueue
from .errors import (
    CapabilityUnavailable,
    CaptureSourceEnded,
    CaptureSourceError,
    ErrorSeverity,
    PersistenceError,
    get_error_tracker,
)
from .index import ReconcilingIndex
from .models import Sample, SessionState
from .naming import MonotonicClock
from .sources import CaptureSource, SourceFactory
from .store import DurableStore


class CaptureState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    PAUSED = "paused"
    RECOVERING = "recovering"


class CaptureScheduler:
    """Owns the capture source, the sampling loop and the diff baseline."""

    def __init__(
        self,
        source_factory: SourceFactory,
        store: DurableStore,
        index: ReconcilingIndex,
        enrichment: EnrichmentQueue,
        event_bus: EventBus,
        session: SessionState,
        interval_s: float = 5.0,
        diff_threshold: float = 0.03,
        source_ended_backoff_s: float = 1.0,
        grab_error_backoff_s: float = 2.0,
        max_restart_attempts: int = 5,
        clock: Optional[MonotonicClock] = None,
    ):
        self.source_factory = source_factory
        self.store = store
        self.index = index
        self.enrichment = enrichment
        self.event_bus = event_bus
        self.session = session
        self.interval_s = interval_s
        self.diff_threshold = diff_threshold
        self.source_ended_backoff_s = source_ended_backoff_s
        self.grab_error_backoff_s = grab_error_backoff_s
        self.max_restart_attempts = max_restart_attempts
        self.clock = clock or MonotonicClock()

        self.state = CaptureState.IDLE
        self._source: Optional[CaptureSource] = None
        self._last_accepted: Optional[np.ndarray] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._failure_tasks: Set[asyncio.Task] = set()
        self._start_lock = asyncio.Lock()
        self._errors = get_error_tracker()

        self.stats = {
            "ticks": 0,
            "accepted": 0,
            "skipped": 0,
            "deferred": 0,
            "persist_failures": 0,
            "restarts": 0,
        }

    # State transitions

    def _set_state(self, new_state: CaptureState) -> None:
        if new_state == self.state:
            return
        old_state, self.state = self.state, new_state
        logger.info(f"Capture {old_state.value} -> {new_state.value}")
        self.event_bus.emit_nowait(Event(
            type=EventType.CAPTURE_STATE_CHANGED,
            data={"from": old_state.value, "to": new_state.value},
            source="capture",
        ))

    async def start(self) -> None:
        """
        Begin capturing at the user's request. A no-op while already
        capturing. Raises CaptureSourceError if the source cannot be acquired.
        """
        self.session.capture_intent = True
        self.session.restart_attempts = 0
        self._cancel_restart()

        async with self._start_lock:
            if self.state == CaptureState.CAPTURING:
                return
            try:
                await self._open_source()
            except CaptureSourceError as e:
                self.session.capture_intent = False
                self._set_state(CaptureState.IDLE)
                self._report_capture_failure(e)
                raise

    async def pause(self) -> None:
        """Stop sampling and forget the diff baseline; enrichment keeps running."""
        self.session.capture_intent = False
        self._cancel_restart()
        if self.state not in (CaptureState.CAPTURING, CaptureState.RECOVERING):
            return
        await self._release_source()
        self._set_state(CaptureState.PAUSED)

    async def stop(self) -> None:
        """Shut the scheduler down."""
        if self._failure_tasks:
            await asyncio.gather(*list(self._failure_tasks), return_exceptions=True)
        self._cancel_restart()
        await self._release_source()
        self._set_state(CaptureState.IDLE)

    async def _open_source(self) -> None:
        source = await self.source_factory()
        loop = asyncio.get_running_loop()

        def ended() -> None:
            # May be called from the source's own thread
            loop.call_soon_threadsafe(self._on_source_ended, source)

        source.on_ended(ended)
        self._source = source
        self._last_accepted = None
        self._set_state(CaptureState.CAPTURING)
        self._loop_task = asyncio.create_task(self._run_loop())

    async def _release_source(self) -> None:
        source, self._source = self._source, None
        self._last_accepted = None

        task, self._loop_task = self._loop_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if source is not None:
            try:
                await source.close()
            except Exception as e:
                logger.warning(f"Error closing capture source: {e}")

    # Failure handling

    def _on_source_ended(self, source: CaptureSource) -> None:
        if source is not self._source:
            return
        logger.info("Capture source ended")
        task = asyncio.create_task(
            self._handle_source_failure(source, CaptureSourceEnded("source ended"), self.source_ended_backoff_s)
        )
        self._failure_tasks.add(task)
        task.add_done_callback(self._failure_handled)

    def _failure_handled(self, task: asyncio.Task) -> None:
        self._failure_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._errors.record("capture", task.exception())
            logger.error(f"Handling capture source failure failed: {task.exception()}")

    async def _handle_source_failure(
        self,
        source: CaptureSource,
        error: CaptureSourceError,
        backoff_s: float,
    ) -> None:
        if source is not self._source:
            return
        self._errors.record("capture", error)
        logger.warning(f"Capture source failure: {error}")
        await self._release_source()
        self._set_state(CaptureState.IDLE)
        self._schedule_restart(backoff_s)

    def _schedule_restart(self, backoff_s: float) -> None:
        if not self.session.capture_intent:
            return
        self.session.restart_attempts += 1
        if self.session.restart_attempts > self.max_restart_attempts:
            self.session.capture_intent = False
            self._report_capture_failure(
                CaptureSourceError(f"Gave up after {self.max_restart_attempts} restart attempts")
            )
            return

        self._set_state(CaptureState.RECOVERING)
        self._cancel_restart()
        self._restart_task = asyncio.create_task(self._restart_after(backoff_s))

    async def _restart_after(self, delay_s: float) -> None:
        try:
            await asyncio.sleep(delay_s)
        except asyncio.CancelledError:
            return

        async with self._start_lock:
            if not self.session.capture_intent or self.state != CaptureState.RECOVERING:
                return
            self.stats["restarts"] += 1
            logger.info(f"Restarting capture (attempt {self.session.restart_attempts})")
            try:
                await self._open_source()
            except CaptureSourceError as e:
                self._errors.record("capture", e)
                logger.warning(f"Capture restart failed: {e}")
                self._set_state(CaptureState.IDLE)
                self._schedule_restart(self.grab_error_backoff_s)

    def _cancel_restart(self) -> None:
        task, self._restart_task = self._restart_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _report_capture_failure(self, error: Exception) -> None:
        self._errors.record("capture", error, ErrorSeverity.HIGH)
        logger.error(f"Capture stopped: {error}")
        self._set_state(CaptureState.IDLE)
        self.event_bus.emit_nowait(Event(
            type=EventType.CAPTURE_FAILED,
            data={"error": str(error)},
            source="capture",
        ))

    # Sampling

    async def _run_loop(self) -> None:
        while self.state == CaptureState.CAPTURING:
            try:
                await asyncio.sleep(self.interval_s)
                if self.state != CaptureState.CAPTURING:
                    break
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._errors.record("capture", e)
                logger.exception(f"Unexpected error in sampling loop: {e}")

    async def tick(self) -> Optional[Sample]:
        """
        One sampling step. Returns the sample if a frame was accepted and
        written, None otherwise.
        """
        source = self._source
        if source is None or self.state != CaptureState.CAPTURING:
            return None
        self.stats["ticks"] += 1

        if source.ended:
            await self._handle_source_failure(
                source, CaptureSourceEnded("source no longer active"), self.source_ended_backoff_s
            )
            return None

        try:
            frame = await source.grab_frame()
        except CaptureSourceEnded as e:
            await self._handle_source_failure(source, e, self.source_ended_backoff_s)
            return None
        except CaptureSourceError as e:
            await self._handle_source_failure(source, e, self.grab_error_backoff_s)
            return None

        self.session.restart_attempts = 0

        if not is_distinct(frame, self._last_accepted, self.diff_threshold):
            self.stats["skipped"] += 1
            self.session.skipped_similar += 1
            if self.session.skipped_similar % 10 == 0:
                logger.debug(f"Skipped {self.session.skipped_similar} similar frames")
            self.event_bus.emit_nowait(Event(
                type=EventType.SAMPLE_SKIPPED,
                data={"consecutive": self.session.skipped_similar},
                source="capture",
            ))
            return None

        self.session.skipped_similar = 0
        sample = Sample(timestamp=self.clock.now())

        try:
            await self.store.persist_sample(sample, frame, on_persisted=self._register)
        except CapabilityUnavailable as e:
            if e.queued:
                # Accepted; the write replays once storage reconnects
                self._last_accepted = frame
                self.stats["deferred"] += 1
            logger.warning(f"Sample {sample.timestamp} not written yet: {e}")
            return None
        except PersistenceError as e:
            self.stats["persist_failures"] += 1
            self._errors.record("store", e, ErrorSeverity.HIGH, sample=sample.timestamp)
            logger.error(f"Failed to persist sample {sample.timestamp}: {e}")
            self.event_bus.emit_nowait(Event(
                type=EventType.PERSISTENCE_FAILED,
                data={"operation": "persist_sample", "timestamp": sample.timestamp, "error": str(e)},
                source="capture",
            ))
            return None

        self._last_accepted = frame
        self.stats["accepted"] += 1
        return sample

    async def _register(self, sample: Sample) -> None:
        """Runs once the sample's media is on disk (possibly on replay)."""
        self.index.add_sample(sample)
        self.enrichment.enqueue(sample)

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "intent": self.session.capture_intent,
            "interval_s": self.interval_s,
            "diff_threshold": self.diff_threshold,
            "restart_attempts": self.session.restart_attempts,
            **self.stats,
        }
