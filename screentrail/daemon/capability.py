"""Capability gate mediating every access to the external store.

The storage grant can disappear between any two calls. The gate:
- performs a non-prompting permission check before each operation
- only ever prompts for permission inside a user-interaction context
- queues writes attempted while the grant is lost (bounded, FIFO)
- on the next user interaction, restores the grant and replays the most
  recent queued writes in their original order
"""

import asyncio
import contextvars
from collections import deque
from contextlib import contextmanager
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterator, List, Optional, Tuple, TypeVar

from loguru import logger

from .bus import Event, EventBus, EventType
from .container import PermissionMode, PermissionState, StorageContainer
from .errors import AuthorizationError, CapabilityUnavailable, ErrorSeverity, get_error_tracker
from .models import OperationKind, PendingOperation

T = TypeVar("T")

_user_interaction: contextvars.ContextVar[bool] = contextvars.ContextVar(
    "screentrail_user_interaction", default=False
)


@contextmanager
def user_interaction() -> Iterator[None]:
    """Mark the enclosed code (and tasks created in it) as user-initiated."""
    token = _user_interaction.set(True)
    try:
        yield
    finally:
        _user_interaction.reset(token)


def in_user_interaction() -> bool:
    return _user_interaction.get()


class GrantState(str, Enum):
    ACTIVE = "active"
    LOST = "lost"
    PENDING_RECOVERY = "pending_recovery"


class CapabilityGate:
    """Wraps store operations with permission checks and deferred replay."""

    def __init__(
        self,
        container: StorageContainer,
        event_bus: EventBus,
        pending_limit: int = 100,
        replay_limit: int = 5,
        mode: PermissionMode = PermissionMode.READWRITE,
    ):
        self.container = container
        self.event_bus = event_bus
        self.mode = mode
        self.replay_limit = replay_limit
        self.state = GrantState.ACTIVE

        # Only the newest replay_limit operations are ever replayed
        self._pending: Deque[PendingOperation] = deque(maxlen=min(pending_limit, replay_limit))
        self._recovery_lock = asyncio.Lock()
        self._recovery_task: Optional[asyncio.Task] = None
        self._errors = get_error_tracker()

        self.stats = {
            "queued": 0,
            "dropped": 0,
            "replayed": 0,
            "recoveries": 0,
        }

    @property
    def pending(self) -> List[PendingOperation]:
        return list(self._pending)

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        kind: Optional[OperationKind] = None,
        payload: Any = None,
    ) -> T:
        """
        Run ``operation`` if the capability is granted.

        Writes (``kind`` given) that cannot run are queued for replay and
        reported with ``CapabilityUnavailable(queued=True)``. Reads simply
        fail fast.
        """
        if kind is not None and self.state != GrantState.ACTIVE:
            # Keep FIFO order: nothing overtakes writes already waiting
            queued = self._enqueue(kind, payload, operation)
            raise CapabilityUnavailable(
                f"Storage {self.container.label} is awaiting reconnection", queued=queued
            )

        if not await self._ensure_granted():
            self._mark_lost("permission not granted")
            queued = self._enqueue(kind, payload, operation)
            raise CapabilityUnavailable(
                f"Storage {self.container.label} is not accessible", queued=queued
            )

        try:
            return await operation()
        except AuthorizationError as e:
            self._errors.record("capability", e, ErrorSeverity.HIGH)
            self._mark_lost(str(e))
            queued = self._enqueue(kind, payload, operation)
            raise CapabilityUnavailable(str(e), queued=queued) from e

    async def _ensure_granted(self) -> bool:
        state = await self.container.check_permission(self.mode)
        if state == PermissionState.GRANTED:
            return True
        if not in_user_interaction():
            # Prompting outside a user gesture is a hard error in the host
            return False
        state = await self.container.request_permission(self.mode)
        return state == PermissionState.GRANTED

    def _mark_lost(self, reason: str) -> None:
        if self.state == GrantState.LOST:
            return
        self.state = GrantState.LOST
        logger.warning(f"Storage capability lost: {reason}")
        self.event_bus.emit_nowait(Event(
            type=EventType.CAPABILITY_LOST,
            data={"reason": reason, "storage": self.container.label},
            source="capability_gate",
        ))

    def _enqueue(
        self,
        kind: Optional[OperationKind],
        payload: Any,
        operation: Callable[[], Awaitable[Any]],
    ) -> bool:
        if kind is None:
            return False

        if kind == OperationKind.FLUSH_INDEX:
            # A newer index flush supersedes any older queued one
            superseded = [op for op in self._pending if op.kind == OperationKind.FLUSH_INDEX]
            for op in superseded:
                self._pending.remove(op)

        if len(self._pending) == self._pending.maxlen:
            self.stats["dropped"] += 1
            logger.debug(f"Pending queue full, dropping oldest {self._pending[0].kind.value}")

        self._pending.append(PendingOperation(kind=kind, payload=payload, run=operation))
        self.stats["queued"] += 1
        logger.info(f"Queued {kind.value} until storage access returns ({len(self._pending)} pending)")
        return True

    def on_user_interaction(self) -> Optional[asyncio.Task]:
        """
        Entry point for click/visibility-restore events.

        Returns immediately; the permission check and replay run in a
        background task that carries the user-interaction context.
        """
        if self.state == GrantState.ACTIVE and not self._pending:
            return None
        if self._recovery_task is not None and not self._recovery_task.done():
            return self._recovery_task

        with user_interaction():
            self._recovery_task = asyncio.create_task(self.recover())
        return self._recovery_task

    async def recover(self) -> bool:
        """Re-check the capability; if granted, drain the pending queue."""
        async with self._recovery_lock:
            if self.state == GrantState.ACTIVE and not self._pending:
                return True

            self.state = GrantState.PENDING_RECOVERY
            try:
                granted = await self._ensure_granted()
            except Exception as e:
                logger.error(f"Capability check failed: {e}")
                granted = False

            if not granted:
                self.state = GrantState.LOST
                logger.info("Storage capability still unavailable")
                return False

            self.state = GrantState.ACTIVE
            self.stats["recoveries"] += 1
            replayed, failed = await self._drain()

        logger.info(f"Storage capability restored, replayed {replayed} operation(s)")
        self.event_bus.emit_nowait(Event(
            type=EventType.CAPABILITY_RESTORED,
            data={"replayed": replayed, "failed": failed, "storage": self.container.label},
            source="capability_gate",
        ))
        return True

    async def _drain(self) -> Tuple[int, int]:
        backlog = list(self._pending)
        self._pending.clear()

        replayed = 0
        failed = 0
        for op in backlog:
            try:
                await self.call(op.run, kind=op.kind, payload=op.payload)
                replayed += 1
            except CapabilityUnavailable:
                failed += 1
            except Exception as e:
                failed += 1
                self._errors.record("capability", e, op=op.kind.value)
                logger.error(f"Replay of {op.kind.value} failed: {e}")

        self.stats["replayed"] += replayed
        return replayed, failed

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "pending": len(self._pending),
            "storage": self.container.label,
            **self.stats,
        }
