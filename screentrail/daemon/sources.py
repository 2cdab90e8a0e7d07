"""Capture sources: where frames come from."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Protocol

import mss
import mss.exception
import numpy as np
from loguru import logger

from .errors import CaptureSourceEnded, CaptureSourceError

EndedCallback = Callable[[], None]


class CaptureSource(Protocol):
    """
    A live frame source.

    ``grab_frame`` returns an (H, W, 3|4) uint8 array, raises
    CaptureSourceError on transient failures and CaptureSourceEnded once the
    source is gone. Ended callbacks fire once, when the source terminates.
    """

    @property
    def ended(self) -> bool: ...

    async def grab_frame(self) -> np.ndarray: ...

    def on_ended(self, callback: EndedCallback) -> None: ...

    async def close(self) -> None: ...


class SourceFactory(Protocol):
    async def __call__(self) -> CaptureSource: ...


class ScreenSource:
    """
    Grabs one monitor with mss.

    mss handles are bound to the thread that created them, so every call runs
    on the source's own single worker thread.
    """

    def __init__(self, monitor: int = 1):
        self.monitor = monitor
        self._sct = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="screen-source")
        self._ended = False
        self._callbacks: List[EndedCallback] = []

    @classmethod
    async def open(cls, monitor: int = 1) -> "ScreenSource":
        source = cls(monitor)
        try:
            await source._call(source._acquire)
        except CaptureSourceError:
            source._executor.shutdown(wait=False)
            raise
        return source

    async def _call(self, fn):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn)

    def _acquire(self) -> None:
        try:
            self._sct = mss.mss()
            if self.monitor >= len(self._sct.monitors):
                raise CaptureSourceError(
                    f"Monitor {self.monitor} not available ({len(self._sct.monitors) - 1} found)"
                )
        except mss.exception.ScreenShotError as e:
            raise CaptureSourceError(f"Cannot open screen capture: {e}") from e

    @property
    def ended(self) -> bool:
        return self._ended

    def on_ended(self, callback: EndedCallback) -> None:
        self._callbacks.append(callback)

    def _grab_sync(self) -> np.ndarray:
        if self._sct is None:
            raise CaptureSourceEnded("Screen source is closed")
        try:
            shot = self._sct.grab(self._sct.monitors[self.monitor])
        except mss.exception.ScreenShotError as e:
            if not self._monitor_present():
                raise CaptureSourceEnded(f"Monitor {self.monitor} is gone") from e
            raise CaptureSourceError(f"Screen grab failed: {e}") from e
        # mss returns BGRA
        frame = np.asarray(shot, dtype=np.uint8)
        return frame[..., [2, 1, 0]].copy()

    async def grab_frame(self) -> np.ndarray:
        if self._ended:
            raise CaptureSourceEnded("Screen source has ended")
        try:
            return await self._call(self._grab_sync)
        except CaptureSourceEnded:
            self.end()
            raise

    def _monitor_present(self) -> bool:
        """mss caches its monitor list, so ask a fresh handle."""
        try:
            with mss.mss() as fresh:
                return self.monitor < len(fresh.monitors)
        except mss.exception.ScreenShotError:
            return False

    def end(self) -> None:
        """Terminate the source and notify listeners once."""
        if self._ended:
            return
        self._ended = True
        for callback in self._callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Ended callback failed: {e}")

    async def close(self) -> None:
        self._ended = True
        self._callbacks.clear()
        if self._sct is not None:
            sct, self._sct = self._sct, None
            await self._call(sct.close)
        self._executor.shutdown(wait=False)


def screen_source_factory(monitor: int = 1) -> SourceFactory:
    """Factory the scheduler calls each time capture (re)starts."""
    async def factory() -> CaptureSource:
        return await ScreenSource.open(monitor)
    return factory
