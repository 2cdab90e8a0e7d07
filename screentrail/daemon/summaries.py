"""
Summary worker: periodically condenses recent extracted text.
Runs every ``interval_min`` minutes over the last ``window_min`` minutes, so
consecutive windows overlap and nothing at a boundary is lost.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from loguru import logger

from .index import ReconcilingIndex
from .naming import format_timestamp


class SummaryBackend(Protocol):
    async def summarize(self, text: str) -> str: ...


class SummaryWorker:
    """Background worker feeding recent text to a summarization backend."""

    def __init__(
        self,
        index: ReconcilingIndex,
        backend: SummaryBackend,
        interval_min: float = 30.0,
        window_min: float = 40.0,
    ):
        self.index = index
        self.backend = backend
        self.interval_seconds = interval_min * 60
        self.window = timedelta(minutes=window_min)

        self.running = False
        self.task = None
        self.last_run: Optional[datetime] = None

        self.stats = {
            "runs": 0,
            "summaries": 0,
            "empty_windows": 0,
            "failures": 0,
        }

    async def start(self):
        """Start the summary worker."""
        if self.running:
            return

        self.running = True
        self.task = asyncio.create_task(self._run_loop())
        logger.info(f"Summary worker started (interval: {self.interval_seconds}s)")

    async def stop(self):
        """Stop the summary worker."""
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        logger.info("Summary worker stopped")

    async def _run_loop(self):
        """Main summary loop."""
        while self.running:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Summary worker error: {e}")

    async def run_once(self, now: Optional[datetime] = None) -> Optional[str]:
        """
        Summarize the current window. Returns the summary id, or None when
        there was no text or the backend failed.
        """
        now = now or datetime.now(timezone.utc)
        start = now - self.window
        self.stats["runs"] += 1
        self.last_run = now

        samples = self.index.recent(hours=self.window.total_seconds() / 3600, now=now)
        texts = [s.extracted_text.strip() for s in samples if s.extracted_text.strip()]
        if not texts:
            self.stats["empty_windows"] += 1
            logger.debug("No extracted text in summary window")
            return None

        try:
            summary = await self.backend.summarize("\n\n".join(texts))
        except Exception as e:
            self.stats["failures"] += 1
            logger.error(f"Summarization failed: {e}")
            return None

        if not summary or not summary.strip():
            self.stats["empty_windows"] += 1
            return None

        summary_id = self.index.add_summary(format_timestamp(start), format_timestamp(now), summary.strip())
        self.stats["summaries"] += 1
        return summary_id
