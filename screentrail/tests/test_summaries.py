"""Tests for the summary worker."""

from datetime import datetime, timezone

import pytest

from screentrail.daemon.models import EnrichmentState, Sample
from screentrail.daemon.summaries import SummaryWorker


class EchoBackend:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.inputs = []

    async def summarize(self, text: str) -> str:
        self.inputs.append(text)
        if self.fail:
            raise RuntimeError("backend unavailable")
        return f"summary of {len(text.split())} words"


NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def add(index, timestamp, text):
    index.add_sample(Sample(timestamp=timestamp, extracted_text=text, enrichment_state=EnrichmentState.DONE))


@pytest.mark.asyncio
async def test_run_once_summarizes_window(index):
    add(index, "2025-01-01T11:00:00.000Z", "too old")
    add(index, "2025-01-01T11:30:00.000Z", "reviewed invoice")
    add(index, "2025-01-01T11:50:00.000Z", "")
    add(index, "2025-01-01T11:55:00.000Z", "sent email")
    backend = EchoBackend()
    worker = SummaryWorker(index, backend, interval_min=30, window_min=40)

    summary_id = await worker.run_once(now=NOW)

    assert backend.inputs == ["reviewed invoice\n\nsent email"]
    assert summary_id == "2025-01-01T11:20:00.000Z_2025-01-01T12:00:00.000Z"
    summary = index.get_summary("2025-01-01T11:20:00.000Z", "2025-01-01T12:00:00.000Z")
    assert summary.text == "summary of 4 words"


@pytest.mark.asyncio
async def test_same_window_overwrites(index):
    add(index, "2025-01-01T11:30:00.000Z", "draft")
    worker = SummaryWorker(index, EchoBackend())

    await worker.run_once(now=NOW)
    await worker.run_once(now=NOW)

    assert len(index.summaries()) == 1
    assert worker.stats["summaries"] == 2


@pytest.mark.asyncio
async def test_empty_window_produces_nothing(index):
    backend = EchoBackend()
    worker = SummaryWorker(index, backend)

    assert await worker.run_once(now=NOW) is None
    assert backend.inputs == []
    assert worker.stats["empty_windows"] == 1


@pytest.mark.asyncio
async def test_backend_failure_is_contained(index):
    add(index, "2025-01-01T11:30:00.000Z", "text")
    worker = SummaryWorker(index, EchoBackend(fail=True))

    assert await worker.run_once(now=NOW) is None
    assert worker.stats["failures"] == 1
    assert index.summaries() == []


@pytest.mark.asyncio
async def test_start_stop(index):
    worker = SummaryWorker(index, EchoBackend(), interval_min=60)
    await worker.start()
    assert worker.running
    await worker.stop()
    assert not worker.running
