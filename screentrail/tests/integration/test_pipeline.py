"""
End-to-end tests for the screentrail daemon.
Capture -> persist -> enrich -> search, including storage loss and restarts.
"""

import asyncio
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from screentrail.daemon.bus import EventBus
from screentrail.daemon.capability import GrantState
from screentrail.daemon.capture import CaptureState
from screentrail.daemon.config import Config
from screentrail.daemon.main import ScreentrailDaemon
from screentrail.daemon.models import EnrichmentState
from screentrail.daemon.store import INDEX_NAME
from screentrail.tests.fakes import FakeExtractor, FakeSource, MemoryContainer, change_pixels, make_frame


class FakeSummaryBackend:
    async def summarize(self, text: str) -> str:
        return "Worked on: " + text.splitlines()[0]


@pytest.fixture
def test_config():
    """Create test configuration; the capture loop is driven by the tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Config(
            storage_path=Path(tmpdir) / "captures",
            capture={"sample_interval_ms": 3_600_000},
            logging={"log_dir": Path(tmpdir) / "logs"},
        )


def frames():
    base = make_frame(100, 100, value=40)
    return [base, change_pixels(base, 0.01), change_pixels(base, 0.2), change_pixels(base, 0.6)]


def build_daemon(config, container, extractor=None, sources=None, summary_backend=None):
    pending = list(sources or [FakeSource(frames())])

    async def source_factory():
        return pending.pop(0)

    return ScreentrailDaemon(
        config,
        source_factory=source_factory,
        extractor=extractor or FakeExtractor(text="Quarterly invoice for ACME"),
        container=container,
        summary_backend=summary_backend,
        event_bus=EventBus(),
    )


@pytest_asyncio.fixture
async def running(test_config):
    """A started daemon over an in-memory storage folder."""
    container = MemoryContainer()
    daemon = build_daemon(test_config, container, summary_backend=FakeSummaryBackend())
    await daemon.start()
    yield daemon, container
    await daemon.stop()


class TestCaptureToSearchFlow:
    """Test capture -> enrichment -> search flow."""

    @pytest.mark.asyncio
    async def test_captured_text_is_searchable(self, running):
        daemon, container = running
        assert await daemon.start_capture()

        results = [await daemon.capture.tick() for _ in range(3)]
        await daemon.enrichment.drain()

        assert [r is not None for r in results] == [True, False, True]
        hits = daemon.index.search("INVOICE")
        assert len(hits) == 2
        assert hits[0].timestamp > hits[1].timestamp
        assert all(h.media_ref in container.files for h in hits)
        assert daemon.index.search("xyz") == []

    @pytest.mark.asyncio
    async def test_summary_is_searchable(self, running):
        daemon, _ = running
        await daemon.start_capture()
        await daemon.capture.tick()
        await daemon.enrichment.drain()

        summary_id = await daemon.summaries.run_once()
        assert summary_id is not None

        hits = daemon.index.search("worked on")
        assert [h.id for h in hits] == [summary_id]

    @pytest.mark.asyncio
    async def test_status_reports_every_component(self, running):
        daemon, _ = running
        status = daemon.get_status()

        assert status["capture"]["state"] == CaptureState.IDLE.value
        assert status["capability"]["state"] == GrantState.ACTIVE.value
        for key in ("enrichment", "index", "store", "events"):
            assert key in status


class TestRestart:
    """State survives a daemon restart through the durable index."""

    @pytest.mark.asyncio
    async def test_index_survives_restart(self, test_config):
        container = MemoryContainer()
        extractor = FakeExtractor(text="Quarterly invoice")
        daemon = build_daemon(test_config, container, extractor=extractor)
        await daemon.start()
        await daemon.start_capture()
        await daemon.capture.tick()
        await daemon.stop()

        assert INDEX_NAME in container.files
        calls_before = len(extractor.calls)

        restarted = build_daemon(test_config, container, extractor=extractor)
        await restarted.start()
        await restarted.enrichment.drain()

        assert len(restarted.index.search("invoice")) == 1
        assert restarted.index.pending() == []
        # Already enriched samples are not extracted again
        assert len(extractor.calls) == calls_before
        await restarted.stop()

    @pytest.mark.asyncio
    async def test_unindexed_media_is_enriched_after_restart(self, test_config):
        container = MemoryContainer()
        extractor = FakeExtractor(text="found later")
        extractor.gate = asyncio.Event()
        daemon = build_daemon(test_config, container, extractor=extractor)
        await daemon.start()
        await daemon.start_capture()
        await daemon.capture.tick()

        # Crash before enrichment or an index flush: only the media exists
        media = {name: data for name, data in container.files.items() if name != INDEX_NAME}
        extractor.gate.set()
        await daemon.stop()

        fresh = MemoryContainer()
        fresh.files = dict(media)
        restarted = build_daemon(test_config, fresh, extractor=FakeExtractor(text="found later"))
        await restarted.start()
        await restarted.enrichment.drain()

        samples = restarted.index.samples()
        assert len(samples) == 1
        assert samples[0].enrichment_state == EnrichmentState.DONE
        assert restarted.index.search("found")
        await restarted.stop()


class TestStorageLoss:
    """Revoked storage access is recovered on the next user gesture."""

    @pytest.mark.asyncio
    async def test_capture_during_revocation_replays(self, running):
        daemon, container = running
        await daemon.start_capture()

        container.revoke()
        assert await daemon.capture.tick() is None
        assert daemon.gate.state == GrantState.LOST

        container.restore()
        task = daemon.user_gesture()
        assert task is not None
        assert await task
        await daemon.enrichment.drain()

        assert len(daemon.index.samples()) == 1
        assert daemon.index.search("invoice")

    @pytest.mark.asyncio
    async def test_gesture_grants_permission_when_prompting_is_needed(self, running):
        daemon, container = running
        await daemon.start_capture()

        container.revoke()
        container.grant_on_request = True
        await daemon.capture.tick()
        assert container.permission_requests == 0

        assert await daemon.user_gesture()
        assert container.permission_requests == 1

    @pytest.mark.asyncio
    async def test_start_without_storage_loads_after_reconnect(self, test_config):
        container = MemoryContainer()
        seed = build_daemon(test_config, container)
        await seed.start()
        await seed.start_capture()
        await seed.capture.tick()
        await seed.stop()

        container.revoke()
        daemon = build_daemon(test_config, container)
        await daemon.start()
        assert not daemon.index_loaded
        assert daemon.index.samples() == []

        container.restore()
        assert await daemon.user_gesture()
        await asyncio.sleep(0.5)

        assert daemon.index_loaded
        assert len(daemon.index.samples()) == 1
        await daemon.stop()
