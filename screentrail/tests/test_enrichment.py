"""Tests for the enrichment queue."""

import asyncio

import pytest

from screentrail.daemon.enrichment import EnrichmentQueue
from screentrail.daemon.languages import Language, LanguageStatus
from screentrail.daemon.models import EnrichmentState, Sample
from screentrail.tests.fakes import FakeExtractor, make_frame


async def stored_sample(store, index, timestamp, frame=None):
    """Persist a frame and index it, as the capture loop would."""
    sample = Sample(timestamp=timestamp)
    await store.persist_sample(sample, frame if frame is not None else make_frame(100, 200, value=200))
    index.add_sample(sample)
    return sample


def make_queue(index, store, bus, registry, extractor, **kwargs):
    return EnrichmentQueue(index, store, extractor, bus, registry=registry, **kwargs)


@pytest.mark.asyncio
async def test_enrichment_attaches_text(index, store, bus, registry):
    extractor = FakeExtractor(text="Invoice #42")
    queue = make_queue(index, store, bus, registry, extractor)
    sample = await stored_sample(store, index, "2025-01-01T09:00:00.000Z")

    assert queue.enqueue(sample)
    await queue.drain()

    stored = index.get(sample.timestamp)
    assert stored.extracted_text == "Invoice #42"
    assert stored.enrichment_state == EnrichmentState.DONE
    assert queue.in_flight == set()
    assert registry.status(Language.ENG) == LanguageStatus.LOADED


@pytest.mark.asyncio
async def test_duplicate_enqueue_runs_once(index, store, bus, registry):
    extractor = FakeExtractor()
    extractor.gate = asyncio.Event()
    queue = make_queue(index, store, bus, registry, extractor)
    sample = await stored_sample(store, index, "2025-01-01T09:00:00.000Z")

    assert queue.enqueue(sample)
    assert not queue.enqueue(sample)
    assert queue.in_flight == {sample.timestamp}

    extractor.gate.set()
    await queue.drain()

    assert len(extractor.calls) == 1
    # Already done: never enriched again
    assert not queue.enqueue(index.get(sample.timestamp))
    assert queue.stats["skipped"] == 2


@pytest.mark.asyncio
async def test_empty_text_still_marks_done(index, store, bus, registry):
    queue = make_queue(index, store, bus, registry, FakeExtractor(text=""))
    sample = await stored_sample(store, index, "2025-01-01T09:00:00.000Z")

    queue.enqueue(sample)
    await queue.drain()

    stored = index.get(sample.timestamp)
    assert stored.enrichment_state == EnrichmentState.DONE
    assert stored.extracted_text == ""
    assert queue.stats["empty"] == 1


@pytest.mark.asyncio
async def test_raster_is_downscaled_before_extraction(index, store, bus, registry):
    extractor = FakeExtractor()
    queue = make_queue(index, store, bus, registry, extractor, max_dimensions=(100, 100))
    sample = await stored_sample(store, index, "2025-01-01T09:00:00.000Z", make_frame(200, 400))

    queue.enqueue(sample)
    await queue.drain()

    assert extractor.calls == [("eng", (100, 50))]


@pytest.mark.asyncio
async def test_resource_exhaustion_retries_smaller(index, store, bus, registry):
    def behaviour(image, language):
        if image.width > 50:
            raise MemoryError("out of memory")
        return "fits now"

    extractor = FakeExtractor(behaviour=behaviour)
    queue = make_queue(index, store, bus, registry, extractor, max_resource_retries=3, downscale_factor=0.5)
    sample = await stored_sample(store, index, "2025-01-01T09:00:00.000Z", make_frame(100, 200))

    queue.enqueue(sample)
    await queue.drain()

    assert [size[0] for _, size in extractor.calls] == [200, 100, 50]
    assert index.get(sample.timestamp).extracted_text == "fits now"


@pytest.mark.asyncio
async def test_resource_retries_are_bounded(index, store, bus, registry):
    def behaviour(image, language):
        raise MemoryError()

    extractor = FakeExtractor(behaviour=behaviour)
    queue = make_queue(index, store, bus, registry, extractor, max_resource_retries=2)
    sample = await stored_sample(store, index, "2025-01-01T09:00:00.000Z", make_frame(100, 200))

    queue.enqueue(sample)
    await queue.drain()

    assert len(extractor.calls) == 3
    stored = index.get(sample.timestamp)
    assert stored.enrichment_state == EnrichmentState.DONE
    assert stored.extracted_text == ""


@pytest.mark.asyncio
async def test_language_failure_falls_back_to_default(index, store, bus, registry):
    def behaviour(image, language):
        if language == Language.DEU:
            raise RuntimeError("Failed loading language 'deu'")
        return "hello"

    extractor = FakeExtractor(behaviour=behaviour)
    queue = make_queue(index, store, bus, registry, extractor, language=Language.DEU)
    first = await stored_sample(store, index, "2025-01-01T09:00:00.000Z")
    second = await stored_sample(store, index, "2025-01-01T09:00:05.000Z")

    queue.enqueue(first)
    await queue.drain()

    assert [lang for lang, _ in extractor.calls] == ["deu", "eng"]
    assert index.get(first.timestamp).extracted_text == "hello"
    assert registry.is_failed(Language.DEU)

    # The failed language is not retried for later samples
    queue.enqueue(second)
    await queue.drain()
    assert [lang for lang, _ in extractor.calls] == ["deu", "eng", "eng"]


@pytest.mark.asyncio
async def test_default_language_failure_gives_empty_text(index, store, bus, registry):
    def behaviour(image, language):
        raise RuntimeError("Error opening data file eng.traineddata")

    extractor = FakeExtractor(behaviour=behaviour)
    queue = make_queue(index, store, bus, registry, extractor)
    sample = await stored_sample(store, index, "2025-01-01T09:00:00.000Z")

    queue.enqueue(sample)
    await queue.drain()

    assert len(extractor.calls) == 1
    assert registry.is_failed(Language.ENG)
    assert index.get(sample.timestamp).enrichment_state == EnrichmentState.DONE


@pytest.mark.asyncio
async def test_unclassified_error_gives_empty_text(index, store, bus, registry):
    def behaviour(image, language):
        raise RuntimeError("tesseract crashed")

    queue = make_queue(index, store, bus, registry, FakeExtractor(behaviour=behaviour))
    sample = await stored_sample(store, index, "2025-01-01T09:00:00.000Z")

    queue.enqueue(sample)
    await queue.drain()

    stored = index.get(sample.timestamp)
    assert stored.enrichment_state == EnrichmentState.DONE
    assert stored.extracted_text == ""
    assert queue.in_flight == set()


@pytest.mark.asyncio
async def test_capability_loss_defers_then_reenqueues(index, store, bus, registry, container, gate):
    await bus.start()
    extractor = FakeExtractor(text="later")
    queue = make_queue(index, store, bus, registry, extractor)
    sample = await stored_sample(store, index, "2025-01-01T09:00:00.000Z")

    container.revoke()
    queue.enqueue(sample)
    await queue.drain()

    assert index.get(sample.timestamp).enrichment_state == EnrichmentState.FAILED
    assert extractor.calls == []
    assert queue.in_flight == set()

    container.restore()
    assert await gate.on_user_interaction()
    await asyncio.sleep(0.3)
    await queue.drain()

    stored = index.get(sample.timestamp)
    assert stored.enrichment_state == EnrichmentState.DONE
    assert stored.extracted_text == "later"
    await bus.stop()


@pytest.mark.asyncio
async def test_missing_media_marks_done_with_empty_text(index, store, bus, registry, container):
    queue = make_queue(index, store, bus, registry, FakeExtractor())
    sample = await stored_sample(store, index, "2025-01-01T09:00:00.000Z")
    del container.files[sample.media_ref]

    queue.enqueue(sample)
    await queue.drain()

    assert index.get(sample.timestamp).enrichment_state == EnrichmentState.DONE
    assert index.get(sample.timestamp).extracted_text == ""


@pytest.mark.asyncio
async def test_enqueue_pending(index, store, bus, registry):
    extractor = FakeExtractor()
    queue = make_queue(index, store, bus, registry, extractor)
    for second in range(3):
        await stored_sample(store, index, f"2025-01-01T09:00:0{second}.000Z")

    assert queue.enqueue_pending() == 3
    await queue.drain()
    assert index.pending() == []
    assert queue.enqueue_pending() == 0


@pytest.mark.asyncio
async def test_sample_without_media_is_not_enqueued(index, store, bus, registry):
    queue = make_queue(index, store, bus, registry, FakeExtractor())
    assert not queue.enqueue(Sample(timestamp="2025-01-01T09:00:00.000Z"))
    assert queue.in_flight == set()
