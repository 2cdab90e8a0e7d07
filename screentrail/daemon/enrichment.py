"""Background text enrichment of persisted samples.

Each sample is enriched at most once. Jobs are fire-and-forget relative to
the sampling loop and bounded by a worker semaphore, since every job holds a
decoded raster in memory.

Per job:
1. Read the stored media and downscale it to ``max_dimensions``.
2. Extract text; on resource exhaustion retry with geometrically smaller
   rasters, up to ``max_resource_retries`` times.
3. On a language load failure mark the language failed process-wide and fall
   back once to the default language.
4. Write back whatever text was obtained (possibly empty) and mark the sample
   done. The in-flight marker is always cleared.
"""

import asyncio
from typing import Optional, Protocol, Set, Tuple

from loguru import logger
from PIL import Image

from . import codec
from .bus import Event, EventBus, EventType
from .errors import (
    CapabilityUnavailable,
    EnrichmentLanguageError,
    EnrichmentResourceError,
    ExtractionError,
    PersistenceError,
    classify_extraction_error,
    get_error_tracker,
)
from .index import ReconcilingIndex
from .languages import DEFAULT_LANGUAGE, Language, LanguageRegistry, get_language_registry
from .models import EnrichmentState, Sample
from .store import DurableStore


class TextExtractor(Protocol):
    """Extraction backend. Raises on failure; see classify_extraction_error."""

    async def extract(self, image: Image.Image, language: Language) -> str: ...


class EnrichmentQueue:
    """Deduplicating queue of text extraction jobs."""

    def __init__(
        self,
        index: ReconcilingIndex,
        store: DurableStore,
        extractor: TextExtractor,
        event_bus: EventBus,
        language: Language = DEFAULT_LANGUAGE,
        max_dimensions: Tuple[int, int] = (2000, 2000),
        max_workers: int = 2,
        max_resource_retries: int = 3,
        downscale_factor: float = 0.5,
        registry: Optional[LanguageRegistry] = None,
    ):
        self.index = index
        self.store = store
        self.extractor = extractor
        self.event_bus = event_bus
        self.language = language
        self.max_dimensions = tuple(max_dimensions)
        self.max_resource_retries = max_resource_retries
        self.downscale_factor = downscale_factor
        self.registry = registry or get_language_registry()

        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._semaphore = asyncio.Semaphore(max_workers)
        self._errors = get_error_tracker()

        self.stats = {
            "enqueued": 0,
            "skipped": 0,
            "completed": 0,
            "empty": 0,
            "deferred": 0,
        }

        self.event_bus.subscribe(EventType.CAPABILITY_RESTORED, self._on_capability_restored)

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    def enqueue(self, sample: Sample) -> bool:
        """
        Schedule extraction for ``sample``. Returns False if it was skipped
        because it is already done or already being worked on.
        """
        durable = self.index.get(sample.timestamp)
        state = durable.enrichment_state if durable is not None else sample.enrichment_state
        if state == EnrichmentState.DONE or sample.timestamp in self._in_flight:
            self.stats["skipped"] += 1
            return False

        media_ref = (durable.media_ref if durable is not None else None) or sample.media_ref
        if not media_ref:
            logger.warning(f"Sample {sample.timestamp} has no stored media, not enriching")
            return False

        self._in_flight.add(sample.timestamp)
        task = asyncio.create_task(self._run(sample.timestamp, media_ref))
        self._tasks.add(task)
        task.add_done_callback(lambda t, ts=sample.timestamp: self._finish(ts, t))
        self.stats["enqueued"] += 1
        return True

    def enqueue_pending(self) -> int:
        """Enqueue every indexed sample that has no text yet."""
        return sum(1 for sample in self.index.pending() if self.enqueue(sample))

    async def _on_capability_restored(self, event: Event) -> None:
        count = self.enqueue_pending()
        if count:
            logger.info(f"Re-enqueued {count} sample(s) for enrichment after reconnect")

    def _finish(self, timestamp: str, task: asyncio.Task) -> None:
        # Also covers tasks cancelled before their body ever ran
        self._tasks.discard(task)
        self._in_flight.discard(timestamp)

    async def drain(self) -> None:
        """Wait until every scheduled job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, timestamp: str, media_ref: str) -> None:
        try:
            async with self._semaphore:
                try:
                    data = await self.store.read_media(media_ref)
                except CapabilityUnavailable:
                    # Retried when the capability comes back
                    self.index.mark_failed(timestamp)
                    self.stats["deferred"] += 1
                    logger.info(f"Enrichment of {timestamp} deferred until storage reconnects")
                    return
                except (OSError, PersistenceError) as e:
                    self._errors.record("enrichment", e, sample=timestamp)
                    logger.warning(f"Could not read media for {timestamp}: {e}")
                    data = None

                text = await self._extract_text(timestamp, data) if data is not None else ""

            if self.index.attach_text(timestamp, text) is None:
                return
            self.stats["completed"] += 1
            if not text.strip():
                self.stats["empty"] += 1
            self.event_bus.emit_nowait(Event(
                type=EventType.ENRICHMENT_COMPLETED,
                data={"timestamp": timestamp, "chars": len(text)},
                source="enrichment",
            ))
            logger.debug(f"Enriched {timestamp} ({len(text)} chars)")
        except Exception as e:
            self._errors.record("enrichment", e, sample=timestamp)
            logger.error(f"Enrichment of {timestamp} failed unexpectedly: {e}")
            self.index.attach_text(timestamp, "")
        finally:
            self._in_flight.discard(timestamp)

    async def _extract_text(self, timestamp: str, data: bytes) -> str:
        try:
            image = await asyncio.to_thread(codec.decode, data)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not decode media for {timestamp}: {e}")
            return ""
        image = await asyncio.to_thread(codec.downscale, image, self.max_dimensions)

        language = self._choose_language()
        if language is None:
            logger.debug(f"No usable extraction language for {timestamp}")
            return ""

        try:
            return await self._extract_with_retries(image, language)
        except EnrichmentLanguageError as e:
            self.registry.mark_failed(language)
            logger.warning(f"Language {language.value} unavailable: {e}")
            if language == DEFAULT_LANGUAGE or self.registry.is_failed(DEFAULT_LANGUAGE):
                return ""
            logger.info(f"Falling back to {DEFAULT_LANGUAGE.value} for {timestamp}")
            try:
                return await self._extract_with_retries(image, DEFAULT_LANGUAGE)
            except EnrichmentLanguageError as fallback_error:
                self.registry.mark_failed(DEFAULT_LANGUAGE)
                logger.error(f"Fallback language unavailable: {fallback_error}")
                return ""
            except ExtractionError as fallback_error:
                logger.warning(f"Extraction failed for {timestamp}: {fallback_error}")
                return ""
        except ExtractionError as e:
            logger.warning(f"Extraction failed for {timestamp}: {e}")
            return ""

    def _choose_language(self) -> Optional[Language]:
        if not self.registry.is_failed(self.language):
            return self.language
        if self.language != DEFAULT_LANGUAGE and not self.registry.is_failed(DEFAULT_LANGUAGE):
            return DEFAULT_LANGUAGE
        return None

    async def _extract_with_retries(self, image: Image.Image, language: Language) -> str:
        current = image
        attempt = 0
        while True:
            try:
                text = await self.extractor.extract(current, language)
            except Exception as e:
                error = classify_extraction_error(e)
                if isinstance(error, EnrichmentResourceError) and attempt < self.max_resource_retries:
                    attempt += 1
                    scale = self.downscale_factor ** attempt
                    bounds = (
                        max(1, int(image.width * scale)),
                        max(1, int(image.height * scale)),
                    )
                    logger.debug(f"Out of resources, retrying at {bounds[0]}x{bounds[1]}")
                    current = await asyncio.to_thread(codec.downscale, image, bounds)
                    continue
                if error is e:
                    raise
                raise error from e

            self.registry.mark_loaded(language)
            return text or ""

    def get_status(self) -> dict:
        return {
            "in_flight": len(self._in_flight),
            "language": self.language.value,
            **self.stats,
        }
