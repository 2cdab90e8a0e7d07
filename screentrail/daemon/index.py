"""Reconciling index: the in-memory view of everything in the store.

On load the durable index is merged with a live scan of the container. The
files are the source of truth for which samples exist; the durable index
contributes extracted text and summaries.
"""

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set, Union

from loguru import logger

from .bus import Event, EventBus, EventType
from .errors import CapabilityUnavailable, ErrorSeverity, PersistenceError, get_error_tracker
from .models import EnrichmentState, Index, ReconcileReport, Sample, SessionState, Summary, summary_id
from .naming import filename_to_timestamp, format_timestamp, is_valid_timestamp, parse_timestamp
from .store import DurableStore

Record = Union[Sample, Summary]


class ReconcilingIndex:
    """Samples and summaries, searchable, mirrored to the durable store."""

    def __init__(
        self,
        store: DurableStore,
        event_bus: EventBus,
        session: SessionState,
        flush_interval_s: float = 300.0,
    ):
        self.store = store
        self.event_bus = event_bus
        self.session = session
        self.flush_interval_s = flush_interval_s

        self._samples: Dict[str, Sample] = {}
        self._summaries: Dict[str, Summary] = {}

        self.running = False
        self.task: Optional[asyncio.Task] = None
        self._errors = get_error_tracker()

    # Reconciliation

    async def load(self) -> ReconcileReport:
        """Full scan of the container merged with the durable index."""
        report = ReconcileReport()

        loaded = await self.store.load_index()
        if loaded is None:
            durable = Index()
            logger.info("No durable index found, starting from a file scan only")
        else:
            durable, report.source = loaded

        by_media = {s.media_ref: s for s in durable.samples.values() if s.media_ref}
        samples: Dict[str, Sample] = {}

        entries = sorted(await self.store.list_media(), key=lambda e: e.name)
        report.scanned = len(entries)
        names = {entry.name for entry in entries}
        foreign = []

        # Canonical names claim their timestamps before any are rebuilt
        for entry in entries:
            timestamp = filename_to_timestamp(entry.name)
            if timestamp is None:
                foreign.append(entry)
                continue
            if timestamp in samples:
                # The same sample stored under both encodings; first one wins
                logger.warning(f"Duplicate media for {timestamp}, ignoring {entry.name}")
                continue
            record = by_media.get(entry.name)
            if record is None:
                # Indexed under the other encoding, unless a foreign file owns the record
                candidate = durable.samples.get(timestamp)
                if candidate is not None and not self._is_foreign(candidate.media_ref, names):
                    record = candidate
            sample = Sample(
                timestamp=timestamp,
                media_ref=entry.name,
                reconstructed=record.reconstructed if record else False,
            )
            samples[timestamp] = self._merge_record(sample, record, report)

        # Foreign files already indexed keep their recorded time
        foreign.sort(key=lambda e: e.name not in by_media)
        for entry in foreign:
            record = by_media.get(entry.name)
            if record is not None and record.timestamp not in samples:
                sample = Sample(
                    timestamp=record.timestamp,
                    media_ref=entry.name,
                    reconstructed=record.reconstructed,
                )
            else:
                timestamp = self._reconstruct_timestamp(entry.modified, samples)
                report.reconstructed += 1
                report.reconstructed_names.append(entry.name)
                sample = Sample(timestamp=timestamp, media_ref=entry.name, reconstructed=True)
            samples[sample.timestamp] = self._merge_record(sample, record, report)

        report.dropped_records = len(
            [s for s in durable.samples.values() if s.timestamp not in samples]
        )

        self._samples = samples
        self._summaries = dict(durable.summaries)
        if report.reconstructed or report.dropped_records:
            self.session.needs_save = True

        logger.info(
            f"Reconciled {report.scanned} file(s): {report.matched} indexed, "
            f"{report.pending} pending enrichment, {report.reconstructed} reconstructed, "
            f"{report.dropped_records} stale record(s) dropped"
        )
        return report

    @staticmethod
    def _is_foreign(media_ref: Optional[str], names: Set[str]) -> bool:
        return media_ref in names and filename_to_timestamp(media_ref) is None

    @staticmethod
    def _merge_record(sample: Sample, record: Optional[Sample], report: ReconcileReport) -> Sample:
        """Carry extracted text over from the durable record, if any."""
        if record is not None:
            sample.extracted_text = record.extracted_text
            sample.enrichment_state = record.enrichment_state
            report.matched += 1
        if sample.enrichment_state != EnrichmentState.DONE:
            sample.enrichment_state = EnrichmentState.PENDING
            report.pending += 1
        return sample

    @staticmethod
    def _reconstruct_timestamp(modified: float, taken: Dict[str, Sample]) -> str:
        """Timestamp from a file's mtime, nudged forward until it is unique."""
        dt = datetime.fromtimestamp(modified, tz=timezone.utc)
        dt = dt.replace(microsecond=(dt.microsecond // 1000) * 1000)
        timestamp = format_timestamp(dt)
        while timestamp in taken:
            dt += timedelta(milliseconds=1)
            timestamp = format_timestamp(dt)
        return timestamp

    # Samples

    def get(self, timestamp: str) -> Optional[Sample]:
        return self._samples.get(timestamp)

    def samples(self) -> List[Sample]:
        return sorted(self._samples.values(), key=lambda s: s.timestamp)

    def add_sample(self, sample: Sample) -> None:
        if sample.timestamp in self._samples:
            raise ValueError(f"Sample {sample.timestamp} already indexed")
        self._samples[sample.timestamp] = sample
        self.session.needs_save = True
        self.event_bus.emit_nowait(Event(
            type=EventType.SAMPLE_ADDED,
            data={"timestamp": sample.timestamp, "media_ref": sample.media_ref},
            source="index",
        ))

    def attach_text(self, timestamp: str, text: str) -> Optional[Sample]:
        """Record extracted text; a sample is only ever enriched once."""
        sample = self._samples.get(timestamp)
        if sample is None:
            logger.warning(f"Extracted text for unknown sample {timestamp}")
            return None
        if sample.enrichment_state == EnrichmentState.DONE:
            return sample
        sample.extracted_text = text
        sample.enrichment_state = EnrichmentState.DONE
        self.session.needs_save = True
        return sample

    def mark_failed(self, timestamp: str) -> None:
        sample = self._samples.get(timestamp)
        if sample is not None and sample.enrichment_state != EnrichmentState.DONE:
            sample.enrichment_state = EnrichmentState.FAILED

    def pending(self) -> List[Sample]:
        """Samples still waiting for text, oldest first."""
        return [s for s in self.samples() if s.enrichment_state != EnrichmentState.DONE]

    def recent(self, hours: float = 0.5, now: Optional[datetime] = None) -> List[Sample]:
        """Samples captured within the last ``hours``."""
        now = now or datetime.now(timezone.utc)
        cutoff = format_timestamp(now - timedelta(hours=hours))
        return [s for s in self.samples() if s.timestamp > cutoff]

    # Summaries

    def add_summary(self, start_time: str, end_time: str, text: str) -> str:
        """Store a summary; the same span overwrites rather than duplicates."""
        summary = Summary(start_time=start_time, end_time=end_time, text=text)
        replaced = summary.id in self._summaries
        self._summaries[summary.id] = summary
        self.session.needs_save = True
        logger.info(f"{'Replaced' if replaced else 'Added'} summary {summary.id}")
        self.event_bus.emit_nowait(Event(
            type=EventType.SUMMARY_ADDED,
            data={"id": summary.id, "replaced": replaced},
            source="index",
        ))
        return summary.id

    def get_summary(self, start_time: str, end_time: str) -> Optional[Summary]:
        return self._summaries.get(summary_id(start_time, end_time))

    def summaries(self) -> List[Summary]:
        return sorted(self._summaries.values(), key=lambda s: s.end_time)

    # Search

    def search(self, term: str = "") -> List[Record]:
        """
        Samples and summaries, newest first.

        An empty term returns everything; otherwise a case-insensitive
        substring match against extracted text / summary text. Records
        without a usable timestamp are left out.
        """
        needle = (term or "").strip().lower()
        results: List[Record] = []

        for sample in self._samples.values():
            if needle and needle not in sample.extracted_text.lower():
                continue
            results.append(sample)

        for summary in self._summaries.values():
            if needle and needle not in summary.text.lower():
                continue
            results.append(summary)

        results = [r for r in results if self._has_usable_time(r)]
        results.sort(key=lambda r: parse_timestamp(r.sort_key), reverse=True)
        return results

    @staticmethod
    def _has_usable_time(record: Record) -> bool:
        return bool(record.sort_key) and is_valid_timestamp(record.sort_key)

    # Persistence

    def snapshot(self) -> Index:
        return Index(
            samples=copy.deepcopy(self._samples),
            summaries=copy.deepcopy(self._summaries),
        )

    async def flush(self, force: bool = False) -> bool:
        """Commit the index to the store if anything changed."""
        if not (force or self.session.needs_save):
            return False

        snapshot = self.snapshot()
        self.session.needs_save = False
        try:
            await self.store.flush_index(snapshot)
        except CapabilityUnavailable as e:
            # Queued with the gate when e.queued; a later change re-marks it
            if not e.queued:
                self.session.needs_save = True
            logger.info(f"Index flush deferred: {e}")
            return False
        except PersistenceError as e:
            self.session.needs_save = True
            self._errors.record("index", e, ErrorSeverity.HIGH)
            logger.error(f"Index flush failed: {e}")
            self.event_bus.emit_nowait(Event(
                type=EventType.PERSISTENCE_FAILED,
                data={"operation": "flush_index", "error": str(e)},
                source="index",
            ))
            return False

        self.session.last_flush = datetime.now(timezone.utc)
        self.event_bus.emit_nowait(Event(
            type=EventType.INDEX_FLUSHED,
            data={"samples": len(snapshot.samples), "summaries": len(snapshot.summaries)},
            source="index",
        ))
        return True

    async def start(self) -> None:
        """Start periodic flushing."""
        if self.running:
            return
        self.running = True
        self.task = asyncio.create_task(self._run_loop())
        logger.info(f"Index autoflush started (interval: {self.flush_interval_s}s)")

    async def stop(self) -> None:
        """Stop periodic flushing and write any outstanding changes."""
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        await self.flush()
        logger.info("Index autoflush stopped")

    async def _run_loop(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.flush_interval_s)
                await self.flush()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Index autoflush error: {e}")

    def get_status(self) -> Dict[str, object]:
        return {
            "samples": len(self._samples),
            "summaries": len(self._summaries),
            "pending_enrichment": len(self.pending()),
            "needs_save": self.session.needs_save,
            "last_flush": self.session.last_flush.isoformat() if self.session.last_flush else None,
        }
