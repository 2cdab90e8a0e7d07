"""Main daemon process for screentrail."""

import asyncio
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from loguru import logger

from .bus import Event, EventBus, EventType, get_event_bus
from .capability import CapabilityGate, user_interaction
from .capture import CaptureScheduler
from .config import Config
from .container import LocalDirectoryContainer, StorageContainer
from .enrichment import EnrichmentQueue, TextExtractor
from .errors import CapabilityUnavailable, CaptureSourceError, ConfigError, get_error_tracker
from .index import ReconcilingIndex
from .models import SessionState
from .sources import SourceFactory
from .store import DurableStore
from .summaries import SummaryBackend, SummaryWorker


class ScreentrailDaemon:
    """Wires the pipeline together and owns its lifecycle."""

    def __init__(
        self,
        config: Config,
        source_factory: SourceFactory,
        extractor: TextExtractor,
        container: Optional[StorageContainer] = None,
        summary_backend: Optional[SummaryBackend] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = config
        self.start_time = datetime.utcnow()
        self.event_bus = event_bus or get_event_bus()
        self.container = container or LocalDirectoryContainer(config.storage_path)
        self.session = SessionState(storage_label=self.container.label)
        self.index_loaded = False

        self.gate = CapabilityGate(
            self.container,
            self.event_bus,
            pending_limit=config.capability.pending_limit,
            replay_limit=config.capability.replay_limit,
        )
        self.store = DurableStore(self.container, self.gate, jpeg_quality=config.capture.image_quality)
        self.index = ReconcilingIndex(
            self.store,
            self.event_bus,
            self.session,
            flush_interval_s=config.index.flush_interval_s,
        )
        self.enrichment = EnrichmentQueue(
            self.index,
            self.store,
            extractor,
            self.event_bus,
            language=config.enrichment.language,
            max_dimensions=config.enrichment.max_raster_dimensions,
            max_workers=config.enrichment.max_workers,
            max_resource_retries=config.enrichment.max_resource_retries,
            downscale_factor=config.enrichment.downscale_factor,
        )
        self.capture = CaptureScheduler(
            source_factory,
            self.store,
            self.index,
            self.enrichment,
            self.event_bus,
            self.session,
            interval_s=config.capture.sample_interval_ms / 1000,
            diff_threshold=config.capture.diff_threshold,
            source_ended_backoff_s=config.capture.source_ended_backoff_s,
            grab_error_backoff_s=config.capture.grab_error_backoff_s,
            max_restart_attempts=config.capture.max_restart_attempts,
        )
        self.summaries = (
            SummaryWorker(
                self.index,
                summary_backend,
                interval_min=config.summaries.interval_min,
                window_min=config.summaries.window_min,
            )
            if summary_backend is not None
            else None
        )

    async def start(self) -> None:
        """Start all daemon services."""
        logger.info("Starting screentrail daemon...")

        await self.event_bus.start()
        self.event_bus.subscribe(EventType.CAPABILITY_RESTORED, self._on_capability_restored)

        await self._load_index()
        await self.index.start()
        if self.summaries is not None:
            await self.summaries.start()

        logger.info(f"screentrail daemon started (storage: {self.container.label})")

    async def stop(self) -> None:
        """Stop all daemon services."""
        logger.info("Stopping screentrail daemon...")

        await self.capture.stop()
        if self.summaries is not None:
            await self.summaries.stop()
        try:
            await asyncio.wait_for(self.enrichment.drain(), timeout=30)
        except asyncio.TimeoutError:
            logger.warning("Enrichment jobs still running at shutdown")
        await self.index.stop()
        await self.event_bus.stop()

        logger.info("screentrail daemon stopped")

    async def _load_index(self) -> None:
        try:
            await self.index.load()
        except CapabilityUnavailable as e:
            logger.warning(f"Storage not accessible, reconnect to load the index: {e}")
            return
        self.index_loaded = True
        self.enrichment.enqueue_pending()

    async def _on_capability_restored(self, event: Event) -> None:
        if not self.index_loaded:
            await self._load_index()

    async def start_capture(self) -> bool:
        try:
            await self.capture.start()
        except CaptureSourceError as e:
            logger.error(f"Failed to start capture: {e}")
            return False
        return True

    async def pause_capture(self) -> None:
        await self.capture.pause()

    def user_gesture(self) -> Optional[asyncio.Task]:
        """Any user interaction: a chance to restore storage access."""
        with user_interaction():
            return self.gate.on_user_interaction()

    def get_status(self) -> dict:
        """Get daemon status and statistics."""
        uptime = (datetime.utcnow() - self.start_time).total_seconds()
        return {
            "status": "running",
            "uptime": f"{uptime:.0f}s",
            "capture": self.capture.get_status(),
            "capability": self.gate.get_status(),
            "enrichment": self.enrichment.get_status(),
            "index": self.index.get_status(),
            "store": dict(self.store.stats),
            "events": self.event_bus.get_stats(),
            "recent_errors": [e.to_dict() for e in get_error_tracker().recent(limit=5)],
        }


def setup_logging(config: Optional[Config] = None, level: Optional[str] = None) -> None:
    """Console plus rotating file logging."""
    level = level or (config.logging.level if config else "INFO")
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
    )

    log_dir = Path(config.logging.log_dir) if config else Path.home() / ".local" / "share" / "screentrail" / "logs"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning(f"File logging disabled, cannot create {log_dir}: {e}")
        return
    logger.add(
        log_dir / "daemon.log",
        rotation="1 day",
        retention="7 days",
        level="DEBUG",
    )


CONTROLS = "[s] start  [p] pause  [r] reconnect storage  [q] quit"


async def _read_controls(daemon: ScreentrailDaemon, stop_event: asyncio.Event) -> None:
    """Keyboard commands from stdin; every key press counts as a user gesture."""
    loop = asyncio.get_running_loop()
    while not stop_event.is_set():
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            # stdin closed: keep running headless
            return
        command = line.strip().lower()
        daemon.user_gesture()
        if command == "s":
            await daemon.start_capture()
        elif command == "p":
            await daemon.pause_capture()
        elif command == "q":
            stop_event.set()
        elif command and command != "r":
            logger.info(CONTROLS)


async def main(config_path: Optional[str] = None, autostart: bool = True, monitor: int = 1):
    """Main entry point for the daemon."""
    from .extractors import TesseractExtractor
    from .sources import screen_source_factory

    try:
        config = Config.load(Path(config_path)) if config_path else Config.load()
    except (FileNotFoundError, ConfigError, ValueError) as e:
        setup_logging()
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(config)

    daemon = ScreentrailDaemon(
        config,
        source_factory=screen_source_factory(monitor),
        extractor=TesseractExtractor(),
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig_name in ("SIGINT", "SIGTERM"):
        try:
            loop.add_signal_handler(getattr(signal, sig_name), stop_event.set)
        except (NotImplementedError, AttributeError):
            # Windows event loops have no signal handlers
            pass

    controls = None
    try:
        await daemon.start()
        if autostart:
            await daemon.start_capture()
        logger.info(CONTROLS)
        controls = asyncio.create_task(_read_controls(daemon, stop_event))
        await stop_event.wait()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as e:
        logger.exception(f"Daemon error: {e}")
    finally:
        if controls is not None:
            controls.cancel()
        await daemon.stop()


if __name__ == "__main__":
    asyncio.run(main())
