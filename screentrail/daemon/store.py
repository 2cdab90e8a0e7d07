"""Durable store: sample media files and the crash-safe index file.

The external container offers only whole-file read, write and delete. The
index is therefore committed with a rolling copy protocol instead of a rename:

1. Serialize the index to ``index.tmp.json``.
2. Copy the committed ``index.json`` (if any) to ``index.backup.json``, then
   delete ``index.json``.
3. Copy the temp file into ``index.json``, then delete the temp file.

Whatever step is interrupted, one of committed / backup / temp is a complete
snapshot, and ``load_index`` tries them in that order.
"""

import asyncio
import json
from typing import Awaitable, Callable, List, Optional, Tuple

import numpy as np
from loguru import logger

from .capability import CapabilityGate
from .codec import encode_variants
from .container import EntryInfo, StorageContainer
from .errors import AuthorizationError, PersistenceError
from .models import Index, OperationKind, Sample
from .naming import is_media_name, timestamp_to_filename

INDEX_NAME = "index.json"
BACKUP_NAME = "index.backup.json"
TEMP_NAME = "index.tmp.json"

SampleCallback = Callable[[Sample], Awaitable[None]]


class DurableStore:
    """Writes samples and the index through the capability gate."""

    def __init__(
        self,
        container: StorageContainer,
        gate: CapabilityGate,
        jpeg_quality: int = 80,
    ):
        self.container = container
        self.gate = gate
        self.jpeg_quality = jpeg_quality
        self._index_lock = asyncio.Lock()

        self.stats = {
            "samples_written": 0,
            "index_flushes": 0,
            "bytes_written": 0,
        }

    async def persist_sample(
        self,
        sample: Sample,
        frame: np.ndarray,
        on_persisted: Optional[SampleCallback] = None,
    ) -> Sample:
        """
        Write the sample's raster and run ``on_persisted`` once it is on disk.

        While the capability is lost the whole write (callback included) is
        queued and CapabilityUnavailable is raised.
        """
        # Encode now so the queued write does not hold on to the raw frame
        variants = await asyncio.to_thread(encode_variants, frame, self.jpeg_quality)

        async def write() -> Sample:
            await self._write_sample_files(sample, variants)
            if on_persisted is not None:
                await on_persisted(sample)
            return sample

        return await self.gate.call(write, kind=OperationKind.PERSIST_SAMPLE, payload=sample.timestamp)

    async def _write_sample_files(self, sample: Sample, variants) -> None:
        png_name = timestamp_to_filename(sample.timestamp, "png")
        jpg_name = timestamp_to_filename(sample.timestamp, "jpg")

        try:
            await self.container.write_file(png_name, variants.png, create=True)
            await self.container.write_file(jpg_name, variants.jpg, create=True)

            # Keep exactly one file per sample: the smaller encoding
            keep_ext, data = variants.smaller()
            drop_name = png_name if keep_ext == "jpg" else jpg_name
            await self.container.delete_file(drop_name)
        except (AuthorizationError, PersistenceError):
            raise
        except OSError as e:
            raise PersistenceError(f"Failed to write sample {sample.timestamp}: {e}") from e

        sample.media_ref = timestamp_to_filename(sample.timestamp, keep_ext)
        self.stats["samples_written"] += 1
        self.stats["bytes_written"] += len(data)
        logger.debug(f"Saved {sample.media_ref} ({len(data)} bytes)")

    async def flush_index(self, index: Index) -> None:
        """Commit ``index`` with the rolling copy protocol."""
        payload = json.dumps(index.to_dict(), indent=2).encode("utf-8")

        async def write() -> None:
            async with self._index_lock:
                await self._rolling_write(payload)

        await self.gate.call(write, kind=OperationKind.FLUSH_INDEX, payload=len(index.samples))

    async def _rolling_write(self, payload: bytes) -> None:
        try:
            # 1. Full snapshot under a name that is never read first
            await self.container.write_file(TEMP_NAME, payload, create=True)

            # 2. Back up the committed file before removing it
            names = {entry.name for entry in await self.container.list_entries()}
            if INDEX_NAME in names:
                committed = await self.container.read_file(INDEX_NAME)
                await self.container.write_file(BACKUP_NAME, committed, create=True)
                await self.container.delete_file(INDEX_NAME)

            # 3. Commit, then drop the temp copy
            await self.container.write_file(INDEX_NAME, payload, create=True)
            await self.container.delete_file(TEMP_NAME)
        except (AuthorizationError, PersistenceError):
            raise
        except OSError as e:
            raise PersistenceError(f"Index write failed: {e}") from e

        self.stats["index_flushes"] += 1
        self.stats["bytes_written"] += len(payload)
        logger.debug(f"Index committed ({len(payload)} bytes)")

    async def load_index(self) -> Optional[Tuple[Index, str]]:
        """
        Load the newest complete index snapshot.

        Returns the index and the file it came from, or None when no
        parseable snapshot exists.
        """
        async def read() -> Optional[Tuple[Index, str]]:
            names = {entry.name for entry in await self.container.list_entries()}
            for name in (INDEX_NAME, BACKUP_NAME, TEMP_NAME):
                if name not in names:
                    continue
                try:
                    raw = await self.container.read_file(name)
                    index = Index.from_dict(json.loads(raw.decode("utf-8")))
                except (OSError, ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Ignoring unreadable index snapshot {name}: {e}")
                    continue
                if name != INDEX_NAME:
                    logger.warning(f"Committed index missing or damaged, recovered from {name}")
                return index, name
            return None

        return await self.gate.call(read)

    async def list_media(self) -> List[EntryInfo]:
        """Every sample media file currently in the container."""
        entries = await self.gate.call(self.container.list_entries)
        return [entry for entry in entries if is_media_name(entry.name)]

    async def read_media(self, media_ref: str) -> bytes:
        return await self.gate.call(lambda: self.container.read_file(media_ref))
