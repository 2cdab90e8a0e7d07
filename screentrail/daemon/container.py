"""Storage containers: the external, permission-revocable place samples live."""

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Protocol

import aiofiles
import aiofiles.os
from loguru import logger

from .errors import AuthorizationError, PersistenceError


class PermissionMode(str, Enum):
    READ = "read"
    READWRITE = "readwrite"


class PermissionState(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"


@dataclass
class EntryInfo:
    """A file found in the container."""
    name: str
    modified: float
    size: int


class StorageContainer(Protocol):
    """
    What the pipeline needs from an external store.

    Only whole-file operations exist; there is no atomic rename. Every
    operation raises AuthorizationError when access has been revoked.
    """

    label: str

    async def list_entries(self) -> List[EntryInfo]: ...

    async def read_file(self, name: str) -> bytes: ...

    async def write_file(self, name: str, data: bytes, create: bool = True) -> None: ...

    async def delete_file(self, name: str) -> None: ...

    async def check_permission(self, mode: PermissionMode = PermissionMode.READWRITE) -> PermissionState: ...

    async def request_permission(self, mode: PermissionMode = PermissionMode.READWRITE) -> PermissionState: ...


class LocalDirectoryContainer:
    """
    A directory on a local, removable or network-mounted filesystem.

    Losing the mount or the directory's permissions behaves like a revoked
    grant: operations raise AuthorizationError until access comes back.
    """

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()
        self.label = str(self.root)

    def _path(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise PersistenceError(f"Invalid entry name: {name!r}")
        return self.root / name

    def _accessible(self, mode: PermissionMode) -> bool:
        if not self.root.is_dir():
            return False
        flags = os.R_OK | os.X_OK
        if mode == PermissionMode.READWRITE:
            flags |= os.W_OK
        return os.access(self.root, flags)

    def _ensure_access(self, mode: PermissionMode) -> None:
        if not self._accessible(mode):
            raise AuthorizationError(f"No {mode.value} access to {self.root}")

    async def list_entries(self) -> List[EntryInfo]:
        self._ensure_access(PermissionMode.READ)
        entries = []
        try:
            names = await aiofiles.os.listdir(self.root)
            for name in names:
                path = self.root / name
                stat = await aiofiles.os.stat(path)
                if not path.is_file():
                    continue
                entries.append(EntryInfo(name=name, modified=stat.st_mtime, size=stat.st_size))
        except PermissionError as e:
            raise AuthorizationError(str(e)) from e
        return entries

    async def read_file(self, name: str) -> bytes:
        self._ensure_access(PermissionMode.READ)
        try:
            async with aiofiles.open(self._path(name), 'rb') as f:
                return await f.read()
        except PermissionError as e:
            raise AuthorizationError(str(e)) from e

    async def write_file(self, name: str, data: bytes, create: bool = True) -> None:
        self._ensure_access(PermissionMode.READWRITE)
        path = self._path(name)
        if not create and not path.exists():
            raise FileNotFoundError(path)
        try:
            async with aiofiles.open(path, 'wb') as f:
                await f.write(data)
                await f.flush()
                os.fsync(f.fileno())
        except PermissionError as e:
            raise AuthorizationError(str(e)) from e
        except OSError as e:
            raise PersistenceError(f"Failed to write {name}: {e}") from e

    async def delete_file(self, name: str) -> None:
        self._ensure_access(PermissionMode.READWRITE)
        try:
            await aiofiles.os.remove(self._path(name))
        except PermissionError as e:
            raise AuthorizationError(str(e)) from e

    async def check_permission(self, mode: PermissionMode = PermissionMode.READWRITE) -> PermissionState:
        return PermissionState.GRANTED if self._accessible(mode) else PermissionState.DENIED

    async def request_permission(self, mode: PermissionMode = PermissionMode.READWRITE) -> PermissionState:
        """
        Interactive re-grant. For a local directory this means creating the
        folder again if its parent is reachable.
        """
        if not self.root.exists() and self.root.parent.is_dir():
            try:
                self.root.mkdir(parents=False, exist_ok=True)
                logger.info(f"Recreated storage folder: {self.root}")
            except OSError as e:
                logger.warning(f"Could not recreate storage folder {self.root}: {e}")
        return await self.check_permission(mode)
