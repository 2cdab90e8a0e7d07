"""Timestamps and the reversible sample filename encoding.

Sample timestamps are UTC ISO-8601 strings ending in ``Z``, e.g.
``2025-01-01T09:30:15.123Z``. Filenames replace the characters that are
unsafe on common filesystems (``:`` and ``.``) and nothing else:

    2025-01-01T09:30:15.123Z  ->  2025-01-01T09-30-15_123Z.png

The forward mapping is injective on valid timestamps, so
``filename_to_timestamp(timestamp_to_filename(ts)) == ts`` always holds. Any
file in the store that does not match the encoding is treated as foreign and
its timestamp is reconstructed from the modification time instead.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

TIMESTAMP_RE = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})T(?P<h>\d{2}):(?P<m>\d{2}):(?P<s>\d{2})"
    r"(?:\.(?P<frac>\d{1,6}))?Z$"
)

FILENAME_RE = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})T(?P<h>\d{2})-(?P<m>\d{2})-(?P<s>\d{2})"
    r"(?:_(?P<frac>\d{1,6}))?Z\.(?P<ext>png|jpg)$"
)

MEDIA_EXTENSIONS = ("png", "jpg")


def format_timestamp(dt: datetime) -> str:
    """Render a datetime as a canonical millisecond UTC timestamp."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def is_valid_timestamp(value: str) -> bool:
    match = TIMESTAMP_RE.match(value or "")
    if not match:
        return False
    try:
        parse_timestamp(value)
    except ValueError:
        return False
    return True


def parse_timestamp(value: str) -> datetime:
    """Parse a sample timestamp into an aware UTC datetime."""
    match = TIMESTAMP_RE.match(value or "")
    if not match:
        raise ValueError(f"Not a sample timestamp: {value!r}")
    frac = (match.group("frac") or "").ljust(6, "0")
    return datetime(
        *map(int, match.group("date").split("-")),
        int(match.group("h")),
        int(match.group("m")),
        int(match.group("s")),
        int(frac),
        tzinfo=timezone.utc,
    )


def timestamp_to_filename(timestamp: str, ext: str) -> str:
    """Encode a sample timestamp as a media filename."""
    if not TIMESTAMP_RE.match(timestamp or ""):
        raise ValueError(f"Not a sample timestamp: {timestamp!r}")
    ext = ext.lower().lstrip(".")
    if ext not in MEDIA_EXTENSIONS:
        raise ValueError(f"Unsupported media extension: {ext}")
    date, time_part = timestamp.split("T", 1)
    time_part = time_part.replace(":", "-").replace(".", "_")
    return f"{date}T{time_part}.{ext}"


def filename_to_timestamp(name: str) -> Optional[str]:
    """Decode a media filename back to its timestamp, or None if foreign."""
    match = FILENAME_RE.match(name)
    if not match:
        return None
    timestamp = f"{match.group('date')}T{match.group('h')}:{match.group('m')}:{match.group('s')}"
    if match.group("frac"):
        timestamp += f".{match.group('frac')}"
    timestamp += "Z"
    return timestamp if is_valid_timestamp(timestamp) else None


def is_media_name(name: str) -> bool:
    return name.rsplit(".", 1)[-1].lower() in MEDIA_EXTENSIONS


class MonotonicClock:
    """
    Issues strictly increasing sample timestamps.

    Two frames accepted within the same millisecond (or a wall clock that
    steps backwards) would otherwise collide on the primary key.
    """

    def __init__(self):
        self._last: Optional[datetime] = None

    def now(self) -> str:
        return self.issue(datetime.now(timezone.utc))

    def issue(self, dt: datetime) -> str:
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        dt = dt.replace(microsecond=(dt.microsecond // 1000) * 1000)
        if self._last is not None and dt <= self._last:
            dt = self._last + timedelta(milliseconds=1)
        self._last = dt
        return format_timestamp(dt)
