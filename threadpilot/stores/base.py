"""JSON file-backed key/value tables.

Each table is a single file of shape ``{"version": 1, "entries": [...]}``.
Writes go to a temp file in the same directory which is then renamed over the
target, so readers never observe a half-written table.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Generic, Iterator, TypeVar

log = logging.getLogger("stores")

T = TypeVar("T")

STORE_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: object) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not isinstance(value, str):
        raise TypeError(f"timestamp must be a string, got {type(value).__name__}")
    if value.endswith(("Z", "z")):
        # fromisoformat only accepts "Z" from Python 3.11.
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(dt: datetime) -> str:
    return dt.isoformat(timespec="seconds")


class JsonTableStore(Generic[T]):
    """In-memory table mirrored to a JSON file.

    Subclasses implement `_decode_entry` / `_encode_entry`. The in-memory
    table is authoritative: a failed write is logged and retried on the next
    mutation.
    """

    name = "table"

    def __init__(self, path: Path):
        self.path = Path(path)
        self._entries: dict[str, T] = {}
        self._load()

    # -- subclass hooks ---------------------------------------------------

    def _decode_entry(self, entry: dict) -> tuple[str, T]:
        raise NotImplementedError

    def _encode_entry(self, key: str, value: T) -> dict:
        raise NotImplementedError

    # -- persistence ------------------------------------------------------

    def _load(self) -> None:
        if not self.path.exists():
            return

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.error("Unreadable %s store %s; starting empty: %s", self.name, self.path, e)
            return

        if not isinstance(raw, dict) or not isinstance(raw.get("entries"), list):
            log.error("Invalid %s store %s; starting empty", self.name, self.path)
            return

        version = raw.get("version")
        if version != STORE_VERSION:
            log.warning(
                "%s store %s has version %r (expected %d); loading anyway",
                self.name,
                self.path,
                version,
                STORE_VERSION,
            )

        for entry in raw["entries"]:
            if not isinstance(entry, dict):
                log.warning("Skipping non-object entry in %s store", self.name)
                continue
            try:
                key, value = self._decode_entry(entry)
            except (KeyError, TypeError, ValueError) as e:
                log.warning("Skipping malformed entry in %s store: %s", self.name, e)
                continue
            self._entries[key] = value

        log.info("Loaded %d %s entries from %s", len(self._entries), self.name, self.path)

    def save(self) -> bool:
        """Persist the table. Returns False (after logging) on failure."""
        payload = {
            "version": STORE_VERSION,
            "entries": [self._encode_entry(k, v) for k, v in self._entries.items()],
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, self.path)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp)
                raise
        except OSError:
            log.exception("Failed to write %s store %s", self.name, self.path)
            return False
        return True

    # -- mapping helpers --------------------------------------------------

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def items(self) -> list[tuple[str, T]]:
        return list(self._entries.items())
