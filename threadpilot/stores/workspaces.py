"""Thread -> workspace mapping with age-based eviction."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Collection

from threadpilot.stores.base import (
    JsonTableStore,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

log = logging.getLogger("stores")

DEFAULT_WORKSPACE_TTL_S = 24 * 3600


@dataclass(frozen=True)
class Workspace:
    directory: str
    project_name: str
    channel_id: str | None = None
    autopilot: bool = False
    created_at: datetime = field(default_factory=utcnow)
    # Assistant-reported session id, used with --resume.
    session_id: str | None = None


class WorkspaceStore(JsonTableStore[Workspace]):
    name = "workspace"

    def __init__(self, path, *, ttl_s: float = DEFAULT_WORKSPACE_TTL_S):
        self.ttl = timedelta(seconds=ttl_s)
        super().__init__(path)

    def _decode_entry(self, entry: dict) -> tuple[str, Workspace]:
        raw_created = entry.get("created_at")
        created_at = parse_timestamp(raw_created) if raw_created else utcnow()
        channel_id = entry.get("channel_id")
        session_id = entry.get("session_id")
        return str(entry["thread_id"]), Workspace(
            directory=str(entry["directory"]),
            project_name=str(entry["project_name"]),
            channel_id=str(channel_id) if channel_id else None,
            autopilot=bool(entry.get("autopilot", False)),
            created_at=created_at,
            session_id=str(session_id) if session_id else None,
        )

    def _encode_entry(self, key: str, value: Workspace) -> dict:
        entry: dict[str, object] = {
            "thread_id": key,
            "directory": value.directory,
            "project_name": value.project_name,
            "autopilot": value.autopilot,
            "created_at": format_timestamp(value.created_at),
        }
        if value.channel_id:
            entry["channel_id"] = value.channel_id
        if value.session_id:
            entry["session_id"] = value.session_id
        return entry

    def get(self, thread_id: str) -> Workspace | None:
        return self._entries.get(thread_id)

    def add(self, thread_id: str, workspace: Workspace) -> None:
        self._entries[thread_id] = workspace
        self.save()

    def update(self, thread_id: str, **changes) -> Workspace | None:
        """Replace fields of an existing mapping; None if the thread is unknown."""
        current = self._entries.get(thread_id)
        if current is None:
            return None
        updated = replace(current, **changes)
        if updated != current:
            self._entries[thread_id] = updated
            self.save()
        return updated

    def remove(self, thread_id: str) -> bool:
        if self._entries.pop(thread_id, None) is None:
            return False
        self.save()
        return True

    def run_sweep(
        self, now: datetime | None = None, *, keep: Collection[str] = ()
    ) -> list[str]:
        """Evict mappings older than the TTL. Returns the evicted thread ids.

        Threads in `keep` survive even when expired.
        """
        now = now or utcnow()
        evicted = [
            thread_id
            for thread_id, ws in self._entries.items()
            if now - ws.created_at > self.ttl and thread_id not in keep
        ]
        for thread_id in evicted:
            del self._entries[thread_id]
        if evicted:
            log.info("Evicted %d expired workspace mapping(s)", len(evicted))
            self.save()
        return evicted
