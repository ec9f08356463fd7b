"""Side storage for interactive-control payloads.

Control values on the chat platform are capped at 2000 bytes, so full
question text and option labels live here keyed by message identity. Every
access pushes the expiry forward; a miss means the caller must treat the
interaction as expired.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from threadpilot.stores.base import (
    JsonTableStore,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

log = logging.getLogger("stores")

DEFAULT_PAYLOAD_TTL_S = 24 * 3600


def question_key(message_id: str) -> str:
    return f"q:{message_id}"


def interrupt_key(thread_id: str, user_message_ts: str) -> str:
    return f"interrupt:{thread_id}:{user_message_ts}"


@dataclass
class _Payload:
    data: dict
    expires_at: datetime


class PayloadStore(JsonTableStore[_Payload]):
    name = "action-payload"

    def __init__(self, path, *, ttl_s: float = DEFAULT_PAYLOAD_TTL_S):
        self.ttl = timedelta(seconds=ttl_s)
        super().__init__(path)

    def _decode_entry(self, entry: dict) -> tuple[str, _Payload]:
        data = entry["data"]
        if not isinstance(data, dict):
            raise TypeError("payload data must be an object")
        return str(entry["key"]), _Payload(
            data=data, expires_at=parse_timestamp(entry["expires_at"])
        )

    def _encode_entry(self, key: str, value: _Payload) -> dict:
        return {
            "key": key,
            "data": value.data,
            "expires_at": format_timestamp(value.expires_at),
        }

    def set(self, key: str, data: dict, *, now: datetime | None = None) -> None:
        now = now or utcnow()
        self._entries[key] = _Payload(data=dict(data), expires_at=now + self.ttl)
        self.save()

    def get(
        self, key: str, *, remove: bool = False, now: datetime | None = None
    ) -> dict | None:
        now = now or utcnow()
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= now:
            del self._entries[key]
            self.save()
            return None
        if remove:
            del self._entries[key]
            self.save()
        else:
            # Refresh in memory only; the next write persists the new expiry.
            entry.expires_at = now + self.ttl
        return dict(entry.data)

    def remove(self, key: str) -> bool:
        if self._entries.pop(key, None) is None:
            return False
        self.save()
        return True

    def run_sweep(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        expired = [k for k, v in self._entries.items() if v.expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            log.info("Evicted %d expired action payload(s)", len(expired))
            self.save()
        return len(expired)
