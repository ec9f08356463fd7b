"""Channel -> working directory mapping."""

from __future__ import annotations

from dataclasses import dataclass

from threadpilot.stores.base import JsonTableStore


@dataclass(frozen=True)
class ChannelMapping:
    directory: str
    project_name: str


class ChannelStore(JsonTableStore[ChannelMapping]):
    name = "channel"

    def _decode_entry(self, entry: dict) -> tuple[str, ChannelMapping]:
        return str(entry["channel_id"]), ChannelMapping(
            directory=str(entry["directory"]),
            project_name=str(entry["project_name"]),
        )

    def _encode_entry(self, key: str, value: ChannelMapping) -> dict:
        return {
            "channel_id": key,
            "directory": value.directory,
            "project_name": value.project_name,
        }

    def get(self, channel_id: str) -> ChannelMapping | None:
        return self._entries.get(channel_id)

    def set(self, channel_id: str, mapping: ChannelMapping) -> None:
        self._entries[channel_id] = mapping
        self.save()

    def all(self) -> dict[str, ChannelMapping]:
        return dict(self._entries)

    def remove(self, channel_id: str) -> bool:
        if self._entries.pop(channel_id, None) is None:
            return False
        self.save()
        return True
