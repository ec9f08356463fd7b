"""Chat platform boundary.

Inbound events are plain frozen dataclasses; outbound calls go through
`ChatPort`. The orchestrator and question protocol depend only on these types,
never on the XMPP adapter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, Sequence

# Interactive control values are opaque strings capped at this size.
MAX_CONTROL_VALUE_BYTES = 2000


@dataclass(frozen=True)
class Button:
    action_id: str
    text: str
    value: str
    style: str | None = None  # primary|danger


@dataclass(frozen=True)
class InboundMessage:
    channel_id: str
    user_id: str
    text: str
    message_ts: str
    thread_id: str | None = None


@dataclass(frozen=True)
class ActionEvent:
    action_id: str
    value: str
    user_id: str
    channel_id: str
    message_ts: str
    thread_id: str | None = None
    trigger_id: str | None = None


@dataclass(frozen=True)
class ViewSubmission:
    callback_id: str
    metadata: str
    user_id: str
    values: dict[str, str] = field(default_factory=dict)


class ChatPort(Protocol):
    async def post_message(
        self,
        channel_id: str,
        text: str,
        *,
        thread_id: str | None = None,
        buttons: Sequence[Button] = (),
    ) -> str:
        """Post a message; returns its message ts."""
        ...

    async def update_message(
        self,
        channel_id: str,
        message_ts: str,
        text: str,
        *,
        thread_id: str | None = None,
        buttons: Sequence[Button] = (),
    ) -> None: ...

    async def post_ephemeral(
        self,
        channel_id: str,
        user_id: str,
        text: str,
        *,
        thread_id: str | None = None,
    ) -> None: ...

    async def open_modal(
        self,
        trigger_id: str,
        *,
        callback_id: str,
        title: str,
        prompt: str,
        metadata: str,
    ) -> None: ...
