"""XMPP adapter implementing `ChatPort` on slixmpp.

Mapping:
- channel: bare JID of the peer
- thread: the message `<thread/>` element; a top-level message opens a
  thread whose id is its own stanza id
- buttons: meta element of type "controls"
- button press: inbound meta of type "action"
- message update: XEP-0308 last message correction
- modal: meta of type "modal", answered by meta of type "view-submission"
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import TYPE_CHECKING, Sequence

from slixmpp.clientxmpp import ClientXMPP

from threadpilot.chat.meta import build_message_meta, extract_meta
from threadpilot.chat.ports import (
    ActionEvent,
    Button,
    InboundMessage,
    ViewSubmission,
)

if TYPE_CHECKING:
    from threadpilot.orchestrator import Orchestrator


def _utf8_len(s: str) -> int:
    return len(s.encode("utf-8"))


def _cut_line(line: str, max_bytes: int) -> list[str]:
    """Cut one line into pieces of at most `max_bytes` on character boundaries."""
    data = line.encode("utf-8")
    pieces = []
    while len(data) > max_bytes:
        cut = max_bytes
        # Back off UTF-8 continuation bytes.
        while cut > 0 and data[cut] & 0xC0 == 0x80:
            cut -= 1
        pieces.append(data[:cut].decode("utf-8"))
        data = data[cut:]
    pieces.append(data.decode("utf-8"))
    return pieces


def split_message(text: str, max_bytes: int) -> list[str]:
    """Split a body into stanzas of at most `max_bytes` UTF-8 bytes.

    Whole paragraphs are packed first, then the lines of an oversized
    paragraph; a line that alone exceeds the budget is cut.
    """
    chunks: list[str] = []
    current = ""

    def flush() -> None:
        nonlocal current
        if current:
            chunks.append(current)
        current = ""

    def pack(piece: str, sep: str) -> None:
        nonlocal current
        joined = f"{current}{sep}{piece}" if current else piece
        if _utf8_len(joined) > max_bytes:
            flush()
            joined = piece
        current = joined

    for para in text.split("\n\n"):
        if _utf8_len(para) <= max_bytes:
            pack(para, "\n\n")
            continue
        flush()
        for line in para.split("\n"):
            *full, rest = _cut_line(line, max_bytes)
            if full:
                flush()
                chunks.extend(full)
                current = rest
            else:
                pack(rest, "\n")
    flush()
    return chunks


def _buttons_payload(buttons: Sequence[Button]) -> dict:
    return {
        "buttons": [
            {
                "action_id": b.action_id,
                "text": b.text,
                "value": b.value,
                **({"style": b.style} if b.style else {}),
            }
            for b in buttons
        ]
    }


class XMPPChatBot(ClientXMPP):
    """Single XMPP account serving every channel and thread."""

    def __init__(
        self,
        jid: str,
        password: str,
        *,
        allowed_jids: Sequence[str] = (),
    ):
        super().__init__(jid, password)
        self.log = logging.getLogger("xmpp")
        self.allowed_jids = {j.split("/", 1)[0] for j in allowed_jids}
        self.orchestrator: "Orchestrator | None" = None
        self.shutting_down = False
        self._connected_event = asyncio.Event()
        self._reconnect_task: asyncio.Task | None = None
        self._reconnect_attempt = 0

        self.register_plugin("xep_0199")  # Ping
        self.register_plugin("xep_0085")  # Chat State Notifications
        self.register_plugin("xep_0308")  # Last Message Correction

        self.add_event_handler("session_start", self.on_start)
        self.add_event_handler("message", self.on_message)
        self.add_event_handler("disconnected", self.on_disconnected)

    def attach(self, orchestrator: "Orchestrator") -> None:
        self.orchestrator = orchestrator

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    def connect_to_server(self, server: str, port: int = 5222, *, plaintext: bool = False):
        if plaintext:
            self["feature_mechanisms"].unencrypted_plain = True  # type: ignore[attr-defined]
            self.enable_starttls = False
            self.enable_direct_tls = False
            self.enable_plaintext = True
        self.connect((server, port))  # type: ignore[arg-type]

    def set_connected(self, connected: bool) -> None:
        if connected:
            self._connected_event.set()
        else:
            self._connected_event.clear()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def on_start(self, event):
        self.send_presence()
        try:
            await asyncio.wait_for(self.get_roster(), timeout=15)
        except asyncio.TimeoutError:
            self.log.error("Startup timed out fetching roster")
            self.disconnect()
            return
        self.log.info("Connected as %s", self.boundjid.bare)
        self.set_connected(True)
        self._reconnect_attempt = 0

    def on_disconnected(self, event):
        self.set_connected(False)
        if self.shutting_down:
            self.log.info("Disconnected during shutdown; not reconnecting")
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.ensure_future(self._reconnect())

    async def _reconnect(self):
        _MAX_ATTEMPTS = 10
        _BASE_DELAY = 5
        _MAX_DELAY = 60
        while self._reconnect_attempt < _MAX_ATTEMPTS:
            if self.shutting_down:
                return
            self._reconnect_attempt += 1
            delay = min(_BASE_DELAY * (2 ** (self._reconnect_attempt - 1)), _MAX_DELAY)
            self.log.warning(
                "Reconnecting (attempt %d/%d) in %ds...",
                self._reconnect_attempt, _MAX_ATTEMPTS, delay,
            )
            await asyncio.sleep(delay)
            if self.shutting_down:
                return
            try:
                self.connect()
            except Exception:
                self.log.warning("Reconnect connect() failed", exc_info=True)
                continue
            return
        self.log.error("Giving up reconnect after %d attempts", _MAX_ATTEMPTS)

    async def close(self) -> None:
        self.shutting_down = True
        self.disconnect()

    # -------------------------------------------------------------------------
    # ChatPort
    # -------------------------------------------------------------------------

    @staticmethod
    def _max_bytes() -> int:
        try:
            max_len = int(os.getenv("THREADPILOT_XMPP_MESSAGE_MAX_LEN", "3500"))
        except ValueError:
            max_len = 3500
        return max(500, min(max_len, 100000))

    def _make(self, to: str, body: str, *, thread_id: str | None, msg_id: str):
        msg = self.make_message(mto=to, mbody=body, mtype="chat")
        msg["id"] = msg_id
        if thread_id:
            msg["thread"] = thread_id
        return msg

    async def post_message(
        self,
        channel_id: str,
        text: str,
        *,
        thread_id: str | None = None,
        buttons: Sequence[Button] = (),
    ) -> str:
        text = text.rstrip("\r\n")
        parts = split_message(text, self._max_bytes()) or [""]
        root: str | None = None
        last_id = ""
        for i, part in enumerate(parts, 1):
            msg_id = self.new_id()
            if root is None:
                root = msg_id
            # A top-level message starts a thread named after itself.
            msg = self._make(channel_id, part, thread_id=thread_id or root, msg_id=msg_id)
            if i == len(parts) and buttons:
                msg.xml.append(
                    build_message_meta(
                        "controls",
                        meta_attrs={"message_id": msg_id},
                        meta_payload=_buttons_payload(buttons),
                    )
                )
            msg.send()
            last_id = msg_id
        if thread_id is None and root is not None:
            return root
        return last_id

    async def update_message(
        self,
        channel_id: str,
        message_ts: str,
        text: str,
        *,
        thread_id: str | None = None,
        buttons: Sequence[Button] = (),
    ) -> None:
        msg = self._make(channel_id, text.rstrip("\r\n"), thread_id=thread_id, msg_id=self.new_id())
        msg["replace"]["id"] = message_ts
        msg.xml.append(
            build_message_meta(
                "controls",
                meta_attrs={"message_id": message_ts},
                meta_payload=_buttons_payload(buttons),
            )
        )
        msg.send()

    async def post_ephemeral(
        self,
        channel_id: str,
        user_id: str,
        text: str,
        *,
        thread_id: str | None = None,
    ) -> None:
        msg = self._make(user_id, text.rstrip("\r\n"), thread_id=thread_id, msg_id=self.new_id())
        msg["chat_state"] = "active"
        msg.send()

    async def open_modal(
        self,
        trigger_id: str,
        *,
        callback_id: str,
        title: str,
        prompt: str,
        metadata: str,
    ) -> None:
        msg = self._make(trigger_id, f"✍️ {title}\n{prompt}", thread_id=None, msg_id=self.new_id())
        msg.xml.append(
            build_message_meta(
                "modal",
                meta_attrs={"callback_id": callback_id},
                meta_payload={"title": title, "prompt": prompt, "metadata": metadata},
            )
        )
        msg.send()

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def on_message(self, msg):
        if self.orchestrator is None:
            return
        await self.orchestrator.guard(
            self._handle_message(msg),
            channel_id=str(msg["from"].bare),
            context="xmpp.on_message",
        )

    async def _handle_message(self, msg):
        if msg["type"] not in ("chat", "normal") or self.shutting_down:
            return
        assert self.orchestrator is not None

        sender = str(msg["from"].bare)
        if sender == self.boundjid.bare:
            return
        if self.allowed_jids and sender not in self.allowed_jids:
            self.log.info("Ignoring message from unauthorized %s", sender)
            return

        thread_id = str(msg["thread"] or "") or None
        meta_type, attrs, payload = extract_meta(msg)

        if meta_type == "action":
            value = payload.get("value") if isinstance(payload, dict) else None
            await self.orchestrator.handle_action(
                ActionEvent(
                    action_id=attrs.get("action_id", ""),
                    value=str(value or ""),
                    user_id=sender,
                    channel_id=sender,
                    message_ts=attrs.get("message_id", ""),
                    thread_id=thread_id,
                    trigger_id=sender,
                )
            )
            return

        if meta_type == "view-submission":
            data = payload if isinstance(payload, dict) else {}
            values = data.get("values") if isinstance(data.get("values"), dict) else {}
            await self.orchestrator.handle_view_submission(
                ViewSubmission(
                    callback_id=attrs.get("callback_id", ""),
                    metadata=str(data.get("metadata") or ""),
                    user_id=sender,
                    values={str(k): str(v) for k, v in values.items()},
                ),
                channel_id=sender,
            )
            return

        body = (msg["body"] or "").strip()
        if not body:
            return
        if body.startswith("@"):  # convenience alias for slash commands
            body = "/" + body[1:]
        self.log.info("Message%s: %s...", f"[{thread_id}]" if thread_id else "", body[:50])
        await self.orchestrator.handle_message(
            InboundMessage(
                channel_id=sender,
                user_id=sender,
                text=body,
                message_ts=str(msg["id"] or self.new_id()),
                thread_id=thread_id,
            )
        )
