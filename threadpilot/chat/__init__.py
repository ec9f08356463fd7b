"""Chat platform ports and adapters."""

from threadpilot.chat.ports import (
    MAX_CONTROL_VALUE_BYTES,
    ActionEvent,
    Button,
    ChatPort,
    InboundMessage,
    ViewSubmission,
)

__all__ = [
    "MAX_CONTROL_VALUE_BYTES",
    "ActionEvent",
    "Button",
    "ChatPort",
    "InboundMessage",
    "ViewSubmission",
]
