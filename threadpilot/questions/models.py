"""Question data model and the compact control-value codecs."""

from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from threadpilot.chat.ports import MAX_CONTROL_VALUE_BYTES
from threadpilot.errors import InvalidAnswer

if TYPE_CHECKING:
    from threadpilot.runners.ports import Runner

_RECOMMENDED_RE = re.compile(r"recommended", re.IGNORECASE)


@dataclass(frozen=True)
class QuestionOption:
    label: str
    description: str | None = None


@dataclass(frozen=True)
class Question:
    text: str
    header: str | None = None
    options: tuple[QuestionOption, ...] = ()
    multi_select: bool = False

    @classmethod
    def from_tool_input(cls, raw: object) -> "Question | None":
        if not isinstance(raw, dict):
            return None
        text = str(raw.get("question") or "").strip()
        if not text:
            return None
        options: list[QuestionOption] = []
        for opt in raw.get("options") or []:
            if isinstance(opt, dict):
                label = str(opt.get("label") or "").strip()
                desc = opt.get("description")
            else:
                label, desc = str(opt).strip(), None
            if label:
                options.append(
                    QuestionOption(label=label, description=str(desc) if desc else None)
                )
        header = raw.get("header")
        return cls(
            text=text,
            header=str(header).strip() or None if header else None,
            options=tuple(options),
            multi_select=bool(raw.get("multiSelect", False)),
        )


def parse_questions(tool_input: dict) -> list[Question]:
    """Extract the questions of an AskUserQuestion tool call."""
    raw = tool_input.get("questions") if isinstance(tool_input, dict) else None
    if not isinstance(raw, list):
        return []
    out: list[Question] = []
    for item in raw:
        q = Question.from_tool_input(item)
        if q is not None:
            out.append(q)
    return out


def pick_autopilot_answer(question: Question) -> str:
    """Option whose label mentions "recommended", else the first one."""
    for opt in question.options:
        if _RECOMMENDED_RE.search(opt.label):
            return opt.label
    if question.options:
        return question.options[0].label
    return "Proceed with your best judgement."


class QuestionState(str, Enum):
    PENDING = "pending"
    PARTIALLY_ANSWERED = "partially_answered"
    ANSWERED = "answered"
    RESOLVED = "resolved"
    EXPIRED = "expired"


@dataclass
class QuestionItem:
    index: int
    question: Question
    message_id: str
    message_ts: str | None = None
    state: QuestionState = QuestionState.PENDING
    selected: set[int] = field(default_factory=set)
    answer: str | None = None


@dataclass
class QuestionSet:
    """All questions of one AskUserQuestion call; answered as a unit."""

    set_id: str
    thread_id: str
    channel_id: str
    project_name: str
    tool_use_id: str | None
    runner: "Runner"
    items: list[QuestionItem] = field(default_factory=list)
    state: QuestionState = QuestionState.PENDING

    @property
    def is_closed(self) -> bool:
        return self.state in (QuestionState.RESOLVED, QuestionState.EXPIRED)

    def all_answered(self) -> bool:
        return bool(self.items) and all(
            i.state == QuestionState.ANSWERED for i in self.items
        )

    def refresh_state(self) -> None:
        if self.is_closed:
            return
        if self.all_answered():
            self.state = QuestionState.ANSWERED
        elif any(
            i.state in (QuestionState.PARTIALLY_ANSWERED, QuestionState.ANSWERED)
            for i in self.items
        ):
            self.state = QuestionState.PARTIALLY_ANSWERED
        else:
            self.state = QuestionState.PENDING

    def compose_answer(self) -> str:
        if len(self.items) == 1:
            return self.items[0].answer or ""
        lines = []
        for item in self.items:
            label = item.question.header or item.question.text[:50]
            lines.append(f"[{label}]: {item.answer or ''}")
        return "\n".join(lines)


# -- control values ---------------------------------------------------------


def _encode_json(obj: dict) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json(raw: str) -> dict:
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise InvalidAnswer("Malformed control value") from e
    if not isinstance(obj, dict):
        raise InvalidAnswer("Malformed control value")
    return obj


@dataclass(frozen=True)
class ControlValue:
    """Button/toggle value: short fields only, full text lives in the payload store."""

    message_id: str
    question_index: int
    option_index: int | None = None
    label: str | None = None
    multi_select: bool = False
    project_name: str | None = None

    def encode(self, max_bytes: int = MAX_CONTROL_VALUE_BYTES) -> str:
        obj = {k: v for k, v in asdict(self).items() if v is not None}
        raw = _encode_json(obj)
        label = self.label or ""
        while len(raw.encode("utf-8")) > max_bytes and label:
            overflow = len(raw.encode("utf-8")) - max_bytes
            label = label[: max(0, len(label) - max(overflow, 1))]
            obj["label"] = label
            raw = _encode_json(obj)
        if len(raw.encode("utf-8")) > max_bytes:
            raise ValueError(f"Control value exceeds {max_bytes} bytes")
        return raw

    @classmethod
    def decode(cls, raw: str) -> "ControlValue":
        obj = _decode_json(raw)
        try:
            option_index = obj.get("option_index")
            return cls(
                message_id=str(obj["message_id"]),
                question_index=int(obj.get("question_index", 0)),
                option_index=int(option_index) if option_index is not None else None,
                label=obj.get("label"),
                multi_select=bool(obj.get("multi_select", False)),
                project_name=obj.get("project_name"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidAnswer("Malformed control value") from e


@dataclass(frozen=True)
class InterruptValue:
    thread_id: str
    message_ts: str

    def encode(self) -> str:
        raw = _encode_json(asdict(self))
        if len(raw.encode("utf-8")) > MAX_CONTROL_VALUE_BYTES:
            raise ValueError("Interrupt value exceeds control value limit")
        return raw

    @classmethod
    def decode(cls, raw: str) -> "InterruptValue":
        obj = _decode_json(raw)
        try:
            return cls(thread_id=str(obj["thread_id"]), message_ts=str(obj["message_ts"]))
        except KeyError as e:
            raise InvalidAnswer("Malformed control value") from e


@dataclass(frozen=True)
class ModalMetadata:
    """Recorded on the free-text modal so the submission can find its session."""

    request_id: str  # "<project_name>:<message_id>"
    question_index: int
    channel_id: str
    message_ts: str | None
    thread_id: str

    @property
    def message_id(self) -> str:
        return self.request_id.rpartition(":")[2]

    def encode(self) -> str:
        return _encode_json(asdict(self))

    @classmethod
    def decode(cls, raw: str) -> "ModalMetadata":
        obj = _decode_json(raw)
        try:
            return cls(
                request_id=str(obj["request_id"]),
                question_index=int(obj["question_index"]),
                channel_id=str(obj["channel_id"]),
                message_ts=obj.get("message_ts"),
                thread_id=str(obj["thread_id"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidAnswer("Malformed modal metadata") from e
