"""Render questions into message text and interactive buttons.

Button values carry only `ControlValue` short fields; everything shown to the
user comes from the action payload stored under `q:<message_id>`.
"""

from __future__ import annotations

from threadpilot.chat.ports import Button
from threadpilot.questions.models import ControlValue, Question, QuestionItem

BUTTON_TEXT_LIMIT = 75
MAX_OPTION_BUTTONS = 24

SELECT_OPTION = "select_option"
TOGGLE_OPTION = "toggle_option"
SUBMIT_MULTI_SELECT = "submit_multi_select"
TEXT_INPUT = "text_input"


def truncate_button_text(text: str, limit: int = BUTTON_TEXT_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def build_payload(item: QuestionItem, *, project_name: str, thread_id: str) -> dict:
    """Side-stored data for one rendered question."""
    q: Question = item.question
    return {
        "question_text": q.text,
        "header": q.header,
        "option_labels": [o.label for o in q.options],
        "option_descriptions": [o.description for o in q.options],
        "multi_select": q.multi_select,
        "question_index": item.index,
        "project_name": project_name,
        "thread_id": thread_id,
    }


def _question_heading(payload: dict, *, done: bool) -> list[str]:
    lines = ["✅ Question answered" if done else "❓ Claude has a question"]
    if payload.get("header"):
        lines.append(f"*{payload['header']}*")
    lines.append(str(payload.get("question_text") or ""))
    return lines


def render_question(
    payload: dict, *, message_id: str, selected: set[int] | frozenset[int] = frozenset()
) -> tuple[str, list[Button]]:
    labels: list[str] = list(payload.get("option_labels") or [])
    descriptions: list[str | None] = list(payload.get("option_descriptions") or [])
    q_index = int(payload.get("question_index", 0))
    project = payload.get("project_name")
    multi = bool(payload.get("multi_select"))

    lines = _question_heading(payload, done=False)
    shown = labels[:MAX_OPTION_BUTTONS]
    if shown:
        lines.append("")
    for i, label in enumerate(shown):
        mark = ("☑ " if i in selected else "☐ ") if multi else ""
        desc = descriptions[i] if i < len(descriptions) else None
        lines.append(f"{i + 1}. {mark}{label}" + (f": {desc}" if desc else ""))
    if len(shown) < len(labels):
        lines.append(f"(showing {len(shown)} of {len(labels)} options)")

    buttons: list[Button] = []
    for i, label in enumerate(shown):
        value = ControlValue(
            message_id=message_id,
            question_index=q_index,
            option_index=i,
            label=label,
            multi_select=multi,
            project_name=project,
        ).encode()
        if multi:
            is_selected = i in selected
            buttons.append(
                Button(
                    action_id=f"{TOGGLE_OPTION}_{q_index}_{i}",
                    text=truncate_button_text(f"✅ {label}" if is_selected else label),
                    value=value,
                    style="primary" if is_selected else None,
                )
            )
        else:
            buttons.append(
                Button(
                    action_id=f"{SELECT_OPTION}_{q_index}_{i}",
                    text=truncate_button_text(label),
                    value=value,
                )
            )

    short = ControlValue(
        message_id=message_id,
        question_index=q_index,
        multi_select=multi,
        project_name=project,
    ).encode()
    if multi:
        buttons.append(
            Button(
                action_id=f"{SUBMIT_MULTI_SELECT}_{q_index}",
                text="Submit selection",
                value=short,
                style="primary",
            )
        )
        if selected:
            chosen = ", ".join(labels[i] for i in sorted(selected) if i < len(labels))
            lines.append(f"Selected: {chosen}")
        else:
            lines.append("Select one or more options, then press Submit.")
    buttons.append(
        Button(action_id=f"{TEXT_INPUT}_{q_index}", text="Type an answer…", value=short)
    )
    return "\n".join(lines), buttons


def render_answered(payload: dict, answer: str, *, user_id: str | None = None) -> str:
    lines = _question_heading(payload, done=True)
    lines.append("")
    lines.append(f"✅ *{answer}*" + (f" ({user_id})" if user_id else ""))
    return "\n".join(lines)


def render_expired(payload: dict | None) -> str:
    lines = ["⌛ This question has expired"]
    if payload and payload.get("question_text"):
        lines.append(str(payload["question_text"]))
    lines.append("Send a new message in this thread to ask again.")
    return "\n".join(lines)
