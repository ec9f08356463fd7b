"""Interactive question protocol.

Turns an AskUserQuestion tool call into chat messages with buttons, collects
answers (single-select, multi-select toggles + submit, free text via modal),
and writes one composed tool result back into the runner once every question
of the set is answered.

State per question set: pending -> partially_answered -> answered ->
resolved | expired. Every transition is applied before the next await, so two
rapid presses on the same question cannot both deliver an answer.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Awaitable, Callable

from threadpilot.chat.ports import (
    ActionEvent,
    Button,
    ChatPort,
    InboundMessage,
    ViewSubmission,
)
from threadpilot.errors import AlreadyAnswered, InvalidAnswer, QuestionExpired
from threadpilot.questions.blocks import (
    build_payload,
    render_answered,
    render_expired,
    render_question,
)
from threadpilot.questions.models import (
    ControlValue,
    InterruptValue,
    ModalMetadata,
    QuestionItem,
    QuestionSet,
    QuestionState,
    parse_questions,
    pick_autopilot_answer,
)
from threadpilot.runners.events import ToolUseBlock
from threadpilot.runners.ports import Runner
from threadpilot.sessions.manager import Session, SessionManager
from threadpilot.stores.payloads import PayloadStore, interrupt_key, question_key

log = logging.getLogger("questions")

TEXT_INPUT_CALLBACK = "text_input_modal"
TEXT_INPUT_FIELD = "answer_input"

INTERRUPT_YES = "interrupt_yes"
INTERRUPT_NO = "interrupt_no"

EXPIRED_NOTICE = "This question has expired. Send a new message in the thread to ask again."

ResumeCallback = Callable[[str, str], Awaitable[None]]


def new_message_id() -> str:
    return f"ask-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


class QuestionProtocol:
    def __init__(
        self,
        *,
        chat: ChatPort,
        payloads: PayloadStore,
        sessions: SessionManager,
        resume: ResumeCallback | None = None,
    ):
        self.chat = chat
        self.payloads = payloads
        self.sessions = sessions
        self.resume = resume
        self._sets: dict[str, QuestionSet] = {}
        self._items: dict[str, tuple[QuestionSet, QuestionItem]] = {}

    # -- rendering --------------------------------------------------------

    async def present(
        self, session: Session, runner: Runner, tool: ToolUseBlock
    ) -> QuestionSet | None:
        questions = parse_questions(tool.input)
        channel_id = session.channel_id or ""
        if not questions:
            log.warning("AskUserQuestion without usable questions in %s", session.thread_id)
            await runner.answer_tool(tool.id, "No valid questions were provided.")
            return None

        qset = QuestionSet(
            set_id=secrets.token_hex(6),
            thread_id=session.thread_id,
            channel_id=channel_id,
            project_name=session.project_name,
            tool_use_id=tool.id,
            runner=runner,
        )
        for i, q in enumerate(questions):
            qset.items.append(QuestionItem(index=i, question=q, message_id=new_message_id()))

        if session.autopilot:
            lines = []
            for item in qset.items:
                item.answer = pick_autopilot_answer(item.question)
                item.state = QuestionState.ANSWERED
                lines.append(f"• {item.question.text}\n  → {item.answer}")
            qset.refresh_state()
            await self.chat.post_message(
                channel_id,
                "🤖 Autopilot answered:\n" + "\n".join(lines),
                thread_id=session.thread_id,
            )
            await self._resolve(qset)
            return qset

        self._sets[qset.set_id] = qset
        for item in qset.items:
            payload = build_payload(
                item, project_name=session.project_name, thread_id=session.thread_id
            )
            self.payloads.set(question_key(item.message_id), payload)
            self._items[item.message_id] = (qset, item)

        for item in qset.items:
            payload = self.payloads.get(question_key(item.message_id)) or {}
            text, buttons = render_question(payload, message_id=item.message_id)
            item.message_ts = await self.chat.post_message(
                channel_id, text, thread_id=session.thread_id, buttons=buttons
            )
        log.info(
            "Presented %d question(s) in thread %s", len(qset.items), session.thread_id
        )
        return qset

    # -- lookup -----------------------------------------------------------

    def _expire(self, qset: QuestionSet) -> None:
        if qset.is_closed:
            return
        qset.state = QuestionState.EXPIRED
        for item in qset.items:
            if item.state != QuestionState.ANSWERED:
                item.state = QuestionState.EXPIRED
        log.info("Question set %s in thread %s expired", qset.set_id, qset.thread_id)

    def _lookup(self, message_id: str) -> tuple[QuestionSet, QuestionItem, dict]:
        entry = self._items.get(message_id)
        if entry is None:
            raise QuestionExpired(EXPIRED_NOTICE)
        qset, item = entry
        if qset.state == QuestionState.RESOLVED:
            raise AlreadyAnswered("This question was already answered.")
        if qset.state == QuestionState.EXPIRED:
            raise QuestionExpired(EXPIRED_NOTICE)

        payload = self.payloads.get(question_key(message_id))
        session = self.sessions.get(qset.thread_id)
        if (
            payload is None
            or not qset.runner.is_alive
            or session is None
            or session.runner is not qset.runner
        ):
            self._expire(qset)
            raise QuestionExpired(EXPIRED_NOTICE)

        if item.state == QuestionState.ANSWERED:
            raise AlreadyAnswered("This question was already answered.")
        return qset, item, payload

    def state_of(self, message_id: str) -> QuestionState | None:
        entry = self._items.get(message_id)
        return entry[1].state if entry else None

    # -- interactions -----------------------------------------------------

    async def select_option(self, action: ActionEvent) -> None:
        value = ControlValue.decode(action.value)
        qset, item, payload = self._lookup(value.message_id)
        labels = payload.get("option_labels") or []
        if value.option_index is None or not 0 <= value.option_index < len(labels):
            raise InvalidAnswer("Unknown option.")
        await self._answer_item(qset, item, labels[value.option_index], payload, action.user_id)

    async def toggle_option(self, action: ActionEvent) -> None:
        value = ControlValue.decode(action.value)
        qset, item, payload = self._lookup(value.message_id)
        labels = payload.get("option_labels") or []
        if not payload.get("multi_select"):
            raise InvalidAnswer("This question accepts a single option.")
        if value.option_index is None or not 0 <= value.option_index < len(labels):
            raise InvalidAnswer("Unknown option.")

        item.selected ^= {value.option_index}
        item.state = (
            QuestionState.PARTIALLY_ANSWERED if item.selected else QuestionState.PENDING
        )
        qset.refresh_state()

        text, buttons = render_question(
            payload, message_id=item.message_id, selected=item.selected
        )
        if item.message_ts:
            await self.chat.update_message(
                qset.channel_id,
                item.message_ts,
                text,
                thread_id=qset.thread_id,
                buttons=buttons,
            )

    async def submit_multi_select(self, action: ActionEvent) -> None:
        value = ControlValue.decode(action.value)
        qset, item, payload = self._lookup(value.message_id)
        if not item.selected:
            raise InvalidAnswer("Select at least one option before submitting.")
        labels = payload.get("option_labels") or []
        chosen = [labels[i] for i in sorted(item.selected) if i < len(labels)]
        await self._answer_item(qset, item, ", ".join(chosen), payload, action.user_id)

    async def open_text_input(self, action: ActionEvent) -> None:
        value = ControlValue.decode(action.value)
        qset, item, payload = self._lookup(value.message_id)
        metadata = ModalMetadata(
            request_id=f"{qset.project_name}:{item.message_id}",
            question_index=item.index,
            channel_id=qset.channel_id,
            message_ts=item.message_ts,
            thread_id=qset.thread_id,
        )
        await self.chat.open_modal(
            action.trigger_id or action.user_id,
            callback_id=TEXT_INPUT_CALLBACK,
            title=payload.get("header") or "Your answer",
            prompt=str(payload.get("question_text") or ""),
            metadata=metadata.encode(),
        )

    async def submit_text_input(self, submission: ViewSubmission) -> None:
        meta = ModalMetadata.decode(submission.metadata)
        answer = (submission.values.get(TEXT_INPUT_FIELD) or "").strip()
        if not answer:
            raise InvalidAnswer("The answer cannot be empty.")
        qset, item, payload = self._lookup(meta.message_id)
        if item.index != meta.question_index:
            raise InvalidAnswer("The answer does not match this question.")
        await self._answer_item(qset, item, answer, payload, submission.user_id)

    async def _answer_item(
        self,
        qset: QuestionSet,
        item: QuestionItem,
        answer: str,
        payload: dict,
        user_id: str | None,
    ) -> None:
        item.answer = answer
        item.state = QuestionState.ANSWERED
        item.selected.clear()
        qset.refresh_state()
        self.sessions.touch(qset.thread_id)

        if item.message_ts:
            await self.chat.update_message(
                qset.channel_id,
                item.message_ts,
                render_answered(payload, answer, user_id=user_id),
                thread_id=qset.thread_id,
            )
        if qset.state == QuestionState.ANSWERED:
            await self._resolve(qset)

    async def _resolve(self, qset: QuestionSet) -> None:
        if qset.state != QuestionState.ANSWERED:
            return
        qset.state = QuestionState.RESOLVED
        for item in qset.items:
            item.state = QuestionState.RESOLVED

        answer = qset.compose_answer()
        delivered = await qset.runner.answer_tool(qset.tool_use_id, answer)
        if not delivered:
            qset.state = QuestionState.EXPIRED
            raise QuestionExpired(
                "The assistant session ended before the answer could be delivered."
            )
        log.info("Question set %s resolved in thread %s", qset.set_id, qset.thread_id)
        self.sessions.touch(qset.thread_id)

    # -- runner end -------------------------------------------------------

    async def expire_runner(self, runner: Runner) -> int:
        """Close every question set that belongs to a finished runner."""
        closed = 0
        for set_id, qset in list(self._sets.items()):
            if qset.runner is not runner:
                continue
            was_open = not qset.is_closed
            self._expire(qset)
            del self._sets[set_id]
            for item in qset.items:
                self._items.pop(item.message_id, None)
                payload = self.payloads.get(question_key(item.message_id), remove=True)
                if was_open and item.message_ts and item.state == QuestionState.EXPIRED:
                    await self.chat.update_message(
                        qset.channel_id,
                        item.message_ts,
                        render_expired(payload),
                        thread_id=qset.thread_id,
                    )
            closed += 1
        return closed

    # -- interrupt shortcut -----------------------------------------------

    async def offer_interrupt(self, session: Session, message: InboundMessage) -> None:
        self.payloads.set(
            interrupt_key(session.thread_id, message.message_ts),
            {
                "text": message.text,
                "user_id": message.user_id,
                "channel_id": message.channel_id,
                "thread_id": session.thread_id,
                "autopilot": session.autopilot,
            },
        )
        value = InterruptValue(
            thread_id=session.thread_id, message_ts=message.message_ts
        ).encode()
        if session.autopilot:
            text = (
                "🤖 Autopilot is still working in this thread.\n"
                "Interrupt it and continue with your message? Autopilot will be turned off."
            )
        else:
            text = (
                "⏳ Claude is still working in this thread.\n"
                "Interrupt the current task and continue with your message?"
            )
        await self.chat.post_message(
            message.channel_id,
            text,
            thread_id=session.thread_id,
            buttons=[
                Button(INTERRUPT_YES, "Interrupt", value, style="danger"),
                Button(INTERRUPT_NO, "Keep running", value),
            ],
        )

    async def confirm_interrupt(self, action: ActionEvent) -> None:
        ref = InterruptValue.decode(action.value)
        data = self.payloads.get(
            interrupt_key(ref.thread_id, ref.message_ts), remove=True
        )
        if data is None:
            raise QuestionExpired(
                "This interrupt request has expired. Send your message again."
            )

        await self.chat.update_message(
            action.channel_id,
            action.message_ts,
            "⏹ Interrupting the current task…",
            thread_id=ref.thread_id,
        )

        session = self.sessions.get(ref.thread_id)
        if session is not None and session.runner is not None and session.is_running:
            runner = session.runner
            await runner.interrupt()
            await self.sessions.terminate(ref.thread_id, "interrupted by user", runner=runner)
        if data.get("autopilot"):
            self.sessions.set_autopilot(ref.thread_id, False)

        if self.resume is not None:
            await self.resume(ref.thread_id, str(data.get("text") or ""))

    async def decline_interrupt(self, action: ActionEvent) -> None:
        ref = InterruptValue.decode(action.value)
        data = self.payloads.get(
            interrupt_key(ref.thread_id, ref.message_ts), remove=True
        )
        if data is None:
            raise QuestionExpired("This interrupt request has expired.")
        if self.sessions.is_busy(ref.thread_id):
            text = "👍 Continuing the current task."
        else:
            text = "The task already finished. Send your message again to continue."
        await self.chat.update_message(
            action.channel_id, action.message_ts, text, thread_id=ref.thread_id
        )
