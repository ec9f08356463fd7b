"""The single owned object tying stores, sessions and questions together.

Transport adapters hand inbound events to `handle_message`, `handle_action`
and `handle_view_submission`; each runs inside `guard()` so a failing handler
is logged and reported to the chat instead of reaching the dispatch loop.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field

from threadpilot.chat.ports import (
    ActionEvent,
    ChatPort,
    InboundMessage,
    ViewSubmission,
)
from threadpilot.commands import CommandHandler
from threadpilot.config import Config
from threadpilot.errors import ProtocolError, ThreadpilotError
from threadpilot.questions.blocks import (
    SELECT_OPTION,
    SUBMIT_MULTI_SELECT,
    TEXT_INPUT,
    TOGGLE_OPTION,
)
from threadpilot.questions.protocol import (
    INTERRUPT_NO,
    INTERRUPT_YES,
    TEXT_INPUT_CALLBACK,
    QuestionProtocol,
)
from threadpilot.runners.events import (
    AssistantMessage,
    InitEvent,
    ResultEvent,
    StreamEvent,
    TextBlock,
    ToolUseBlock,
)
from threadpilot.runners.ports import Runner, RunnerFactory
from threadpilot.runners.processor import describe_tool, format_result_summary
from threadpilot.runners.registry import claude_runner_factory
from threadpilot.sessions.manager import Session, SessionManager
from threadpilot.stores.channels import ChannelStore
from threadpilot.stores.payloads import PayloadStore
from threadpilot.stores.workspaces import WorkspaceStore

log = logging.getLogger("orchestrator")

ASK_USER_TOOL = "AskUserQuestion"
PLAN_TOOL = "ExitPlanMode"
PLAN_APPROVED = "User approved the plan. Proceed with the implementation."

_QUESTION_ACTION_RE = re.compile(
    rf"^({SELECT_OPTION}|{TOGGLE_OPTION}|{SUBMIT_MULTI_SELECT}|{TEXT_INPUT})_\d+(?:_\d+)?$"
)


@dataclass
class _RunView:
    """What has been shown to the thread during one runner's life."""

    texts: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)
    last_progress_at: int = 0


def _format_exception_for_user(exc: BaseException) -> str:
    msg = str(exc).strip()
    if msg:
        return f"Error: {type(exc).__name__}: {msg}"
    return f"Error: {type(exc).__name__}"


class Orchestrator:
    def __init__(
        self,
        config: Config,
        chat: ChatPort,
        *,
        runner_factory: RunnerFactory | None = None,
    ):
        self.config = config
        self.chat = chat
        self.channels = ChannelStore(config.channels_file)
        self.workspaces = WorkspaceStore(
            config.workspaces_file, ttl_s=config.workspace_ttl_s
        )
        self.payloads = PayloadStore(config.payloads_file, ttl_s=config.payload_ttl_s)
        self.sessions = SessionManager(
            workspaces=self.workspaces,
            runner_factory=runner_factory or claude_runner_factory(config),
            payloads=self.payloads,
            inactivity_timeout_s=config.inactivity_timeout_s,
            sweep_interval_s=config.sweep_interval_s,
            on_inactive=self._notify_inactive,
        )
        self.questions = QuestionProtocol(
            chat=chat,
            payloads=self.payloads,
            sessions=self.sessions,
            resume=self.resume_thread,
        )
        self.commands = CommandHandler(self)
        self._drivers: set[asyncio.Task] = set()

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        self.sessions.start()
        log.info(
            "Orchestrator started (%d workspace mapping(s), %d channel(s))",
            len(self.workspaces),
            len(self.channels),
        )

    async def shutdown(self) -> None:
        await self.sessions.shutdown()
        if self._drivers:
            _, pending = await asyncio.wait(set(self._drivers), timeout=5.0)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        log.info("Orchestrator stopped")

    # -- error boundary ---------------------------------------------------

    async def guard(
        self,
        coro,
        *,
        channel_id: str | None = None,
        thread_id: str | None = None,
        user_id: str | None = None,
        context: str | None = None,
    ):
        """Run a coroutine with a single error boundary.

        Protocol errors are expected rejections and go back to the user that
        caused them; anything else is logged with a traceback.
        """
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except ProtocolError as exc:
            log.info("Rejected (%s): %s", context, exc)
            await self._notify(str(exc), channel_id, thread_id, user_id)
        except ThreadpilotError as exc:
            log.warning("%s failed: %s", context or "handler", exc)
            await self._notify(f"⚠️ {exc}", channel_id, thread_id, None)
        except Exception as exc:
            if context:
                log.exception("Unhandled error (%s)", context)
            else:
                log.exception("Unhandled error")
            await self._notify(_format_exception_for_user(exc), channel_id, thread_id, None)
        return None

    async def _notify(
        self,
        text: str,
        channel_id: str | None,
        thread_id: str | None,
        user_id: str | None,
    ) -> None:
        if not channel_id:
            return
        try:
            if user_id:
                await self.chat.post_ephemeral(channel_id, user_id, text, thread_id=thread_id)
            else:
                await self.chat.post_message(channel_id, text, thread_id=thread_id)
        except Exception:
            log.warning("Failed to deliver error notice to %s", channel_id, exc_info=True)

    def spawn_guarded(self, coro, *, context: str, **where) -> asyncio.Task:
        task = asyncio.create_task(self.guard(coro, context=context, **where))
        self._drivers.add(task)
        task.add_done_callback(self._drivers.discard)
        return task

    # -- inbound ----------------------------------------------------------

    async def handle_message(self, msg: InboundMessage) -> None:
        await self.guard(
            self._handle_message(msg),
            channel_id=msg.channel_id,
            thread_id=msg.thread_id,
            user_id=msg.user_id,
            context="message",
        )

    async def _handle_message(self, msg: InboundMessage) -> None:
        text = msg.text.strip()
        if not text:
            return
        if text.startswith("/") and await self.commands.handle(msg):
            return
        if msg.thread_id is None:
            await self.chat.post_ephemeral(
                msg.channel_id,
                msg.user_id,
                "Start a task with /task <prompt> (after /init <directory>).",
            )
            return
        await self._handle_thread_message(msg)

    async def _handle_thread_message(self, msg: InboundMessage) -> None:
        thread_id = msg.thread_id
        assert thread_id is not None

        if self.sessions.is_busy(thread_id):
            session = self.sessions.get(thread_id)
            if session is None or not session.is_running:
                await self.chat.post_ephemeral(
                    msg.channel_id,
                    msg.user_id,
                    "Claude is still starting in this thread; try again in a moment.",
                    thread_id=thread_id,
                )
                return
            await self.questions.offer_interrupt(session, msg)
            return

        if self.sessions.get_or_create(thread_id) is None:
            await self.chat.post_ephemeral(
                msg.channel_id,
                msg.user_id,
                "This thread has no workspace (it may have expired). "
                "Start a new task with /task <prompt>.",
                thread_id=thread_id,
            )
            return

        await self.start_run(thread_id, text=msg.text)

    async def handle_action(self, action: ActionEvent) -> None:
        await self.guard(
            self._handle_action(action),
            channel_id=action.channel_id,
            thread_id=action.thread_id,
            user_id=action.user_id,
            context=f"action {action.action_id}",
        )

    async def _handle_action(self, action: ActionEvent) -> None:
        action_id = action.action_id
        if action_id == INTERRUPT_YES:
            await self.questions.confirm_interrupt(action)
            return
        if action_id == INTERRUPT_NO:
            await self.questions.decline_interrupt(action)
            return

        m = _QUESTION_ACTION_RE.match(action_id)
        if not m:
            log.warning("Ignoring unknown action %r", action_id)
            return
        kind = m.group(1)
        if kind == SELECT_OPTION:
            await self.questions.select_option(action)
        elif kind == TOGGLE_OPTION:
            await self.questions.toggle_option(action)
        elif kind == SUBMIT_MULTI_SELECT:
            await self.questions.submit_multi_select(action)
        else:
            await self.questions.open_text_input(action)

    async def handle_view_submission(
        self, submission: ViewSubmission, *, channel_id: str | None = None
    ) -> None:
        await self.guard(
            self._handle_view_submission(submission),
            channel_id=channel_id or submission.user_id,
            user_id=submission.user_id,
            context=f"view {submission.callback_id}",
        )

    async def _handle_view_submission(self, submission: ViewSubmission) -> None:
        if submission.callback_id != TEXT_INPUT_CALLBACK:
            log.warning("Ignoring unknown view submission %r", submission.callback_id)
            return
        await self.questions.submit_text_input(submission)

    # -- runs -------------------------------------------------------------

    async def start_run(self, thread_id: str, text: str) -> Runner:
        """Spawn (or resume) the thread's runner and start driving its feed."""
        session, runner = await self.sessions.start_run(thread_id, text)
        self.spawn_guarded(
            self._drive(session, runner),
            context=f"runner {thread_id}",
            channel_id=session.channel_id,
            thread_id=thread_id,
        )
        return runner

    async def resume_thread(self, thread_id: str, text: str) -> None:
        await self.start_run(thread_id, text)

    async def _drive(self, session: Session, runner: Runner) -> None:
        view = _RunView()
        async for event in runner.events():
            self.sessions.touch(session.thread_id)
            try:
                await self._dispatch(session, runner, event, view)
            except ProtocolError as exc:
                log.warning("Event handling rejected in %s: %s", session.thread_id, exc)
            except Exception:
                log.exception(
                    "Failed to handle %s in thread %s", type(event).__name__, session.thread_id
                )

        await self.questions.expire_runner(runner)
        await self.sessions.terminate(session.thread_id, "runner finished", runner=runner)

    async def _post(self, session: Session, text: str) -> None:
        await self.chat.post_message(
            session.channel_id or "", text, thread_id=session.thread_id
        )

    async def _flush_texts(self, session: Session, view: _RunView) -> None:
        if view.texts:
            await self._post(session, "\n\n".join(view.texts))
            view.texts.clear()

    async def _dispatch(
        self, session: Session, runner: Runner, event: StreamEvent, view: _RunView
    ) -> None:
        if isinstance(event, InitEvent):
            if event.session_id:
                self.sessions.record_session_id(session.thread_id, event.session_id)
            return

        if isinstance(event, AssistantMessage):
            for block in event.blocks:
                if isinstance(block, TextBlock):
                    view.texts.append(block.text)
                elif isinstance(block, ToolUseBlock):
                    await self._handle_tool_use(session, runner, block, view)
            return

        if isinstance(event, ResultEvent):
            await self._send_result(session, runner, event, view)

    async def _handle_tool_use(
        self, session: Session, runner: Runner, block: ToolUseBlock, view: _RunView
    ) -> None:
        if block.name == ASK_USER_TOOL:
            await self._flush_texts(session, view)
            await self.questions.present(session, runner, block)
            return

        if block.name == PLAN_TOOL:
            await self._flush_texts(session, view)
            plan = str(block.input.get("plan") or "").strip()
            if plan:
                await self._post(session, f"📋 Plan:\n{plan}")
            await runner.answer_tool(block.id, PLAN_APPROVED)
            return

        summary = describe_tool(block)
        view.tools.append(summary)
        if len(view.tools) - view.last_progress_at >= 8:
            view.last_progress_at = len(view.tools)
            await self._post(session, f"... {' '.join(view.tools[-3:])}")

    async def _send_result(
        self, session: Session, runner: Runner, result: ResultEvent, view: _RunView
    ) -> None:
        parts: list[str] = []
        if view.tools:
            tools = " ".join(view.tools[:5])
            if len(view.tools) > 5:
                tools += f" +{len(view.tools) - 5}"
            parts.append(tools)

        if result.is_error:
            if view.texts:
                parts.append(view.texts[-1])
            if result.abnormal:
                parts.append(f"❌ {result.text}")
            else:
                parts.append(f"❌ Claude stopped with {result.subtype}: {result.text}")
        else:
            parts.append("\n\n".join(view.texts) if view.texts else result.text)
            parts.append(format_result_summary(result, tool_count=runner.tool_count))
        view.texts.clear()

        await self._post(session, "\n\n".join(p for p in parts if p))

    async def _notify_inactive(self, session: Session) -> None:
        minutes = int(self.config.inactivity_timeout_s // 60)
        await self._post(
            session,
            f"💤 Stopped Claude after {minutes} minutes of inactivity. "
            "Send a message in this thread to resume.",
        )
