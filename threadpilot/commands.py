"""Slash commands (/init, /task, /stop, /autopilot, /status, /help)."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, cast

from threadpilot.chat.ports import InboundMessage
from threadpilot.stores.channels import ChannelMapping
from threadpilot.stores.workspaces import Workspace

if TYPE_CHECKING:
    from threadpilot.orchestrator import Orchestrator

Handler = Callable[[InboundMessage], Awaitable[bool]]


def command(name: str, *aliases: str, exact: bool = True):
    """Decorator to register a command handler.

    Args:
        name: Primary command name (e.g., "/stop")
        *aliases: Additional names that trigger this command
        exact: If True, requires exact match; if False, allows prefix match
    """

    def decorator(func: Handler) -> Handler:
        setattr(func, "_command_name", name)
        setattr(func, "_command_aliases", aliases)
        setattr(func, "_command_exact", exact)
        return func

    return decorator


def _argument(text: str) -> str:
    parts = text.strip().split(None, 1)
    return parts[1].strip() if len(parts) > 1 else ""


class CommandHandler:
    """Handles slash commands.

    Commands are registered via the @command decorator on methods.
    The handler auto-discovers all decorated methods on init.
    """

    def __init__(self, orchestrator: "Orchestrator"):
        self.orch = orchestrator
        self._commands: dict[str, tuple[Handler, bool]] = {}
        self._discover_commands()

    def _discover_commands(self) -> None:
        """Find all @command decorated methods and register them."""
        for name in dir(self):
            method = getattr(self, name)
            if callable(method) and hasattr(method, "_command_name"):
                m = cast(Any, method)
                handler = cast(Handler, method)
                exact = cast(bool, m._command_exact)
                self._commands[cast(str, m._command_name)] = (handler, exact)
                for alias in cast(tuple[str, ...], m._command_aliases):
                    self._commands[alias] = (handler, exact)

    async def handle(self, msg: InboundMessage) -> bool:
        """Handle a command. Returns True if command was handled."""
        cmd = msg.text.strip().lower()

        for prefix, (handler, exact) in self._commands.items():
            if exact and cmd == prefix:
                return await handler(msg)

        # Prefix matches need a word boundary so /tasks is not /task.
        best: tuple[int, Handler] | None = None
        for prefix, (handler, exact) in self._commands.items():
            if exact:
                continue
            if cmd == prefix or cmd.startswith(prefix + " "):
                score = len(prefix)
                if best is None or score > best[0]:
                    best = (score, handler)
        if best is not None:
            return await best[1](msg)

        return False

    async def _reply(self, msg: InboundMessage, text: str) -> None:
        await self.orch.chat.post_message(msg.channel_id, text, thread_id=msg.thread_id)

    async def _reply_private(self, msg: InboundMessage, text: str) -> None:
        await self.orch.chat.post_ephemeral(
            msg.channel_id, msg.user_id, text, thread_id=msg.thread_id
        )

    @command("/help")
    async def help(self, msg: InboundMessage) -> bool:
        await self._reply_private(
            msg,
            "\n".join(
                [
                    "/init <directory> - set this channel's working directory",
                    "/task [--autopilot] <prompt> - start Claude in a new thread",
                    "/stop - stop Claude in this thread",
                    "/autopilot on|off - toggle autopilot for this thread",
                    "/status - show running tasks",
                ]
            ),
        )
        return True

    @command("/init", exact=False)
    async def init(self, msg: InboundMessage) -> bool:
        """Map this channel to a working directory."""
        arg = _argument(msg.text)
        if not arg:
            mapping = self.orch.channels.get(msg.channel_id)
            if mapping:
                await self._reply_private(
                    msg, f"This channel works in {mapping.directory}. Usage: /init <directory>"
                )
            else:
                await self._reply_private(msg, "Usage: /init <directory>")
            return True

        path = Path(arg).expanduser()
        if not path.is_absolute():
            path = self.orch.config.base_dir / path
        path = path.resolve()
        if not path.is_dir():
            await self._reply_private(msg, f"Directory not found: {path}")
            return True

        self.orch.channels.set(
            msg.channel_id, ChannelMapping(directory=str(path), project_name=path.name)
        )
        await self._reply(msg, f"📁 This channel now works in {path}")
        return True

    @command("/task", exact=False)
    async def task(self, msg: InboundMessage) -> bool:
        """Start Claude in a new thread."""
        arg = _argument(msg.text)
        autopilot = False
        for flag in ("--autopilot", "-a"):
            if arg == flag or arg.startswith(flag + " "):
                autopilot = True
                arg = arg[len(flag):].strip()
                break
        if not arg:
            await self._reply_private(msg, "Usage: /task [--autopilot] <prompt>")
            return True

        mapping = self.orch.channels.get(msg.channel_id)
        if mapping is None:
            await self._reply_private(msg, "Run /init <directory> in this channel first.")
            return True

        label = " (autopilot)" if autopilot else ""
        preview = arg if len(arg) <= 200 else arg[:197] + "..."
        thread_id = await self.orch.chat.post_message(
            msg.channel_id, f"🚀 {mapping.project_name}{label}: {preview}"
        )
        self.orch.workspaces.add(
            thread_id,
            Workspace(
                directory=mapping.directory,
                project_name=mapping.project_name,
                channel_id=msg.channel_id,
                autopilot=autopilot,
            ),
        )
        await self.orch.start_run(thread_id, arg)
        return True

    @command("/stop", "/cancel")
    async def stop(self, msg: InboundMessage) -> bool:
        """Stop the runner of the current thread."""
        if msg.thread_id is None:
            await self._reply_private(msg, "Use /stop inside a task thread.")
            return True
        if not self.orch.sessions.is_busy(msg.thread_id):
            await self._reply_private(msg, "Nothing running in this thread.")
            return True
        await self.orch.sessions.terminate(msg.thread_id, "stopped by user")
        await self._reply(msg, "⏹ Stopped.")
        return True

    @command("/autopilot", exact=False)
    async def autopilot(self, msg: InboundMessage) -> bool:
        arg = _argument(msg.text).lower()
        if msg.thread_id is None or arg not in ("on", "off"):
            await self._reply_private(msg, "Usage (inside a task thread): /autopilot on|off")
            return True
        enabled = arg == "on"
        if not self.orch.sessions.set_autopilot(msg.thread_id, enabled):
            await self._reply_private(msg, "This thread has no workspace.")
            return True
        await self._reply(msg, f"🤖 Autopilot {'enabled' if enabled else 'disabled'}.")
        return True

    @command("/status")
    async def status(self, msg: InboundMessage) -> bool:
        lines = [f"Running tasks: {self.orch.sessions.list_active()}"]
        lines.append(f"Mapped channels: {len(self.orch.channels.all())}")
        mapping = self.orch.channels.get(msg.channel_id)
        lines.append(
            f"Channel directory: {mapping.directory}" if mapping else "Channel directory: (none)"
        )
        if msg.thread_id is not None:
            ws = self.orch.workspaces.get(msg.thread_id)
            if ws is None:
                lines.append("Thread: no workspace")
            else:
                state = "running" if self.orch.sessions.is_busy(msg.thread_id) else "idle"
                lines.append(
                    f"Thread: {ws.project_name} ({state}"
                    + (", autopilot" if ws.autopilot else "")
                    + ")"
                )
        await self._reply_private(msg, "\n".join(lines))
        return True
