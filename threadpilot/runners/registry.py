"""Runner construction from configuration.

Callers should depend on the `Runner` port and receive a `RunnerFactory`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from threadpilot.runners.claude import ClaudeRunner

if TYPE_CHECKING:
    from threadpilot.config import Config
    from threadpilot.runners.ports import Runner, RunnerFactory


def claude_runner_factory(config: "Config") -> "RunnerFactory":
    def create_runner(
        working_dir: str, thread_id: str, resume_session_id: str | None
    ) -> "Runner":
        return ClaudeRunner(
            working_dir,
            config.output_dir,
            session_name=thread_id,
            claude_bin=config.claude_bin,
            extra_args=config.claude_args,
            resume_session_id=resume_session_id,
            kill_grace_s=config.kill_grace_s,
        )

    return create_runner
