#!/usr/bin/env python3
"""
Threadpilot - chat-driven Claude Code sessions

One XMPP account serves every conversation. A peer maps itself to a working
directory with /init, starts a task with /task, and every task lives in its
own thread. Replies in the thread continue the same Claude session.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

from threadpilot.chat.xmpp import XMPPChatBot
from threadpilot.config import Config, load_config, load_env
from threadpilot.errors import ConfigurationError
from threadpilot.orchestrator import Orchestrator

log = logging.getLogger("bridge")


def _configure_logging() -> None:
    level_name = (os.getenv("THREADPILOT_LOG_LEVEL") or "INFO").strip().upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    if level_name != logging.getLevelName(level):
        log.warning("Unknown THREADPILOT_LOG_LEVEL=%r; using INFO", level_name)


def _write_pid(config: Config) -> None:
    config.data_dir.mkdir(parents=True, exist_ok=True)
    config.pid_file.write_text(f"{os.getpid()}\n")


def _remove_pid(config: Config) -> None:
    try:
        config.pid_file.unlink()
    except FileNotFoundError:
        pass
    except OSError:
        log.warning("Failed to remove %s", config.pid_file, exc_info=True)


async def main() -> int:
    load_env()
    _configure_logging()

    try:
        config = load_config()
    except ConfigurationError as e:
        log.error("%s", e)
        return 2
    assert config.xmpp is not None

    bot = XMPPChatBot(
        config.xmpp.jid,
        config.xmpp.password,
        allowed_jids=config.xmpp.allowed_jids,
    )
    orchestrator = Orchestrator(config, bot)
    bot.attach(orchestrator)

    bot.connect_to_server(
        config.xmpp.server, config.xmpp.port, plaintext=config.xmpp.plaintext
    )
    if not await bot.wait_connected(timeout=30):
        log.error("Could not connect to %s:%d", config.xmpp.server, config.xmpp.port)
        await bot.close()
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            log.debug("Signal handlers unsupported; rely on KeyboardInterrupt")

    _write_pid(config)
    try:
        await orchestrator.start()
        log.info("Threadpilot running as %s", config.xmpp.jid)
        await stop.wait()
        log.info("Shutting down...")
    finally:
        await orchestrator.shutdown()
        await bot.close()
        _remove_pid(config)
    return 0


def run() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        log.info("Shutting down...")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    run()
