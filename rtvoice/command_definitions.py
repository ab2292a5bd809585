#!/usr/bin/env python3
"""Commands supported by the package's script."""
import asyncio
import contextlib
import sys
import threading

from loguru import logger

from .display_log import TerminalLogPrinter
from .general_utils import MissingConfigurationError
from .realtime_session import RealtimeSession
from .speech_pipeline import DiscretePipeline


def realtime_chat(args):
    """Start a realtime voice session."""
    session = RealtimeSession.from_cli_args(cli_args=args)
    session.display_log.add_listener(TerminalLogPrinter())
    return _run_interactively(
        voice_app=session,
        greeting="Connecting... Speak when the session starts. Commands: "
        "<Enter> or 'stop' to end the session, 'clear' to clear the log, "
        "'instructions <text>' to change the model's instructions.",
    )


def pipeline_chat(args):
    """Ask questions by voice, answered through the STT -> chat -> TTS pipeline."""
    pipeline = DiscretePipeline.from_cli_args(cli_args=args)
    pipeline.display_log.add_listener(TerminalLogPrinter())
    return _run_interactively(voice_app=pipeline)


def _run_interactively(voice_app, greeting=""):
    # ruff: noqa: T201
    try:
        voice_app.configs.check_required_fields()
    except MissingConfigurationError as error:
        logger.error(error)
        return 1

    logger.info("Using {}", voice_app.configs.provider_name)
    if greeting:
        print(greeting)

    async def interact():
        commands = asyncio.Queue()
        _start_stdin_reader(commands)
        await voice_app.interact(commands)

    try:
        asyncio.run(interact())
    except MissingConfigurationError as error:
        logger.error(error)
        return 1
    except (KeyboardInterrupt, EOFError):
        logger.info("Exiting.")
    return 0


def _start_stdin_reader(commands: asyncio.Queue, stdin=None):
    """Forward lines read from `stdin` to the `commands` queue. Queue `None` at EOF.

    Reading happens in a daemon thread, so that the event loop is never blocked.
    """
    loop = asyncio.get_running_loop()
    stdin = sys.stdin if stdin is None else stdin

    def put(item):
        # The loop may already be closed when the user types after the session ended
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(commands.put_nowait, item)

    def read_lines():
        for line in stdin:
            put(line.rstrip("\n"))
        put(None)

    reader_thread = threading.Thread(target=read_lines, daemon=True)
    reader_thread.start()
    return reader_thread
