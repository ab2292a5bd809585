"""Code related to the realtime voice session."""

import asyncio
import contextlib
import uuid
from enum import Enum, auto
from typing import Optional

import openai
from loguru import logger
from websockets.exceptions import WebSocketException

from .audio_buffers import ChunkBuffer, audio_append_event
from .audio_io import Player, Recorder
from .configs import RealtimeConfigs
from .display_log import DeltaReassembler, DisplayLog
from .general_utils import (
    AlternativeConstructors,
    MicrophoneUnavailableError,
    MissingConfigurationError,
)

CONNECTION_ERROR_MESSAGE = (
    "[Connection error]: Could not send the initial session configuration. "
    "Please check the endpoint and credentials."
)

# Errors that can be raised when talking to the realtime API
TRANSPORT_ERRORS = (openai.OpenAIError, OSError, WebSocketException)


class InputState(Enum):
    """States of the session, which determine what the user can do."""

    WORKING = auto()
    READY_TO_START = auto()
    READY_TO_STOP = auto()


def open_realtime_connection(configs: RealtimeConfigs):
    """Return an async context manager for a connection to the realtime API."""
    if configs.is_azure:
        client = openai.AsyncAzureOpenAI(
            azure_endpoint=configs.endpoint.strip(),
            api_key=configs.api_key.strip(),
            api_version=configs.api_version,
            max_retries=0,
        )
    else:
        client = openai.AsyncOpenAI(api_key=configs.api_key.strip(), max_retries=0)
    return client.beta.realtime.connect(model=configs.deployment_or_model.strip())


class RealtimeSession(AlternativeConstructors):
    """Stream microphone audio to the realtime API and collect its replies.

    The session runs in a single event loop. One task reads server events and folds
    them into `display_log` while another one forwards microphone audio to the API in
    fixed-size chunks.
    """

    default_configs = RealtimeConfigs()

    def __init__(
        self,
        configs: RealtimeConfigs = default_configs,
        connection_factory=open_realtime_connection,
        recorder_factory=Recorder,
        player_factory=Player,
    ):
        """Initializes a realtime session.

        Args:
            configs (RealtimeConfigs, optional): The session's configurations.
            connection_factory (callable, optional): Called with the configs to get an
                async context manager yielding a connection to the realtime API.
            recorder_factory (callable, optional): Returns a new `Recorder`.
            player_factory (callable, optional): Returns a new `Player`.
        """
        self.id = str(uuid.uuid4())
        logger.debug("Init realtime session {}", self.id)

        self.configs = configs
        self.input_state = InputState.READY_TO_START
        self.display_log = DisplayLog()
        self.reassembler = DeltaReassembler(display_log=self.display_log)
        self.chunk_buffer = ChunkBuffer()
        self.recording_active = False

        self.connection = None
        self.recorder: Optional[Recorder] = None
        self.player: Optional[Player] = None

        self._connection_factory = connection_factory
        self._recorder_factory = recorder_factory
        self._player_factory = player_factory
        self._exit_stack: Optional[contextlib.AsyncExitStack] = None
        self._audio_pump_task: Optional[asyncio.Task] = None
        self._stopping = False

    async def start(self):
        """Connect to the realtime API and stream audio until the session ends.

        Raises:
            MissingConfigurationError: If a field needed to connect is missing.
        """
        if self.input_state != InputState.READY_TO_START:
            logger.warning("Can't start session {}: it is {}", self.id, self.input_state)
            return

        self.input_state = InputState.WORKING
        try:
            self.configs.check_required_fields()
        except MissingConfigurationError:
            self.input_state = InputState.READY_TO_START
            raise

        self._exit_stack = contextlib.AsyncExitStack()
        try:
            self.connection = await self._exit_stack.enter_async_context(
                self._connection_factory(self.configs)
            )
            logger.debug("Sending session config")
            await self.connection.send(self.configs.session_update_event())
            logger.debug("Session config sent")
        except TRANSPORT_ERRORS as error:
            logger.opt(exception=True).debug(error)
            logger.error("Connection error: {}", error)
            self.display_log.append(CONNECTION_ERROR_MESSAGE)
            await self._close_connection()
            self.input_state = InputState.READY_TO_START
            return

        await asyncio.gather(
            self._reset_audio(start_recording=True), self._handle_realtime_messages()
        )
        await self._close_connection()

    async def stop(self):
        """Stop recording and close the connection."""
        if self.input_state != InputState.READY_TO_STOP:
            logger.warning("Can't stop session {}: it is {}", self.id, self.input_state)
            return

        self.input_state = InputState.WORKING
        self._stopping = True
        try:
            await self._reset_audio(start_recording=False)
            await self._close_connection()
        finally:
            self._stopping = False
        self.input_state = InputState.READY_TO_START
        logger.debug("Session {} stopped", self.id)

    def clear_all(self):
        """Clear the display log."""
        self.display_log.clear()

    async def update_instructions(self, instructions: str):
        """Replace the model's instructions for the rest of the connection."""
        if self.connection is None:
            logger.warning("Not connected. Instructions not updated.")
            return
        self.configs = self.configs.model_copy(update={"instructions": instructions})
        await self.connection.send(
            {"type": "session.update", "session": {"instructions": instructions}}
        )
        logger.debug("Instructions updated")

    def handle_event(self, event):
        """Fold a server event into the session's state and display log."""
        event_type = self.reassembler.apply(event)
        if event_type == "session.created" and self.input_state == InputState.WORKING:
            self.input_state = InputState.READY_TO_STOP

    async def process_audio_recording_buffer(self, data: bytes):
        """Buffer microphone audio and send it to the API in fixed-size chunks."""
        for chunk in self.chunk_buffer.append(data):
            if self.recording_active and self.connection is not None:
                await self.connection.send(audio_append_event(chunk))
            else:
                logger.trace("Dropping {} bytes of audio", len(chunk))

    async def interact(self, commands: asyncio.Queue):
        """Run the session, executing the commands read from `commands`.

        Commands are lines of text. A `None` or an empty line (or "stop") stops the
        session, "clear" clears the display log and "instructions <text>" replaces
        the model's instructions.
        """
        session_task = asyncio.create_task(self.start())
        while not session_task.done():
            next_command = asyncio.create_task(commands.get())
            await asyncio.wait(
                {session_task, next_command}, return_when=asyncio.FIRST_COMPLETED
            )
            if not next_command.done():
                next_command.cancel()
                break
            await self._run_command(next_command.result())
        await session_task

    async def _run_command(self, command: Optional[str]):
        command = "" if command is None else command.strip()
        name, _, argument = command.partition(" ")
        if name in ("", "stop"):
            await self.stop()
        elif name == "clear":
            self.clear_all()
        elif name == "instructions" and argument.strip():
            await self.update_instructions(argument.strip())
        else:
            logger.warning("Unknown command '{}'", command)

    async def _handle_realtime_messages(self):
        if self.connection is None:
            return
        try:
            async for event in self.connection:
                self.handle_event(event)
        except Exception as error:  # noqa: BLE001
            logger.opt(exception=True).debug(error)
            logger.error("Error while processing realtime messages: {}", error)

        logger.debug("No more realtime messages")
        await self._reset_audio(start_recording=False)
        # The server may end the stream before or after `session.created`
        if not self._stopping:
            self.input_state = InputState.READY_TO_START

    async def _reset_audio(self, start_recording: bool):
        self.recording_active = False
        if self.recorder is not None:
            self.recorder.stop()
            self.recorder = None
        if self._audio_pump_task is not None:
            audio_pump_task, self._audio_pump_task = self._audio_pump_task, None
            await audio_pump_task
        if self.player is not None:
            self.player.close()
            self.player = None
        self.chunk_buffer.reset()

        if not start_recording:
            return

        self.player = self._player_factory()
        self.player.init()
        self.reassembler.audio_sink = self.player

        self.recorder = self._recorder_factory()
        try:
            self.recorder.start()
        except MicrophoneUnavailableError as error:
            logger.opt(exception=True).debug(error)
            logger.error("Failed to access the microphone: {}", error)
            self.recorder = None
            self.player.close()
            self.player = None
            self.input_state = InputState.READY_TO_START
            await self._close_connection()
            return
        self.recording_active = True
        self._audio_pump_task = asyncio.create_task(self._pump_audio(self.recorder))

    async def _pump_audio(self, recorder: Recorder):
        while True:
            data = await recorder.audio_queue.get()
            if data is None:
                break
            try:
                await self.process_audio_recording_buffer(data)
            except TRANSPORT_ERRORS as error:
                logger.opt(exception=True).debug(error)
                logger.error("Could not send audio: {}", error)
                break

    async def _close_connection(self):
        self.connection = None
        if self._exit_stack is not None:
            exit_stack, self._exit_stack = self._exit_stack, None
            await exit_stack.aclose()
