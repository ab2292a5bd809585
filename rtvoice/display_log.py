"""Display log of a voice session and the folding of server events into it."""

import base64
import binascii
import sys
from typing import Callable, Optional

import numpy as np
from loguru import logger

SESSION_STARTED_MARKER = "<< Session Started >>"
SPEECH_STARTED_MARKER = "<< Speech Started >>"
RESPONSE_SEPARATOR = "---"
NO_OPEN_SPEECH_BLOCK = -1


def decode_pcm16(audio: str) -> np.ndarray:
    """Decode base64-encoded PCM16 audio into an array of int16 samples."""
    raw_bytes = base64.b64decode(audio, validate=True)
    return np.frombuffer(raw_bytes, dtype="<i2")


class DisplayLog:
    """Ordered text blocks shown to the user.

    The log also keeps the index of the latest block opened by a speech-start event,
    so that the user's transcript can be appended to it later on, even if other blocks
    have been added in the meantime.
    """

    def __init__(self):
        self._blocks: list[str] = []
        self.latest_open_speech_block = NO_OPEN_SPEECH_BLOCK
        self._listeners: list[Callable[[int, str], None]] = []

    def __len__(self):
        return len(self._blocks)

    def __getitem__(self, index):
        return self._blocks[index]

    def __iter__(self):
        return iter(self._blocks)

    @property
    def blocks(self) -> list[str]:
        """Return a copy of the log's blocks."""
        return list(self._blocks)

    def add_listener(self, listener: Callable[[int, str], None]):
        """Call `listener(index, added_text)` whenever text is added to the log."""
        self._listeners.append(listener)

    def append(self, *texts: str):
        """Add each of `texts` as a new block."""
        for text in texts:
            self._blocks.append(text)
            self._notify(len(self._blocks) - 1, text)

    def extend_last(self, text: str):
        """Add `text` to the last block. Create a new block if the log is empty."""
        if not self._blocks:
            self.append(text)
            return
        self.extend_block(len(self._blocks) - 1, text)

    def extend_block(self, index: int, text: str) -> bool:
        """Add `text` to the block at `index`. Return False if there is no such block."""
        if not 0 <= index < len(self._blocks):
            logger.debug("Display log has no block {}. Ignoring '{}'", index, text)
            return False
        self._blocks[index] += text
        self._notify(index, text)
        return True

    def open_speech_block(self):
        """Add a speech-start marker plus an empty block reserved for the transcript."""
        self.append(SPEECH_STARTED_MARKER, "")
        self.latest_open_speech_block = len(self._blocks) - 1

    def clear(self):
        """Remove all blocks."""
        self._blocks.clear()
        self.latest_open_speech_block = NO_OPEN_SPEECH_BLOCK

    def _notify(self, index: int, text: str):
        for listener in self._listeners:
            listener(index, text)


def _text_field(event, key: str) -> str:
    value = event[key]
    if not isinstance(value, str):
        raise TypeError(f"'{key}' should be a string, not {type(value).__name__}")
    return value


class DeltaReassembler:
    """Fold the realtime API's server events into a `DisplayLog`.

    Audio deltas are decoded and sent to `audio_sink`, an object with `play(samples)`
    and `clear()` methods. Events are either dicts or the SDK's event models.
    """

    def __init__(self, display_log: DisplayLog, audio_sink=None):
        self.display_log = display_log
        self.audio_sink = audio_sink
        self._handlers = {
            "session.created": self._on_session_created,
            "response.audio_transcript.delta": self._on_transcript_delta,
            "response.audio.delta": self._on_audio_delta,
            "input_audio_buffer.speech_started": self._on_speech_started,
            "conversation.item.input_audio_transcription.completed": (
                self._on_input_transcription_completed
            ),
            "response.done": self._on_response_done,
            "error": self._on_error,
        }

    def apply(self, event) -> Optional[str]:
        """Fold `event` into the display log. Return the event's type.

        A malformed event is logged and otherwise ignored.
        """
        if hasattr(event, "model_dump"):
            event = event.model_dump()
        event_type = event.get("type")
        logger.debug("Received event '{}'", event_type)

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.trace("Unhandled event: {}", event)
            return event_type

        try:
            handler(event)
        except (KeyError, TypeError, ValueError, binascii.Error) as error:
            logger.opt(exception=True).debug(error)
            logger.error("Could not process event '{}': {!r}", event_type, error)
        return event_type

    def _on_session_created(self, event):  # noqa: ARG002
        self.display_log.append(SESSION_STARTED_MARKER, "")

    def _on_transcript_delta(self, event):
        self.display_log.extend_last(_text_field(event, "delta"))

    def _on_audio_delta(self, event):
        samples = decode_pcm16(event["delta"])
        if self.audio_sink is not None:
            self.audio_sink.play(samples)

    def _on_speech_started(self, event):  # noqa: ARG002
        self.display_log.open_speech_block()
        # The user talking interrupts the assistant's reply
        if self.audio_sink is not None:
            self.audio_sink.clear()

    def _on_input_transcription_completed(self, event):
        transcript = _text_field(event, "transcript")
        self.display_log.extend_block(
            self.display_log.latest_open_speech_block, f" User: {transcript}"
        )

    def _on_response_done(self, event):  # noqa: ARG002
        self.display_log.append(RESPONSE_SEPARATOR)

    def _on_error(self, event):
        error = event.get("error") or {}
        message = error.get("message", error) if isinstance(error, dict) else error
        logger.error("Server reported an error: {}", message)


class TerminalLogPrinter:
    """Print text added to a `DisplayLog` as it arrives."""

    def __init__(self, stream=None):
        self.stream = stream if stream is not None else sys.stdout
        self._last_index = None

    def __call__(self, index: int, text: str):
        """Print `text`, added to block `index` of the log."""
        # ruff: noqa: T201
        if index != self._last_index:
            print(file=self.stream)
            self._last_index = index
            text = text.lstrip()
        print(text, end="", file=self.stream, flush=True)
