"""Microphone capture and speaker playback."""

import asyncio
import queue
import threading
from typing import Optional

import numpy as np
from loguru import logger

from . import GeneralDefinitions
from .general_utils import MicrophoneUnavailableError

try:
    import sounddevice as sd
except OSError as error:
    logger.exception(error)
    logger.error(
        "Can't use module `sounddevice`. Please check your system's PortAudio install."
    )
    _sounddevice_imported = False
else:
    _sounddevice_imported = True


class Recorder:
    """Capture PCM16 audio from the microphone into an asyncio queue.

    The sounddevice callback runs in a separate thread, so blocks are handed over to
    the event loop with `call_soon_threadsafe`. A `None` is queued when the recorder
    stops, so that consumers know there is no more audio coming.
    """

    def __init__(
        self,
        sample_rate: int = GeneralDefinitions.SAMPLE_RATE,
        block_duration: int = 20,  # milliseconds
    ):
        self.sample_rate = sample_rate
        self.block_size = int((self.sample_rate * block_duration) / 1000)
        self.audio_queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._stream = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_recording(self):
        """Return whether the microphone stream is open."""
        return self._stream is not None

    def start(self):
        """Open the microphone and start capturing audio."""
        if not _sounddevice_imported:
            raise MicrophoneUnavailableError(
                "Module `sounddevice`, needed for audio recording, is not available."
            )
        loop = self._loop = asyncio.get_running_loop()

        def callback(indata, frames, time, status):  # noqa: ARG001
            """This is called (from a separate thread) for each audio block."""
            if status:
                logger.debug("Audio input status: {}", status)
            loop.call_soon_threadsafe(self.audio_queue.put_nowait, bytes(indata))

        try:
            self._stream = sd.RawInputStream(
                samplerate=self.sample_rate,
                blocksize=self.block_size,
                channels=GeneralDefinitions.N_CHANNELS,
                dtype="int16",  # int16, i.e., 2 bytes per sample
                callback=callback,
            )
            self._stream.start()
        except sd.PortAudioError as error:
            self._stream = None
            raise MicrophoneUnavailableError(
                f"Cannot open the microphone: {error}"
            ) from error
        logger.debug("Recording started ({} Hz)", self.sample_rate)

    def stop(self):
        """Stop capturing audio."""
        if self._stream is None:
            return
        self._stream.stop()
        self._stream.close()
        self._stream = None
        # Queued after the blocks the callback has already handed over to the loop
        self._loop.call_soon(self.audio_queue.put_nowait, None)
        logger.debug("Recording stopped")


class Player:
    """Play int16 audio samples as they arrive, with support for interruption."""

    def __init__(self, sample_rate: int = GeneralDefinitions.SAMPLE_RATE):
        self.sample_rate = sample_rate
        self._samples_queue = queue.Queue()
        self._pending = np.zeros(0, dtype=np.int16)
        # Guards `_pending` and the queue, shared with the audio callback thread
        self._lock = threading.Lock()
        self._stream = None

    def init(self):
        """Open the output stream."""
        if not _sounddevice_imported:
            logger.warning("Module `sounddevice` not available. Audio won't be played.")
            return
        try:
            self._stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=GeneralDefinitions.N_CHANNELS,
                dtype="int16",
                callback=self._callback,
            )
            self._stream.start()
        except sd.PortAudioError as error:
            logger.opt(exception=True).debug(error)
            logger.error("Can't open the audio output. Audio won't be played.")
            self._stream = None

    @property
    def is_busy(self):
        """Return whether there is audio still waiting to be played."""
        if self._stream is None:
            return False
        return not self._samples_queue.empty() or len(self._pending) > 0

    def play(self, samples: np.ndarray):
        """Queue `samples` for playback."""
        self._samples_queue.put(np.asarray(samples, dtype=np.int16))

    def clear(self):
        """Drop all audio not yet played."""
        with self._lock:
            with self._samples_queue.mutex:
                self._samples_queue.queue.clear()
            self._pending = np.zeros(0, dtype=np.int16)

    def close(self):
        """Stop playback and close the output stream."""
        self.clear()
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None

    def _callback(self, outdata, frames, time, status):  # noqa: ARG002
        """Fill `outdata` with queued samples, padding with silence if needed."""
        with self._lock:
            samples = self._pending
            while len(samples) < frames:
                try:
                    new_samples = self._samples_queue.get_nowait()
                except queue.Empty:
                    break
                samples = np.concatenate([samples, new_samples])
            self._pending = samples[frames:]
        n_samples = min(frames, len(samples))
        outdata[:n_samples, 0] = samples[:n_samples]
        outdata[n_samples:, 0] = 0
