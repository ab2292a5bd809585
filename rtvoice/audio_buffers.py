"""Buffers for microphone audio: fixed-size chunks for streaming and WAV for upload."""

import base64
import struct
from typing import Optional

from loguru import logger

from . import GeneralDefinitions

WAV_HEADER_SIZE = 44


def encode_pcm16(data: bytes) -> str:
    """Return `data` (raw PCM16 bytes) as a base64 string."""
    return base64.b64encode(data).decode("ascii")


def audio_append_event(chunk: bytes) -> dict:
    """Return the transport message that uploads `chunk` to the realtime API."""
    return {"type": "input_audio_buffer.append", "audio": encode_pcm16(chunk)}


def build_wav_header(
    data_length: int,
    sample_rate: int = GeneralDefinitions.SAMPLE_RATE,
    n_channels: int = GeneralDefinitions.N_CHANNELS,
    bits_per_sample: int = 8 * GeneralDefinitions.SAMPLE_WIDTH,
) -> bytes:
    """Return the 44-byte RIFF/WAVE header for `data_length` bytes of PCM audio."""
    block_align = n_channels * bits_per_sample // 8
    byte_rate = sample_rate * block_align
    return (
        b"RIFF"
        + struct.pack("<I", 36 + data_length)  # File size - 8
        + b"WAVE"
        + b"fmt "
        + struct.pack(
            "<IHHIIHH",
            16,  # fmt chunk size
            1,  # Audio format (PCM)
            n_channels,
            sample_rate,
            byte_rate,
            block_align,
            bits_per_sample,
        )
        + b"data"
        + struct.pack("<I", data_length)
    )


class ChunkBuffer:
    """Accumulate raw PCM bytes and split them into fixed-size chunks.

    Bytes that do not yet fill a whole chunk are kept and carried forward to the next
    call to `append`. There is no upper bound on the size of the buffer.
    """

    def __init__(self, threshold: int = GeneralDefinitions.CHUNK_SIZE_BYTES):
        """Initialise an empty buffer that emits chunks of `threshold` bytes."""
        if threshold <= 0:
            raise ValueError(f"threshold must be positive. Got '{threshold}'.")
        self.threshold = threshold
        self._buffer = bytearray()

    def __len__(self):
        return len(self._buffer)

    @property
    def remainder(self) -> bytes:
        """Return the bytes waiting for enough data to make a whole chunk."""
        return bytes(self._buffer)

    def append(self, data: bytes) -> list[bytes]:
        """Add `data` to the buffer. Return the chunks completed by it, in order."""
        self._buffer += data
        chunks = []
        while len(self._buffer) >= self.threshold:
            chunks.append(bytes(self._buffer[: self.threshold]))
            del self._buffer[: self.threshold]
        return chunks

    def reset(self):
        """Discard any buffered bytes."""
        self._buffer.clear()


class WavAssembler:
    """Keep the audio recorded in a session and pack it as a WAV file when done.

    Audio is only accepted between calls to `start` and `stop`. If a `ChunkBuffer` is
    attached, every accepted piece of audio is also fed to it for streaming use.
    """

    def __init__(
        self,
        sample_rate: int = GeneralDefinitions.SAMPLE_RATE,
        chunk_buffer: Optional[ChunkBuffer] = None,
    ):
        self.sample_rate = sample_rate
        self.chunk_buffer = chunk_buffer
        self._audio_chunks: list[bytes] = []
        self._is_recording = False

    @property
    def is_recording(self) -> bool:
        """Return whether audio is currently being accepted."""
        return self._is_recording

    @property
    def data_length(self) -> int:
        """Return the number of audio bytes recorded so far."""
        return sum(len(chunk) for chunk in self._audio_chunks)

    @property
    def buffer(self) -> bytes:
        """Return the audio recorded so far, without header."""
        return b"".join(self._audio_chunks)

    def start(self):
        """Start a new recording, discarding previously recorded audio."""
        self.reset_buffer()
        self._is_recording = True

    def append_data(self, data: bytes) -> list[bytes]:
        """Store a copy of `data`. Return chunks completed in the attached buffer."""
        if not self._is_recording:
            return []
        # Keep a copy: `data` may be reused by the audio callback that produced it
        self._audio_chunks.append(bytes(data))
        if self.chunk_buffer is None:
            return []
        return self.chunk_buffer.append(data)

    def reset_buffer(self):
        """Discard the audio recorded so far and the bytes pending in the chunk buffer."""
        self._audio_chunks = []
        if self.chunk_buffer is not None:
            self.chunk_buffer.reset()

    def stop(self) -> bytes:
        """Stop recording and return the recorded audio as a WAV file."""
        self._is_recording = False
        data_length = self.data_length
        logger.debug(
            "Packing {} audio chunks ({} bytes) as WAV",
            len(self._audio_chunks),
            data_length,
        )
        header = build_wav_header(data_length=data_length, sample_rate=self.sample_rate)
        return header + b"".join(self._audio_chunks)
