"""Code related to the speech-to-text -> chat -> text-to-speech pipeline."""

import asyncio
import io
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import numpy as np
import openai
from loguru import logger
from openai import AzureOpenAI, OpenAI
from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from . import GeneralDefinitions
from .audio_buffers import WAV_HEADER_SIZE, WavAssembler
from .audio_io import Player, Recorder
from .configs import PipelineConfigs
from .display_log import DisplayLog
from .general_utils import AlternativeConstructors, MicrophoneUnavailableError


def make_openai_client(
    configs: PipelineConfigs, endpoint: str = "", api_key: str = ""
) -> OpenAI:
    """Return a client for either Azure OpenAI or OpenAI, as set in `configs`."""
    endpoint = (endpoint or configs.endpoint).strip()
    api_key = (api_key or configs.api_key).strip()
    if configs.is_azure:
        # Azure OpenAI uses an `api-key` header and an `api-version` query string
        return AzureOpenAI(
            azure_endpoint=endpoint,
            api_key=api_key,
            api_version=configs.api_version,
            timeout=configs.timeout,
            max_retries=0,
        )
    return OpenAI(api_key=api_key, timeout=configs.timeout, max_retries=0)


@dataclass
class SpeechAndTextConfigs:
    """Configs shared by the pipeline's API calls."""

    openai_client: OpenAI
    model: str


@dataclass
class SpeechToText(SpeechAndTextConfigs):
    """Class for converting speech (a WAV file) to text."""

    speech: bytes = b""
    _text: Optional[str] = field(init=False, default=None)

    @property
    def text(self) -> str:
        """Return the text from the speech."""
        if self._text is None:
            self._text = self._stt()
        return self._text

    def _stt(self) -> str:
        if len(self.speech) <= WAV_HEADER_SIZE:
            logger.debug("No speech recorded")
            return ""

        conversion_id = uuid.uuid4()
        logger.debug("Converting audio to text. Process {}.", conversion_id)
        transcript = self.openai_client.audio.transcriptions.create(
            model=self.model, file=("audio.wav", self.speech, "audio/wav")
        )
        text = transcript.text.strip()
        logger.opt(colors=True).debug(
            "<yellow>{}: Done with STT: {}</yellow>", conversion_id, text
        )
        return text


@dataclass
class ChatReply(SpeechAndTextConfigs):
    """Class for getting the chat model's reply to a message."""

    message: str = ""
    system_message: str = ""
    max_tokens: int = 800
    _text: Optional[str] = field(init=False, default=None)

    @property
    def text(self) -> str:
        """Return the reply's text."""
        if self._text is None:
            self._text = self._reply()
        return self._text

    def _reply(self) -> str:
        logger.debug("Getting response to '{}'...", self.message)
        response = self.openai_client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": self.system_message},
                {"role": "user", "content": self.message},
            ],
            max_tokens=self.max_tokens,
            stream=False,
        )
        return response.choices[0].message.content or ""


@dataclass
class TextToSpeech(SpeechAndTextConfigs):
    """Class for converting text to speech."""

    text: str = ""
    voice: str = "alloy"
    response_format: str = "mp3"
    _speech: Optional[bytes] = field(init=False, default=None)

    def __post_init__(self):
        self.text = self.text.strip()

    @property
    def speech(self) -> bytes:
        """Return the speech, encoded as `response_format`."""
        if self._speech is None:
            self._speech = self._tts()
        return self._speech

    @property
    def samples(self) -> np.ndarray:
        """Return the speech as int16 samples at the package's sample rate."""
        if self.response_format == "pcm":
            # Raw PCM16 from the API is already 24 kHz, mono
            return np.frombuffer(self.speech, dtype="<i2")

        audio = AudioSegment.from_file(
            io.BytesIO(self.speech), format=self.response_format
        )
        audio = (
            audio.set_frame_rate(GeneralDefinitions.SAMPLE_RATE)
            .set_channels(GeneralDefinitions.N_CHANNELS)
            .set_sample_width(GeneralDefinitions.SAMPLE_WIDTH)
        )
        return np.frombuffer(audio.raw_data, dtype="<i2")

    def _tts(self) -> bytes:
        logger.debug("Running TTS on text '{}'", self.text)
        response = self.openai_client.audio.speech.create(
            input=self.text,
            model=self.model,
            voice=self.voice,
            response_format=self.response_format,
        )

        audio_buffer = io.BytesIO()
        for audio_stream_chunk in response.iter_bytes(chunk_size=4096):
            audio_buffer.write(audio_stream_chunk)
        logger.debug("Done with TTS for '{}'", self.text)

        return audio_buffer.getvalue()


@dataclass
class PipelineExchange:
    """A question asked by voice and the assistant's reply."""

    transcript: str
    reply: str = ""
    tts: Optional[TextToSpeech] = None


class DiscretePipeline(AlternativeConstructors):
    """Answer recorded questions with three API calls: STT, chat and TTS."""

    default_configs = PipelineConfigs()

    def __init__(
        self,
        configs: PipelineConfigs = default_configs,
        recorder_factory=Recorder,
        player_factory=Player,
    ):
        """Initializes a pipeline instance.

        Args:
            configs (PipelineConfigs, optional): The pipeline's configurations.
            recorder_factory (callable, optional): Returns a new `Recorder`.
            player_factory (callable, optional): Returns a new `Player`.
        """
        self.id = str(uuid.uuid4())
        logger.debug("Init pipeline {}", self.id)

        self.configs = configs
        self.display_log = DisplayLog()
        self.audio_buffer_manager = WavAssembler()
        self._recorder_factory = recorder_factory
        self._player_factory = player_factory

    @property
    def openai_client(self) -> OpenAI:
        """Return the client used for speech-to-text and chat."""
        client = getattr(self, "_openai_client", None)
        if client is None:
            client = make_openai_client(self.configs)
            self._openai_client = client
        return client

    @property
    def tts_openai_client(self) -> OpenAI:
        """Return the client used for text-to-speech."""
        client = getattr(self, "_tts_openai_client", None)
        if client is None:
            client = make_openai_client(
                self.configs,
                endpoint=self.configs.tts_endpoint,
                api_key=self.configs.tts_api_key,
            )
            self._tts_openai_client = client
        return client

    def recordings_dir(self):
        """Return the directory where recorded questions are saved."""
        directory = GeneralDefinitions.PACKAGE_CACHE_DIRECTORY / "recordings"
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def start_recording(self):
        """Start recording a new question."""
        self.audio_buffer_manager.start()

    def append_data(self, data: bytes):
        """Add microphone audio to the question being recorded."""
        self.audio_buffer_manager.append_data(data)

    def stop_recording(self) -> bytes:
        """Stop recording and return the question as a WAV file."""
        wav = self.audio_buffer_manager.stop()
        if self.configs.save_recordings:
            fpath = self.recordings_dir() / f"{datetime.now().isoformat()}.wav"
            fpath.write_bytes(wav)
            logger.debug("Recording saved to {}", fpath)
        return wav

    def stt(self, speech: bytes):
        """Convert audio to text."""
        return SpeechToText(
            openai_client=self.openai_client,
            model=self.configs.stt_deployment.strip(),
            speech=speech,
        )

    def chat(self, message: str):
        """Get the chat model's reply to `message`."""
        return ChatReply(
            openai_client=self.openai_client,
            model=self.configs.chat_deployment.strip(),
            message=message,
            system_message=self.configs.system_message,
            max_tokens=self.configs.max_tokens,
        )

    def tts(self, text: str):
        """Convert text to audio."""
        return TextToSpeech(
            openai_client=self.tts_openai_client,
            model=self.configs.tts_deployment.strip(),
            text=text,
            voice=self.configs.tts_voice,
            response_format=self.configs.tts_response_format,
        )

    def respond(self, speech: bytes) -> PipelineExchange:
        """Transcribe the question in `speech`, get a reply and convert it to audio."""
        transcript = self.stt(speech).text
        if not transcript:
            logger.info("No speech detected")
            return PipelineExchange(transcript="")
        self.display_log.append(f"User: {transcript}")

        reply = self.chat(transcript).text
        self.display_log.append(f"Assistant: {reply}")

        tts = self.tts(reply)
        _ = tts.speech  # Trigger the TTS conversion
        return PipelineExchange(transcript=transcript, reply=reply, tts=tts)

    async def play(self, tts: TextToSpeech):
        """Play the speech in `tts` and wait until it is done."""
        samples = await asyncio.to_thread(lambda: tts.samples)
        player = self._player_factory()
        player.init()
        try:
            player.play(samples)
            while player.is_busy:
                await asyncio.sleep(0.1)
        finally:
            player.close()

    async def record(self, commands: asyncio.Queue) -> Optional[str]:
        """Record a question until a command arrives. Return the command."""
        recorder = self._recorder_factory()
        self.start_recording()
        recorder.start()

        async def pump_audio():
            while (data := await recorder.audio_queue.get()) is not None:
                self.append_data(data)

        audio_pump_task = asyncio.create_task(pump_audio())
        command = await commands.get()
        recorder.stop()
        await audio_pump_task
        return command

    async def interact(self, commands: asyncio.Queue):
        """Answer questions until the user quits.

        Each line read from `commands` starts or stops a recording. A `None`, "quit"
        or "exit" ends the interaction. Any failure also ends it.

        Raises:
            MissingConfigurationError: If a field needed to connect is missing.
        """
        # ruff: noqa: T201
        self.configs.check_required_fields()
        self.display_log.clear()
        while True:
            print("\nPress Enter to ask a question, or type 'quit' to exit.")
            command = await commands.get()
            if command is None or command.strip().lower() in ("quit", "exit"):
                break

            print("Listening... press Enter when done.")
            try:
                command = await self.record(commands)
            except MicrophoneUnavailableError as error:
                logger.opt(exception=True).debug(error)
                logger.error("Failed to access the microphone: {}", error)
                break

            try:
                exchange = await asyncio.to_thread(self.respond, self.stop_recording())
                if exchange.tts is not None:
                    await self.play(exchange.tts)
            except (openai.OpenAIError, CouldntDecodeError, OSError) as error:
                logger.opt(exception=True).debug(error)
                logger.error("Could not get a response right now: {}", error)
                self.display_log.append(f"[Error]: {error}")
                break

            if command is None:
                break
        logger.debug("Leaving pipeline {}", self.id)
