import asyncio

import lorem
import numpy as np
import pytest
from _pytest.logging import LogCaptureFixture
from loguru import logger

import rtvoice
from rtvoice.configs import PipelineConfigs, RealtimeConfigs
from rtvoice.realtime_session import RealtimeSession
from rtvoice.speech_pipeline import DiscretePipeline


@pytest.fixture()
def caplog(caplog: LogCaptureFixture):
    """Override the default `caplog` fixture to propagate Loguru to the caplog handler."""
    # Source: <https://loguru.readthedocs.io/en/stable/resources/migration.html
    #          #replacing-caplog-fixture-from-pytest-library>
    handler_id = logger.add(
        caplog.handler,
        format="{message}",
        level=0,
        filter=lambda record: record["level"].no >= caplog.handler.level,
        enqueue=False,  # Set to 'True' if your test is spawning child processes.
    )
    yield caplog
    logger.remove(handler_id)


# Register markers and constants
def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "no_chat_completion_create_mocking: do not mock the chat completions API",
    )

    pytest.original_package_cache_directory = (
        rtvoice.GeneralDefinitions.PACKAGE_CACHE_DIRECTORY
    )


@pytest.fixture(autouse=True)
def _set_env(monkeypatch):
    # Make sure we don't consume our tokens in tests
    for env_var in [
        "AZURE_OPENAI_ENDPOINT",
        "AZURE_OPENAI_API_KEY",
        "AZURE_OPENAI_DEPLOYMENT",
        "AZURE_OPENAI_STT_DEPLOYMENT",
        "AZURE_OPENAI_CHAT_DEPLOYMENT",
        "AZURE_OPENAI_TTS_DEPLOYMENT",
        "AZURE_OPENAI_TTS_ENDPOINT",
        "AZURE_OPENAI_TTS_API_KEY",
        "OPENAI_MODEL",
    ]:
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "INVALID_API_KEY")


@pytest.fixture(autouse=True)
def _mocked_general_constants(tmp_path, mocker):
    mocker.patch("rtvoice.GeneralDefinitions.PACKAGE_CACHE_DIRECTORY", tmp_path / "cache")


@pytest.fixture()
def pcm_chunk():
    """100 ms of a 440 Hz tone as PCM16 bytes."""
    sample_rate = rtvoice.GeneralDefinitions.SAMPLE_RATE
    time = np.arange(sample_rate // 10) / sample_rate
    samples = (0.3 * 32767 * np.sin(2 * np.pi * 440 * time)).astype("<i2")
    return samples.tobytes()


@pytest.fixture()
def mock_wav_bytes_string():
    """Mock a WAV file as a bytes string."""
    return (
        b"RIFF$\x00\x00\x00WAVEfmt \x10\x00\x00\x00\x01\x00\x01\x00\x00\x04\x00"
        b"\x00\x00\x04\x00\x00\x01\x00\x08\x00data\x00\x00\x00\x00"
    )


@pytest.fixture(autouse=True)
def _openai_api_request_mockers(request, mocker, mock_wav_bytes_string):
    """Mockers for OpenAI API requests. We don't want to consume our tokens in tests."""

    def _mock_openai_chat_completion_create(*args, **kwargs):  # noqa: ARG001
        """Mock the chat completions API. Reply with lorem ipsum instead."""
        completion = type("Completion", (), {})
        completion_choice = type("CompletionChoice", (), {})
        completion_message = type("CompletionMessage", (), {})
        completion_message.content = lorem.get_sentence()
        completion_choice.message = completion_message
        completion.choices = [completion_choice]
        return completion

    if "no_chat_completion_create_mocking" not in request.keywords:
        mocker.patch(
            "openai.resources.chat.completions.Completions.create",
            new=_mock_openai_chat_completion_create,
        )

    mock_openai_tts_response = type("mock_openai_tts_response", (), {})

    def _mock_iter_bytes(*args, **kwargs):  # noqa: ARG001
        return [mock_wav_bytes_string]

    mock_openai_tts_response.iter_bytes = _mock_iter_bytes
    mocker.patch(
        "openai.resources.audio.speech.Speech.create",
        return_value=mock_openai_tts_response,
    )

    mock_transcription = type("MockTranscription", (), {})
    mock_transcription.text = "patched"
    mocker.patch(
        "openai.resources.audio.transcriptions.Transcriptions.create",
        return_value=mock_transcription,
    )


class FakeConnection:
    """In-memory stand-in for a realtime API connection.

    Server events are fed through `push`. Iteration ends once `close` is called.
    """

    def __init__(self, events=(), fail_on_send=None):
        self.sent = []
        self.closed = False
        self.fail_on_send = fail_on_send
        self._events = asyncio.Queue()
        for event in events:
            self._events.put_nowait(event)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    def push(self, event):
        self._events.put_nowait(event)

    async def send(self, event):
        if self.fail_on_send is not None:
            raise self.fail_on_send
        self.sent.append(event)

    async def close(self):
        if not self.closed:
            self.closed = True
            self._events.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        event = await self._events.get()
        if event is None:
            raise StopAsyncIteration
        if isinstance(event, BaseException):
            raise event
        return event


class FakeRecorder:
    """Recorder that never touches the audio hardware.

    The blocks passed at init are queued as soon as recording starts.
    """

    def __init__(self, blocks=(), error=None):
        self.audio_queue = asyncio.Queue()
        self.blocks = list(blocks)
        self.error = error
        self.started = False
        self.stopped = False

    def start(self):
        if self.error is not None:
            raise self.error
        self.started = True
        for block in self.blocks:
            self.audio_queue.put_nowait(block)

    def stop(self):
        self.stopped = True
        self.audio_queue.put_nowait(None)


class FakePlayer:
    """Player that keeps what it was asked to play."""

    def __init__(self):
        self.played = []
        self.n_clears = 0
        self.closed = False
        self.is_busy = False

    def init(self):
        pass

    def play(self, samples):
        self.played.append(samples)

    def clear(self):
        self.n_clears += 1

    def close(self):
        self.closed = True


@pytest.fixture()
def fake_connection():
    return FakeConnection()


@pytest.fixture()
def make_fake_connection():
    """Return a function that creates in-memory connections fed with `events`."""

    def _make_fake_connection(events=()):
        return FakeConnection(events=events)

    return _make_fake_connection


@pytest.fixture()
def realtime_configs():
    return RealtimeConfigs(
        api_key="INVALID_API_KEY", deployment_or_model="gpt-4o-realtime"
    )


@pytest.fixture()
def make_realtime_session(realtime_configs, fake_connection):
    """Return a function that creates sessions using in-memory connection and audio."""

    def _make_realtime_session(fail_on_send=None, recorder_error=None, connections=None):
        fake_connection.fail_on_send = fail_on_send
        # Each start of the session opens the next of `connections`
        connections = [fake_connection] if connections is None else list(connections)

        def _connection_factory(_configs):
            if len(connections) > 1:
                return connections.pop(0)
            return connections[0]

        return RealtimeSession(
            configs=realtime_configs,
            connection_factory=_connection_factory,
            recorder_factory=lambda: FakeRecorder(error=recorder_error),
            player_factory=FakePlayer,
        )

    return _make_realtime_session


@pytest.fixture()
def realtime_session(make_realtime_session):
    return make_realtime_session()


@pytest.fixture(params=["wav", "pcm"])
def pipeline_configs(request):
    return PipelineConfigs(
        api_key="INVALID_API_KEY",
        stt_deployment="whisper-1",
        chat_deployment="gpt-4o-mini",
        tts_deployment="tts-1",
        tts_response_format=request.param,
    )


@pytest.fixture()
def discrete_pipeline(pipeline_configs, pcm_chunk):
    return DiscretePipeline(
        configs=pipeline_configs,
        recorder_factory=lambda: FakeRecorder(blocks=[pcm_chunk, pcm_chunk]),
        player_factory=FakePlayer,
    )
