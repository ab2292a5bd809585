import pytest
from pydantic import ValidationError

from rtvoice.argparse_wrapper import get_parsed_args
from rtvoice.configs import PipelineConfigs, RealtimeConfigs, SessionOptions
from rtvoice.general_utils import MissingConfigurationError


@pytest.mark.parametrize(
    ("endpoint", "is_azure", "expected"),
    [
        ("", None, False),
        ("https://foo.openai.azure.com", None, True),
        ("https://api.openai.com/v1", None, False),
        ("https://my-proxy.example.com", True, True),
    ],
)
def test_provider_detection(endpoint, is_azure, expected):
    configs = RealtimeConfigs(endpoint=endpoint, is_azure=is_azure)
    assert configs.is_azure is expected
    assert configs.provider_name == ("Azure OpenAI" if expected else "OpenAI")


def test_from_env(monkeypatch):
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", " https://foo.openai.azure.com ")
    monkeypatch.setenv("AZURE_OPENAI_API_KEY", "AZURE_KEY")
    monkeypatch.setenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o-realtime")

    configs = RealtimeConfigs.from_env(deployment_or_model="other-deployment")
    assert configs.endpoint == "https://foo.openai.azure.com"
    assert configs.api_key == "AZURE_KEY"
    assert configs.deployment_or_model == "other-deployment"
    assert configs.is_azure


def test_cli_args_take_precedence_over_config_file(tmp_path):
    config_file = tmp_path / "configs.json"
    RealtimeConfigs(api_key="FILE_KEY", deployment_or_model="file-model").export(
        config_file
    )
    args = get_parsed_args(
        argv=["realtime", "--config-file", str(config_file), "--api-key", "CLI_KEY"]
    )
    configs = RealtimeConfigs.from_cli_args(args)
    assert configs.api_key == "CLI_KEY"
    assert configs.deployment_or_model == "file-model"


def test_unset_cli_args_dont_override_env():
    args = get_parsed_args(argv=["realtime", "--voice", "echo"])
    configs = RealtimeConfigs.from_cli_args(args)
    assert configs.api_key == "INVALID_API_KEY"
    assert configs.voice == "echo"


def test_session_update_event_defaults():
    session = SessionOptions().session_update_event()["session"]
    assert session["turn_detection"] == {"type": "server_vad"}
    assert session["input_audio_transcription"] == {"model": "whisper-1"}
    assert session["instructions"]
    assert "temperature" not in session
    assert "voice" not in session


def test_session_update_event_optional_fields():
    options = SessionOptions(instructions="", temperature=0.9, voice="coral")
    session = options.session_update_event()["session"]
    assert "instructions" not in session
    assert session["temperature"] == 0.9
    assert session["voice"] == "coral"


def test_invalid_voice():
    with pytest.raises(ValidationError, match="Input should be"):
        SessionOptions(voice="robot")


@pytest.mark.parametrize(
    ("configs", "message"),
    [
        (
            RealtimeConfigs(endpoint="https://foo.openai.azure.com", api_key="foo"),
            "Endpoint and deployment are required",
        ),
        (RealtimeConfigs(api_key="foo"), "A model is required"),
        (RealtimeConfigs(deployment_or_model="gpt-4o-realtime"), "An API key"),
        (
            PipelineConfigs(api_key="foo", stt_deployment="whisper-1"),
            "--chat-deployment",
        ),
        (PipelineConfigs(is_azure=True, api_key="foo"), "An endpoint is required"),
    ],
)
def test_check_required_fields(configs, message):
    with pytest.raises(MissingConfigurationError, match=message):
        configs.check_required_fields()


def test_required_fields_are_stripped():
    configs = RealtimeConfigs(api_key="   ", deployment_or_model="gpt-4o-realtime")
    with pytest.raises(MissingConfigurationError, match="An API key"):
        configs.check_required_fields()
