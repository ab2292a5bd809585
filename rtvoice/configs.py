#!/usr/bin/env python3
"""Registration and validation of options."""
import argparse
import json
import os
import types
import typing
from pathlib import Path
from typing import ClassVar, Literal, Optional, get_args, get_origin

from pydantic import BaseModel, Field, model_validator

from .general_utils import MissingConfigurationError

VOICES = (
    "alloy",
    "ash",
    "ballad",
    "coral",
    "echo",
    "fable",
    "onyx",
    "nova",
    "sage",
    "shimmer",
    "verse",
)

DEFAULT_INSTRUCTIONS = (
    "You are an experienced travel planner. You can propose the best plan according "
    "to the interests and preferences of the person asking.\n"
    "During the conversation, please observe the following:\n"
    "- When you finish speaking, do not speak again until the person asking replies. "
    "Keep the conversation going back and forth.\n"
    "- If you don't know something, say clearly that you don't know."
)


class BaseConfigModel(BaseModel, extra="forbid"):
    """Base model for configuring options."""

    @classmethod
    def get_allowed_values(cls, field: str):
        """Return a tuple of allowed values for `field`."""
        annotation = cls._get_field_param(field=field, param="annotation")
        if get_origin(annotation) is typing.Union:
            annotation = get_args(annotation)[0]
        if isinstance(annotation, type(Literal[""])):
            return get_args(annotation)
        return None

    @classmethod
    def get_type(cls, field: str):
        """Return type of `field`."""
        type_hint = typing.get_type_hints(cls)[field]
        if isinstance(type_hint, type):
            if isinstance(type_hint, types.GenericAlias):
                return get_origin(type_hint)
            return type_hint
        type_hint_first_arg = get_args(type_hint)[0]
        if isinstance(type_hint_first_arg, type):
            return type_hint_first_arg
        return None

    @classmethod
    def get_default(cls, field: str):
        """Return allowed value(s) for `field`."""
        return cls.model_fields[field].get_default()

    @classmethod
    def get_description(cls, field: str):
        """Return description of `field`."""
        return cls._get_field_param(field=field, param="description")

    @classmethod
    def _get_field_param(cls, field: str, param: str):
        """Return param `param` of field `field`."""
        return getattr(cls.model_fields[field], param, None)

    def export(self, fpath: Path):
        """Export the model's data to a file readable via `--config-file`."""
        with open(fpath, "w") as configs_file:
            configs_file.write(self.model_dump_json(indent=2, exclude_unset=True))


class ApiConnectionConfigs(BaseConfigModel):
    """Model for the options needed to reach the hosted API."""

    # Environment variables read by `from_env`, in order of precedence
    env_vars: ClassVar[dict[str, tuple[str, ...]]] = {
        "endpoint": ("AZURE_OPENAI_ENDPOINT",),
        "api_key": ("AZURE_OPENAI_API_KEY", "OPENAI_API_KEY"),
    }

    endpoint: str = Field(
        default="",
        description="Resource/endpoint URL. Required when using Azure OpenAI",
    )
    api_key: str = Field(default="", description="API key for the hosted API")
    is_azure: Optional[bool] = Field(
        default=None,
        description="Use Azure OpenAI instead of OpenAI. If not set, Azure OpenAI is "
        "used whenever the endpoint contains 'azure'",
    )
    api_version: str = Field(
        default="2024-10-01-preview",
        description="API version sent as query string to Azure OpenAI",
    )

    @model_validator(mode="after")
    def detect_provider(self):
        if self.is_azure is None:
            self.is_azure = "azure" in self.endpoint
        return self

    @classmethod
    def from_env(cls, **overrides):
        """Return an instance with values read from the environment.

        Values passed in `overrides` take precedence over the environment.
        """
        values = {}
        for field_name, env_var_names in cls.env_vars.items():
            for env_var_name in env_var_names:
                env_value = os.environ.get(env_var_name, "").strip()
                if env_value:
                    values[field_name] = env_value
                    break
        values.update(overrides)
        return cls.model_validate(values)

    @classmethod
    def from_cli_args(cls, cli_args: argparse.Namespace):
        """Return an instance from CLI args, a config file and the environment."""
        file_configs = {}
        config_file = getattr(cli_args, "config_file", None)
        if config_file is not None:
            with open(config_file, "r") as configs_file:
                file_configs = json.load(configs_file)
        cli_configs = {
            k: v
            for k, v in vars(cli_args).items()
            if k in cls.model_fields and v is not None
        }
        return cls.from_env(**{**file_configs, **cli_configs})

    @property
    def provider_name(self):
        """Return the name of the API provider."""
        return "Azure OpenAI" if self.is_azure else "OpenAI"

    def check_required_fields(self):
        """Raise `MissingConfigurationError` if a field needed to connect is empty."""
        if self.is_azure and not self.endpoint.strip():
            raise MissingConfigurationError(
                "An endpoint is required when using Azure OpenAI"
            )
        if not self.api_key.strip():
            raise MissingConfigurationError("An API key is required")


class SessionOptions(BaseConfigModel):
    """Model for the options sent to the realtime API once per connection."""

    instructions: str = Field(
        default=DEFAULT_INSTRUCTIONS,
        description="System instructions for the model",
    )
    temperature: Optional[float] = Field(
        default=None,
        description="Sampling temperature. Nominal range: 0.6-1.2 (API default: 0.8)",
    )
    voice: Optional[Literal[VOICES]] = Field(
        default=None, description="Voice used by the model when replying"
    )
    transcription_model: str = Field(
        default="whisper-1",
        description="Model used to transcribe the user's speech",
    )
    turn_detection: Literal["server_vad", "semantic_vad"] = Field(
        default="server_vad",
        description="How the server detects the end of the user's turn",
    )

    def session_update_event(self) -> dict:
        """Return the `session.update` message to be sent when connecting."""
        session = {
            "turn_detection": {"type": self.turn_detection},
            "input_audio_transcription": {"model": self.transcription_model},
        }
        if self.instructions:
            session["instructions"] = self.instructions
        if self.temperature is not None:
            session["temperature"] = self.temperature
        if self.voice:
            session["voice"] = self.voice
        return {"type": "session.update", "session": session}


class RealtimeConfigs(ApiConnectionConfigs, SessionOptions):
    """Model for the realtime voice session's configuration options."""

    env_vars: ClassVar[dict[str, tuple[str, ...]]] = {
        **ApiConnectionConfigs.env_vars,
        "deployment_or_model": ("AZURE_OPENAI_DEPLOYMENT", "OPENAI_MODEL"),
    }

    deployment_or_model: str = Field(
        default="",
        description="Azure OpenAI deployment or OpenAI model, "
        "e.g. gpt-4o-realtime-preview",
    )

    def check_required_fields(self):
        """Raise `MissingConfigurationError` if a field needed to connect is empty."""
        endpoint = self.endpoint.strip()
        deployment_or_model = self.deployment_or_model.strip()
        if self.is_azure and not (endpoint and deployment_or_model):
            raise MissingConfigurationError(
                "Endpoint and deployment are required when using Azure OpenAI"
            )
        if not self.is_azure and not deployment_or_model:
            raise MissingConfigurationError("A model is required when using OpenAI")
        if not self.api_key.strip():
            raise MissingConfigurationError("An API key is required")


class PipelineConfigs(ApiConnectionConfigs):
    """Model for the speech-to-text -> chat -> text-to-speech pipeline's options."""

    env_vars: ClassVar[dict[str, tuple[str, ...]]] = {
        **ApiConnectionConfigs.env_vars,
        "stt_deployment": ("AZURE_OPENAI_STT_DEPLOYMENT",),
        "chat_deployment": ("AZURE_OPENAI_CHAT_DEPLOYMENT",),
        "tts_deployment": ("AZURE_OPENAI_TTS_DEPLOYMENT",),
        "tts_endpoint": ("AZURE_OPENAI_TTS_ENDPOINT",),
        "tts_api_key": ("AZURE_OPENAI_TTS_API_KEY",),
    }

    api_version: str = Field(
        default="2025-03-01-preview",
        description="API version sent as query string to Azure OpenAI",
    )
    stt_deployment: str = Field(
        default="",
        description="Deployment/model used for speech-to-text, "
        "e.g. gpt-4o-mini-transcribe",
    )
    chat_deployment: str = Field(
        default="", description="Deployment/model used for the chat completion"
    )
    tts_deployment: str = Field(
        default="", description="Deployment/model used for text-to-speech, e.g. tts-1"
    )
    tts_endpoint: str = Field(
        default="",
        description="Endpoint used for text-to-speech. Defaults to the main endpoint",
    )
    tts_api_key: str = Field(
        default="",
        description="API key used for text-to-speech. Defaults to the main API key",
    )
    system_message: str = Field(
        default=DEFAULT_INSTRUCTIONS, description="System message for the chat model"
    )
    max_tokens: int = Field(
        default=800, gt=0, description="Maximum number of tokens in the chat reply"
    )
    tts_voice: Literal[VOICES] = Field(
        default="alloy", description="Voice to use for text-to-speech"
    )
    tts_response_format: Literal["mp3", "wav", "pcm"] = Field(
        default="mp3", description="Audio format requested from the text-to-speech API"
    )
    timeout: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Timeout for API requests in seconds. No timeout if not set",
    )
    save_recordings: Optional[bool] = Field(
        default=False,
        description="Save the recorded questions as WAV files in the cache directory",
    )

    def check_required_fields(self):
        """Raise `MissingConfigurationError` if a field needed to connect is empty."""
        super().check_required_fields()
        for field_name in ["stt_deployment", "chat_deployment", "tts_deployment"]:
            if not getattr(self, field_name).strip():
                option = field_name.replace("_", "-")
                raise MissingConfigurationError(f"Option `--{option}` is required")
