#!/usr/bin/env python3
"""Terminal voice assistant for OpenAI and Azure OpenAI realtime and speech APIs."""
import os
import sys
import uuid
from dataclasses import dataclass
from importlib.metadata import metadata, version
from pathlib import Path

from loguru import logger

logger.remove()
logger.add(
    sys.stderr,
    level=os.environ.get("LOGLEVEL", os.environ.get("LOGURU_LEVEL", "INFO")),
)


@dataclass
class GeneralDefinitions:
    """General definitions for the package."""

    # Main package info
    RUN_ID = uuid.uuid4().hex
    PACKAGE_NAME = __name__
    VERSION = version(__name__)
    PACKAGE_DESCRIPTION = metadata(__name__)["Summary"]

    # Main package directories
    PACKAGE_DIRECTORY = Path(__file__).parent
    PACKAGE_CACHE_DIRECTORY = Path.home() / ".cache" / PACKAGE_NAME

    # Audio format shared by the realtime API, the recorder and the player:
    # signed 16-bit little-endian PCM, mono, 24 kHz
    SAMPLE_RATE = 24000
    N_CHANNELS = 1
    SAMPLE_WIDTH = 2  # bytes
    # 2400 samples, i.e., 100 ms of audio
    CHUNK_SIZE_BYTES = 4800
