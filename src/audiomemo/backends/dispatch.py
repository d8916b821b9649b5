from __future__ import annotations

import logging
from typing import cast

from audiomemo.backends.base import Backend
from audiomemo.backends.deepgram import DeepgramBackend
from audiomemo.backends.mistral import MistralBackend
from audiomemo.backends.openai_api import OpenAIBackend
from audiomemo.backends.whisper import Variant, WhisperBackend, detect_local_backend
from audiomemo.config import CLOUD_BACKENDS, Config
from audiomemo.errors import ConfigurationError, MissingAPIKeyError, UnknownBackendError

logger = logging.getLogger(__name__)

ENV_VARS = {
    "deepgram": "DEEPGRAM_API_KEY",
    "openai": "OPENAI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
}

# Binary used when a local variant is requested by name.
VARIANT_BINARIES = {
    "whisper-cpp": "whisper-cli",
    "whisperx": "whisperx",
    "ffmpeg-whisper": "ffmpeg",
}

BACKEND_NAMES = ("whisper", *VARIANT_BINARIES, *CLOUD_BACKENDS)


def _cloud_backend(config: Config, name: str) -> Backend:
    section = getattr(config.transcribe, name)
    if not section.api_key:
        raise MissingAPIKeyError(name, ENV_VARS[name])
    if name == "deepgram":
        return DeepgramBackend(section.api_key, section.model)
    if name == "openai":
        return OpenAIBackend(section.api_key, section.model)
    return MistralBackend(section.api_key, section.model)


def create_backend(config: Config, name: str) -> Backend:
    whisper = config.transcribe.whisper
    if name in CLOUD_BACKENDS:
        return _cloud_backend(config, name)
    if name == "whisper":
        return WhisperBackend(whisper.binary, whisper.model, hf_token=whisper.hf_token)
    if name in VARIANT_BINARIES:
        return WhisperBackend(
            VARIANT_BINARIES[name],
            whisper.model,
            hf_token=whisper.hf_token,
            variant=cast(Variant, name),
        )
    raise UnknownBackendError(name)


def dispatch(config: Config, override: str = "") -> Backend:
    """Pick the transcription backend.

    An explicit ``override`` wins, then the configured default backend, then
    the first cloud backend in ``transcribe.auto_order`` with an API key, then
    a local whisper on PATH.
    """
    name = override or config.transcribe.default_backend
    if name:
        backend = create_backend(config, name)
        logger.info("Using %s backend", backend.name)
        return backend

    for cloud in config.transcribe.auto_order:
        if cloud not in CLOUD_BACKENDS:
            raise UnknownBackendError(cloud)
        if config.api_key(cloud):
            logger.info("Auto-selected %s (API key configured)", cloud)
            return _cloud_backend(config, cloud)

    local = detect_local_backend(
        config.transcribe.whisper.model, hf_token=config.transcribe.whisper.hf_token
    )
    if local is not None:
        logger.info("Auto-selected local %s", local.name)
        return local

    raise ConfigurationError(
        "no transcription backend available. Set an API key "
        "(DEEPGRAM_API_KEY, OPENAI_API_KEY, MISTRAL_API_KEY) or install whisper locally"
    )
