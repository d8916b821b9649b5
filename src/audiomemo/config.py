from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

from audiomemo.devices import resolve_device
from audiomemo.models import TranscribeOptions

logger = logging.getLogger(__name__)

CLOUD_BACKENDS = ("deepgram", "openai", "mistral")


@dataclass(slots=True)
class RecordConfig:
    format: str = "ogg"
    sample_rate: int = 48000
    channels: int = 1
    output_dir: str = "~/Recordings"
    device: str = ""


@dataclass(slots=True)
class WhisperConfig:
    model: str = "base"
    binary: str = "whisper"
    hf_token: str = ""
    hf_token_file: str = ""
    diarize: bool = False


@dataclass(slots=True)
class DeepgramConfig:
    api_key: str = ""
    api_key_file: str = ""
    model: str = "nova-3"
    diarize: bool = True
    smart_format: bool = True
    punctuate: bool = True
    filler_words: bool = True
    numerals: bool = True


@dataclass(slots=True)
class OpenAIConfig:
    api_key: str = ""
    api_key_file: str = ""
    model: str = "gpt-4o-transcribe"


@dataclass(slots=True)
class MistralConfig:
    api_key: str = ""
    api_key_file: str = ""
    model: str = "voxtral-mini-latest"


@dataclass(slots=True)
class TranscribeConfig:
    default_backend: str = ""
    language: str = ""
    output_format: str = "text"
    auto_order: list[str] = field(default_factory=lambda: list(CLOUD_BACKENDS))
    whisper: WhisperConfig = field(default_factory=WhisperConfig)
    deepgram: DeepgramConfig = field(default_factory=DeepgramConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    mistral: MistralConfig = field(default_factory=MistralConfig)


@dataclass(slots=True)
class Config:
    record: RecordConfig = field(default_factory=RecordConfig)
    devices: dict[str, str] = field(default_factory=dict)
    device_groups: dict[str, list[str]] = field(default_factory=dict)
    transcribe: TranscribeConfig = field(default_factory=TranscribeConfig)

    def resolve_device(self, name: str) -> list[str]:
        return resolve_device(name, self.devices, self.device_groups)

    def resolve_output_dir(self) -> Path:
        return Path(self.record.output_dir).expanduser()

    def api_key(self, backend: str) -> str:
        return getattr(self.transcribe, backend).api_key

    def apply_env(self, environ: Mapping[str, str] | None = None) -> None:
        """Overlay API keys and the HF token from the environment.

        Priority: NAME env var, then NAME_FILE env var, then the value set in
        the config file, then the *_file path from the config file.
        """
        env = os.environ if environ is None else environ
        sections = [
            (self.transcribe.deepgram, "api_key", "DEEPGRAM_API_KEY"),
            (self.transcribe.openai, "api_key", "OPENAI_API_KEY"),
            (self.transcribe.mistral, "api_key", "MISTRAL_API_KEY"),
            (self.transcribe.whisper, "hf_token", "HF_TOKEN"),
        ]
        for section, attr, var in sections:
            if env.get(var):
                setattr(section, attr, env[var])
            elif env.get(f"{var}_FILE"):
                setattr(section, attr, _read_key_file(Path(env[f"{var}_FILE"])))
            elif not getattr(section, attr) and getattr(section, f"{attr}_file"):
                setattr(section, attr, _read_key_file(Path(getattr(section, f"{attr}_file"))))

    def options_for(self, backend: str, **overrides: Any) -> TranscribeOptions:
        """TranscribeOptions seeded with ``backend``'s configured flag defaults.

        Only the selected backend's defaults apply, so a Deepgram diarize
        default never leaks into an OpenAI call. Explicit overrides that are
        None are ignored.
        """
        values: dict[str, Any] = {
            "language": self.transcribe.language,
            "format": self.transcribe.output_format,
        }
        if backend == "deepgram":
            dg = self.transcribe.deepgram
            values.update(
                diarize=dg.diarize,
                smart_format=dg.smart_format,
                punctuate=dg.punctuate,
                filler_words=dg.filler_words,
                numerals=dg.numerals,
            )
        elif backend == "whisperx":
            values["diarize"] = self.transcribe.whisper.diarize
        values.update({key: value for key, value in overrides.items() if value is not None})
        return TranscribeOptions(**values)


def _read_key_file(path: Path) -> str:
    try:
        return path.expanduser().read_text(encoding="utf-8").strip()
    except OSError as exc:
        logger.warning("Could not read key file %s: %s", path, exc)
        return ""


def default_config_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "audiomemo" / "config.toml"


def _merge(target: Any, data: Mapping[str, Any]) -> None:
    known = {item.name for item in fields(target)}
    for key, value in data.items():
        if key not in known:
            logger.warning("Ignoring unknown config key %r", key)
            continue
        current = getattr(target, key)
        if is_dataclass(current) and isinstance(value, Mapping):
            _merge(current, value)
        else:
            setattr(target, key, value)


def load_config(path: Path | None = None) -> Config:
    path = path or default_config_path()
    config = Config()
    if not path.exists():
        logger.debug("No config file at %s; using defaults", path)
        return config
    with path.open("rb") as handle:
        data = tomllib.load(handle)
    _merge(config, data)
    logger.debug("Loaded config from %s", path)
    return config
