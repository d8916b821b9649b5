from __future__ import annotations

from audiomemo.errors import UnsupportedOptionError
from audiomemo.models import TranscribeOptions

# Checked in this order; the first unsupported flag is reported.
OPTION_FLAGS = ("diarize", "smart_format", "punctuate", "filler_words", "numerals")

CAPABILITIES: dict[str, frozenset[str]] = {
    "deepgram": frozenset(OPTION_FLAGS),
    "openai": frozenset(),
    "mistral": frozenset(),
    "whisper": frozenset(),
    "whisper-cpp": frozenset(),
    "whisperx": frozenset({"diarize"}),
    "ffmpeg-whisper": frozenset(),
}


def supports(backend: str, flag: str) -> bool:
    return flag in CAPABILITIES.get(backend, frozenset())


def validate_options(backend: str, options: TranscribeOptions) -> None:
    for flag in OPTION_FLAGS:
        if getattr(options, flag) and not supports(backend, flag):
            raise UnsupportedOptionError(backend, flag)
