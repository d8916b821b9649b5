from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

from audiomemo.backends.base import build_segments
from audiomemo.backends.capabilities import validate_options
from audiomemo.cancel import CancelToken
from audiomemo.errors import BackendParseError, ConfigurationError
from audiomemo.models import Result, TranscribeOptions
from audiomemo.process import ensure_ffmpeg, require_executable, run_command

Variant = Literal["whisper", "whisper-cpp", "whisperx", "ffmpeg-whisper"]

logger = logging.getLogger(__name__)

# Search order for auto-detection: native whisper.cpp, then the reference
# Python CLI, then whisperx.
LOCAL_BINARIES: tuple[tuple[str, Variant], ...] = (
    ("whisper-cli", "whisper-cpp"),
    ("whisper", "whisper"),
    ("whisperx", "whisperx"),
)
NATIVE_TOKENS = ("whisper-cli", "whisper-cpp")


def detect_variant(binary: str) -> Variant:
    base = Path(binary).name
    if any(token in base for token in NATIVE_TOKENS):
        return "whisper-cpp"
    if "whisperx" in base:
        return "whisperx"
    if "ffmpeg" in base:
        return "ffmpeg-whisper"
    return "whisper"


def ffmpeg_has_whisper_filter(ffmpeg: str) -> bool:
    """True if this ffmpeg build was configured with the whisper filter."""
    try:
        proc = subprocess.run(
            [ffmpeg, "-hide_banner", "-filters"],
            check=False,
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.info("Could not list ffmpeg filters: %s", exc)
        return False
    if proc.returncode != 0:
        return False
    return any("whisper" in line for line in (proc.stdout + proc.stderr).splitlines())


def resolve_ggml_model(model: str) -> str:
    """Turn a bare model name ("base") into a ggml model file path.

    Paths and *.bin names are returned unchanged. Falls back to the bare
    file name so the binary reports the missing model itself.
    """
    if "/" in model or model.endswith(".bin"):
        return model

    filename = f"ggml-{model}.bin"
    data_dir = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    for subdir in ("whisper-cpp", "whisper"):
        candidate = Path(data_dir) / subdir / filename
        if candidate.exists():
            return str(candidate)
    return filename


def parse_timestamp(value: str) -> float:
    """Parse HH:MM:SS or HH:MM:SS.mmm into seconds."""
    parts = value.strip().split(":")
    if len(parts) != 3:
        raise ValueError(f"invalid timestamp: {value!r}")
    hours, minutes, seconds = parts
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def _load_json(variant: str, data: bytes) -> dict[str, Any]:
    try:
        loaded = json.loads(data)
    except ValueError as exc:
        raise BackendParseError(variant, f"invalid JSON: {exc}") from exc
    if not isinstance(loaded, dict):
        raise BackendParseError(variant, f"expected an object, got {type(loaded).__name__}")
    return loaded


def parse_reference_output(data: bytes, diarize: bool = False, variant: str = "whisper") -> Result:
    """Decode whisper / whisperx JSON: transcript plus float-second segments."""
    out = _load_json(variant, data)
    segments = build_segments(variant, out.get("segments") or [], diarize=diarize)
    return Result.from_segments(
        segments, text=str(out.get("text") or ""), language=out.get("language")
    )


def parse_native_output(data: bytes, diarize: bool = False) -> Result:
    """Decode whisper.cpp JSON: no transcript, integer millisecond offsets."""
    out = _load_json("whisper-cpp", data)
    try:
        items = [
            {
                "start": item["offsets"]["from"],
                "end": item["offsets"]["to"],
                "text": item.get("text"),
            }
            for item in out.get("transcription") or []
        ]
        language = (out.get("result") or {}).get("language")
    except (KeyError, TypeError, AttributeError) as exc:
        raise BackendParseError("whisper-cpp", f"unexpected segment shape: {exc}") from exc
    segments = build_segments("whisper-cpp", items, per_second=1000.0)
    return Result.from_segments(segments, language=language)


def parse_filter_output(data: bytes, diarize: bool = False) -> Result:
    """Decode the ffmpeg whisper filter's NDJSON, one segment per line."""
    items = []
    for number, line in enumerate(data.decode("utf-8", errors="replace").splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
            items.append(
                {
                    "start": parse_timestamp(record["from"]),
                    "end": parse_timestamp(record["to"]),
                    "text": record.get("text"),
                }
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Skipping malformed ffmpeg whisper line %d: %s", number, exc)
    segments = build_segments("ffmpeg-whisper", items)
    return Result.from_segments(segments)


DECODERS: dict[Variant, Callable[..., Result]] = {
    "whisper": parse_reference_output,
    "whisperx": lambda data, diarize=False: parse_reference_output(data, diarize, "whisperx"),
    "whisper-cpp": parse_native_output,
    "ffmpeg-whisper": parse_filter_output,
}


def convert_to_wav(
    path: Path,
    work_dir: Path,
    cancel: CancelToken | None = None,
    verbose: bool = False,
) -> Path:
    """Resample to 16 kHz mono 16-bit PCM for whisper.cpp builds without ogg/opus."""
    ffmpeg = ensure_ffmpeg()
    wav_path = work_dir / f"{path.stem}.wav"
    # first_pts=0 drops the capture-time PTS offset that would otherwise be
    # padded out with silence
    cmd = [
        ffmpeg,
        "-hide_banner",
        "-loglevel",
        "warning",
        "-i",
        str(path),
        "-af",
        "aresample=async=1:first_pts=0",
        "-ar",
        "16000",
        "-ac",
        "1",
        "-c:a",
        "pcm_s16le",
        "-y",
        str(wav_path),
    ]
    run_command(cmd, "ffmpeg conversion", cancel=cancel, verbose=verbose)
    return wav_path


class WhisperBackend:
    """Local whisper in one of four command-line dialects."""

    def __init__(
        self,
        binary: str,
        default_model: str = "base",
        hf_token: str = "",
        variant: Variant | None = None,
    ) -> None:
        self.binary = binary
        self.default_model = default_model
        self.hf_token = hf_token
        self.variant: Variant = variant or detect_variant(binary)

    @property
    def name(self) -> str:
        return self.variant

    def build_args(self, audio_path: Path, work_dir: Path, options: TranscribeOptions) -> list[str]:
        model = options.model_or(self.default_model)

        if self.variant == "whisper-cpp":
            args = ["-m", resolve_ggml_model(model), "-oj", "-of", str(work_dir / audio_path.stem)]
            if options.language:
                args.extend(["-l", options.language])
            args.extend(["-f", str(audio_path)])
            return args

        if self.variant == "ffmpeg-whisper":
            return self._build_filter_args(audio_path, work_dir, model, options)

        args = ["--model", model, "--output_format", "json", "--output_dir", str(work_dir)]
        if options.language:
            args.extend(["--language", options.language])
        if self.variant == "whisperx" and options.diarize:
            if not self.hf_token:
                raise ConfigurationError(
                    "whisperx diarization needs a Hugging Face token (set HF_TOKEN or config)"
                )
            args.extend(["--diarize", "--hf_token", self.hf_token])
        args.append(str(audio_path))
        return args

    def _build_filter_args(
        self,
        audio_path: Path,
        work_dir: Path,
        model: str,
        options: TranscribeOptions,
    ) -> list[str]:
        parts = [
            f"model={resolve_ggml_model(model)}",
            "format=json",
            f"destination={self._output_path(audio_path, work_dir)}",
            "queue=10",
        ]
        if options.language:
            parts.append(f"language={options.language}")
        return [
            "-hide_banner",
            "-loglevel",
            "warning",
            "-i",
            str(audio_path),
            "-vn",
            "-af",
            "whisper=" + ":".join(parts),
            "-f",
            "null",
            "-",
        ]

    def _output_path(self, audio_path: Path, work_dir: Path) -> Path:
        if self.variant == "ffmpeg-whisper":
            return work_dir / "output.json"
        return work_dir / f"{audio_path.stem}.json"

    def transcribe(
        self,
        path: Path,
        options: TranscribeOptions,
        cancel: CancelToken | None = None,
    ) -> Result:
        validate_options(self.name, options)
        binary = require_executable(self.binary)
        if not path.is_file():
            raise FileNotFoundError(f"Audio file not found: {path}")

        logger.info("Running %s for %s", self.name, path.name)
        with tempfile.TemporaryDirectory(prefix="audiomemo_whisper_") as tmp_dir:
            work_dir = Path(tmp_dir)
            input_path = path
            if self.variant == "whisper-cpp" and path.suffix.lower() != ".wav":
                logger.info("Converting %s to 16 kHz wav for whisper.cpp", path.name)
                input_path = convert_to_wav(path, work_dir, cancel=cancel, verbose=options.verbose)

            cmd = [binary, *self.build_args(input_path, work_dir, options)]
            run_command(cmd, self.name, cancel=cancel, verbose=options.verbose)

            output_path = self._output_path(input_path, work_dir)
            try:
                data = output_path.read_bytes()
            except OSError as exc:
                raise BackendParseError(self.name, f"no output at {output_path}: {exc}") from exc

        result = DECODERS[self.variant](data, diarize=options.diarize)
        logger.info("%s produced %d segment(s)", self.name, len(result.segments))
        return result


def detect_local_backend(default_model: str = "base", hf_token: str = "") -> WhisperBackend | None:
    """Find a local whisper on PATH, falling back to ffmpeg's whisper filter."""
    for binary, variant in LOCAL_BINARIES:
        path = shutil.which(binary)
        if path:
            logger.info("Found local %s at %s", variant, path)
            return WhisperBackend(path, default_model, hf_token=hf_token, variant=variant)

    ffmpeg = shutil.which("ffmpeg")
    if ffmpeg and ffmpeg_has_whisper_filter(ffmpeg):
        logger.info("Using ffmpeg whisper filter at %s", ffmpeg)
        return WhisperBackend(ffmpeg, default_model, variant="ffmpeg-whisper")
    return None
