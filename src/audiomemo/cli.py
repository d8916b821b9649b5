from __future__ import annotations

import argparse
import logging
import re
import shutil
import signal
import sys
import tempfile
import time
from pathlib import Path

from audiomemo.backends.dispatch import BACKEND_NAMES, dispatch
from audiomemo.cancel import CancelToken
from audiomemo.capture import start_capture
from audiomemo.config import Config, load_config
from audiomemo.devices import list_devices, resolve_device_name
from audiomemo.errors import AudiomemoError, OperationCanceled
from audiomemo.formatter import format_result, parse_format
from audiomemo.models import AUDIO_FORMATS, OUTPUT_FORMATS, CaptureSpec
from audiomemo.recordings import find_latest_audio, generate_filename, rename_with_label

logger = logging.getLogger(__name__)

_DURATION = re.compile(r"(?:(\d+)h)?(?:(\d+)m)?(?:(\d+(?:\.\d+)?)s)?$", re.IGNORECASE)


def parse_duration(value: str) -> float:
    """Parse "90", "5m", "1h30m" or "2h15m30s" into seconds."""
    value = value.strip()
    try:
        return float(value)
    except ValueError:
        pass
    match = _DURATION.match(value)
    if not match or not any(match.groups()):
        raise argparse.ArgumentTypeError(f"invalid duration: {value!r} (use 90, 5m, 1h30m)")
    hours, minutes, seconds = match.groups()
    return int(hours or 0) * 3600 + int(minutes or 0) * 60 + float(seconds or 0)


def _add_transcribe_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-b", "--backend", choices=BACKEND_NAMES, default="")
    parser.add_argument("-m", "--model", default=None, help="Model name (backend-specific).")
    parser.add_argument("-l", "--language", default=None, help="Language hint, e.g. en")
    parser.add_argument(
        "-f", "--format", dest="output_format", choices=OUTPUT_FORMATS, default=None
    )
    parser.add_argument(
        "-o", "--output", type=Path, default=None, help="Write to file instead of stdout."
    )
    parser.add_argument(
        "--timeout", type=parse_duration, default=None, help="Give up after this long."
    )
    for flag in ("diarize", "smart-format", "punctuate", "filler-words", "numerals"):
        parser.add_argument(f"--{flag}", action=argparse.BooleanOptionalAction, default=None)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="audiomemo",
        description="Record audio from input devices and transcribe it.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Config file path.")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    record = sub.add_parser("record", help="Record audio until Ctrl+C or --duration.")
    record.add_argument("output", nargs="?", type=Path, default=None)
    record.add_argument("-D", "--device", default=None, help="Device, alias or group name.")
    record.add_argument("--format", dest="audio_format", choices=AUDIO_FORMATS, default=None)
    record.add_argument("-r", "--sample-rate", type=int, default=None)
    record.add_argument("-c", "--channels", type=int, default=None)
    record.add_argument("-n", "--name", default="", help="Label for the generated filename.")
    record.add_argument("-d", "--duration", type=parse_duration, default=None)
    record.add_argument("--temp", action="store_true", help="Save to the temp directory.")
    record.add_argument("-t", "--transcribe", action="store_true", help="Transcribe afterwards.")

    transcribe = sub.add_parser("transcribe", help="Transcribe an audio file ('-' for stdin).")
    transcribe.add_argument("audio", type=str)
    _add_transcribe_flags(transcribe)

    latest = sub.add_parser("latest", help="Transcribe the newest recording.")
    latest.add_argument("name", nargs="?", default="", help="Label appended to the filename.")
    _add_transcribe_flags(latest)

    sub.add_parser("devices", help="List capture devices.")
    return parser


def _buffer_stdin() -> Path:
    with tempfile.NamedTemporaryFile(prefix="audiomemo_stdin_", delete=False) as handle:
        shutil.copyfileobj(sys.stdin.buffer, handle)
    return Path(handle.name)


def _transcribe(config: Config, args: argparse.Namespace, audio_path: Path) -> None:
    backend = dispatch(config, args.backend)
    options = config.options_for(
        backend.name,
        model=args.model,
        language=args.language,
        format=args.output_format,
        diarize=args.diarize,
        smart_format=args.smart_format,
        punctuate=args.punctuate,
        filler_words=args.filler_words,
        numerals=args.numerals,
        verbose=args.verbose,
    )
    cancel = CancelToken(timeout=args.timeout)
    previous = signal.signal(signal.SIGINT, lambda *_: cancel.cancel())
    started = time.monotonic()
    try:
        result = backend.transcribe(audio_path, options, cancel=cancel)
    finally:
        signal.signal(signal.SIGINT, previous)
    logger.info("Transcribed with %s in %.1fs", backend.name, time.monotonic() - started)

    output = format_result(result, parse_format(options.format))
    if args.output:
        args.output.write_text(output, encoding="utf-8")
        logger.info("Wrote %s", args.output)
    else:
        print(output)


def _run_transcribe(config: Config, args: argparse.Namespace) -> None:
    if args.audio != "-":
        _transcribe(config, args, Path(args.audio))
        return
    tmp = _buffer_stdin()
    try:
        _transcribe(config, args, tmp)
    finally:
        tmp.unlink(missing_ok=True)


def _run_latest(config: Config, args: argparse.Namespace) -> None:
    latest = find_latest_audio(config.resolve_output_dir())
    if args.name:
        latest = rename_with_label(latest, args.name)
    print(f"Transcribing {latest.name}", file=sys.stderr)
    _transcribe(config, args, latest)


def _run_record(config: Config, args: argparse.Namespace) -> None:
    fmt = args.audio_format or config.record.format
    if args.output is not None:
        output_path = args.output
    else:
        output_dir = Path(tempfile.gettempdir()) if args.temp else config.resolve_output_dir()
        output_path = output_dir / generate_filename(fmt, args.name)

    devices = config.resolve_device(args.device or config.record.device)
    if any(" " in device for device in devices):
        # pretty descriptions from `audiomemo devices`, map back to raw names
        known = list_devices()
        devices = [resolve_device_name(device, known) for device in devices]

    spec = CaptureSpec(
        devices=tuple(devices),
        format=fmt,
        sample_rate=args.sample_rate or config.record.sample_rate,
        channel_count=args.channels or config.record.channels,
        output_path=str(output_path),
    )
    capture = start_capture(spec)
    print(f"Recording to {output_path} (Ctrl+C to stop)...", file=sys.stderr)
    deadline = time.monotonic() + args.duration if args.duration else None
    try:
        while not capture.wait(timeout=0.5):
            level = capture.latest_level()
            if level is not None:
                logger.debug("RMS level %.1f dB", level)
            if deadline is not None and time.monotonic() >= deadline:
                break
    except KeyboardInterrupt:
        # Ctrl+C ends the recording
        pass
    capture.stop()
    capture.wait()

    print(f"Saved: {output_path}", file=sys.stderr)
    # bare path on stdout so it can be piped: audiomemo transcribe $(audiomemo record)
    print(output_path)

    if args.transcribe:
        transcribe_args = _build_parser().parse_args(["transcribe", str(output_path)])
        transcribe_args.verbose = args.verbose
        _transcribe(config, transcribe_args, output_path)


def _run_devices() -> None:
    for device in list_devices():
        marker = " (default)" if device.is_default else ""
        print(f"  {device.name} [{device.description}]{marker}")


def run_cli(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
        config.apply_env()
        if args.command == "record":
            _run_record(config, args)
        elif args.command == "transcribe":
            _run_transcribe(config, args)
        elif args.command == "latest":
            _run_latest(config, args)
        else:
            _run_devices()
    except OperationCanceled as exc:
        print(f"Canceled: {exc}", file=sys.stderr)
        return 130
    except (AudiomemoError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0
