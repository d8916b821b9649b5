from __future__ import annotations

import json
from typing import cast

from audiomemo.models import OUTPUT_FORMATS, OutputFormat, Result, Segment


def parse_format(value: str) -> OutputFormat:
    """Map a user-supplied format name onto an OutputFormat, defaulting to text."""
    value = value.strip().lower()
    if value in OUTPUT_FORMATS:
        return cast(OutputFormat, value)
    return "text"


def format_result(result: Result, fmt: OutputFormat) -> str:
    if fmt == "json":
        return _format_json(result)
    if fmt == "srt":
        return _format_srt(result)
    if fmt == "vtt":
        return _format_vtt(result)
    return _format_text(result)


def _format_text(result: Result) -> str:
    if not result.has_speakers:
        return result.text
    lines = []
    for segment in result.segments:
        text = segment.text.strip()
        if segment.speaker:
            lines.append(f"{segment.speaker}: {text}")
        else:
            lines.append(text)
    return "\n".join(lines)


def _format_json(result: Result) -> str:
    return json.dumps(result.to_dict(), indent=2, ensure_ascii=False)


def _cue_segments(result: Result) -> list[Segment]:
    if result.segments:
        return result.segments
    return [Segment(start=0.0, end=result.duration, text=result.text)]


def _cue_text(segment: Segment) -> str:
    text = segment.text.strip()
    if segment.speaker:
        return f"[{segment.speaker}] {text}"
    return text


def _format_srt(result: Result) -> str:
    blocks = []
    for index, segment in enumerate(_cue_segments(result), start=1):
        blocks.append(
            f"{index}\n"
            f"{format_timestamp(segment.start, ',')} --> {format_timestamp(segment.end, ',')}\n"
            f"{_cue_text(segment)}"
        )
    return "\n\n".join(blocks) + "\n"


def _format_vtt(result: Result) -> str:
    blocks = ["WEBVTT"]
    for segment in _cue_segments(result):
        blocks.append(
            f"{format_timestamp(segment.start, '.')} --> {format_timestamp(segment.end, '.')}\n"
            f"{_cue_text(segment)}"
        )
    return "\n\n".join(blocks) + "\n"


def format_timestamp(seconds: float, separator: str) -> str:
    """Render ``seconds`` as HH:MM:SS<sep>mmm (SRT uses ',', WebVTT '.')."""
    total_ms = max(0, round(seconds * 1000))
    hours, rest = divmod(total_ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    secs, millis = divmod(rest, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}{separator}{millis:03d}"
