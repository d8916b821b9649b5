from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Protocol

from audiomemo.cancel import CancelToken
from audiomemo.errors import BackendParseError
from audiomemo.models import Result, Segment, TranscribeOptions

_SPEAKER_DIGITS = re.compile(r"(\d+)$")


class Backend(Protocol):
    @property
    def name(self) -> str: ...

    def transcribe(
        self,
        path: Path,
        options: TranscribeOptions,
        cancel: CancelToken | None = None,
    ) -> Result: ...


def speaker_label(raw: Any) -> str | None:
    """Normalize a backend speaker id (3, "3", "SPEAKER_03") to "Speaker 3"."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return f"Speaker {raw}"
    match = _SPEAKER_DIGITS.search(str(raw))
    if not match:
        return None
    return f"Speaker {int(match.group(1))}"


def build_segments(
    backend: str,
    items: list[dict[str, Any]],
    text_key: str = "text",
    diarize: bool = False,
    per_second: float = 1.0,
) -> list[Segment]:
    """Convert raw segment dicts carrying numeric start/end into Segments.

    Empty-text segments are dropped. ``per_second`` is the number of native
    time units per second (1000 for millisecond offsets).
    """
    segments: list[Segment] = []
    try:
        for item in items:
            text = str(item.get(text_key) or "").strip()
            if not text:
                continue
            speaker = speaker_label(item.get("speaker")) if diarize else None
            segments.append(
                Segment(
                    start=float(item["start"]) / per_second,
                    end=float(item["end"]) / per_second,
                    text=text,
                    speaker=speaker,
                )
            )
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise BackendParseError(backend, f"unexpected segment shape: {exc}") from exc
    return segments
