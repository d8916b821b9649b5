from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

OutputFormat = Literal["text", "json", "srt", "vtt"]
AudioFormat = Literal["ogg", "wav", "flac", "mp3"]

OUTPUT_FORMATS: tuple[OutputFormat, ...] = ("text", "json", "srt", "vtt")
AUDIO_FORMATS: tuple[AudioFormat, ...] = ("ogg", "wav", "flac", "mp3")


@dataclass(slots=True)
class Segment:
    start: float
    end: float
    text: str
    speaker: str | None = None

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"segment ends before it starts: {self.start} > {self.end}")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"start": self.start, "end": self.end, "text": self.text}
        if self.speaker:
            data["speaker"] = self.speaker
        return data


@dataclass(slots=True)
class Result:
    text: str
    segments: list[Segment] = field(default_factory=list)
    language: str | None = None
    duration: float = 0.0

    @classmethod
    def from_segments(
        cls,
        segments: list[Segment],
        text: str = "",
        language: str | None = None,
        duration: float = 0.0,
    ) -> Result:
        """Build a Result, synthesizing text and duration from segments when needed.

        A missing transcript is rebuilt by joining segment texts with single
        spaces. When segments exist the duration is always the last segment's
        end; ``duration`` is only used for segment-less results.
        """
        text = text.strip()
        if not text:
            text = " ".join(segment.text for segment in segments)
        if segments:
            duration = segments[-1].end
        return cls(text=text, segments=segments, language=language or None, duration=duration)

    @property
    def has_speakers(self) -> bool:
        return any(segment.speaker for segment in self.segments)

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "segments": [segment.to_dict() for segment in self.segments],
            "language": self.language,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Result:
        return cls(
            text=data.get("text", ""),
            segments=[
                Segment(
                    start=float(item["start"]),
                    end=float(item["end"]),
                    text=item["text"],
                    speaker=item.get("speaker"),
                )
                for item in data.get("segments") or []
            ],
            language=data.get("language"),
            duration=float(data.get("duration") or 0.0),
        )


@dataclass(frozen=True, slots=True)
class TranscribeOptions:
    model: str = ""
    language: str = ""
    format: OutputFormat = "text"
    diarize: bool = False
    smart_format: bool = False
    punctuate: bool = False
    filler_words: bool = False
    numerals: bool = False
    verbose: bool = False

    def model_or(self, default: str) -> str:
        return self.model or default


@dataclass(frozen=True, slots=True)
class CaptureSpec:
    devices: tuple[str, ...]
    format: AudioFormat
    sample_rate: int
    channel_count: int
    output_path: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "devices", tuple(self.devices))
        if not self.devices:
            raise ValueError("capture needs at least one device")
        if self.format not in AUDIO_FORMATS:
            raise ValueError(f"unsupported capture format: {self.format}")


class CaptureState(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
