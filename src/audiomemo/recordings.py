from __future__ import annotations

from datetime import datetime
from pathlib import Path

AUDIO_EXTENSIONS = frozenset({".ogg", ".wav", ".flac", ".mp3", ".m4a", ".webm", ".opus"})
MAX_FILENAME_LEN = 250


def generate_filename(fmt: str, label: str = "", now: datetime | None = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y-%m-%dT%H-%M-%S")
    return f"{label or 'recording'}-{stamp}.{fmt}"


def find_latest_audio(directory: Path) -> Path:
    if not directory.is_dir():
        raise FileNotFoundError(f"Recordings directory not found: {directory}")

    candidates = [
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix.lower() in AUDIO_EXTENSIONS
    ]
    if not candidates:
        raise FileNotFoundError(f"No audio files found in {directory}")
    return max(candidates, key=lambda path: path.stat().st_mtime_ns)


def _sanitize_label(label: str) -> str:
    for char in ("/", "\\", "\x00", " "):
        label = label.replace(char, "-")
    return label.strip("-")


def rename_with_label(path: Path, label: str) -> Path:
    """Append ``label`` to the file stem, e.g. rec-2025.ogg -> rec-2025-standup.ogg."""
    label = _sanitize_label(label)
    if not label:
        return path

    stem = f"{path.stem}-{label}"
    limit = MAX_FILENAME_LEN - len(path.suffix.encode())
    if len(stem.encode()) > limit:
        stem = stem.encode()[:limit].decode("utf-8", errors="ignore").rstrip("-")

    target = path.with_name(stem + path.suffix)
    if target == path:
        return path
    path.rename(target)
    return target
