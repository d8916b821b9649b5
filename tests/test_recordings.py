import os
from datetime import datetime
from pathlib import Path

import pytest

from audiomemo.recordings import find_latest_audio, generate_filename, rename_with_label


def test_generate_filename() -> None:
    now = datetime(2025, 3, 14, 9, 26, 53)

    assert generate_filename("ogg", now=now) == "recording-2025-03-14T09-26-53.ogg"
    assert generate_filename("flac", "standup", now=now) == "standup-2025-03-14T09-26-53.flac"


def test_find_latest_audio_ignores_other_files(tmp_path: Path) -> None:
    older = tmp_path / "a.ogg"
    newer = tmp_path / "b.WAV"
    notes = tmp_path / "notes.txt"
    for index, path in enumerate((older, newer, notes)):
        path.write_bytes(b"x")
        os.utime(path, ns=(1_000_000_000 * (index + 1), 1_000_000_000 * (index + 1)))
    (tmp_path / "folder.ogg").mkdir()

    assert find_latest_audio(tmp_path) == newer


def test_find_latest_audio_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        find_latest_audio(tmp_path / "missing")

    (tmp_path / "readme.md").write_text("hi", encoding="utf-8")
    with pytest.raises(FileNotFoundError, match="No audio files"):
        find_latest_audio(tmp_path)


def test_rename_with_label(tmp_path: Path) -> None:
    path = tmp_path / "recording-2025-03-14T09-26-53.ogg"
    path.write_bytes(b"x")

    renamed = rename_with_label(path, "team sync/q1")

    assert renamed.name == "recording-2025-03-14T09-26-53-team-sync-q1.ogg"
    assert renamed.exists()
    assert not path.exists()


def test_rename_with_blank_label_is_a_no_op(tmp_path: Path) -> None:
    path = tmp_path / "a.ogg"
    path.write_bytes(b"x")

    assert rename_with_label(path, " / ") == path
    assert path.exists()


def test_rename_truncates_long_labels(tmp_path: Path) -> None:
    path = tmp_path / "a.ogg"
    path.write_bytes(b"x")

    renamed = rename_with_label(path, "é" * 200)

    assert len(renamed.name.encode()) <= 250
    assert renamed.suffix == ".ogg"
    assert renamed.name.startswith("a-é")
