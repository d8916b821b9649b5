import json
import os
import sys
from pathlib import Path

import pytest

from audiomemo.backends import whisper
from audiomemo.backends.whisper import (
    WhisperBackend,
    detect_local_backend,
    detect_variant,
    parse_filter_output,
    parse_native_output,
    parse_reference_output,
    parse_timestamp,
    resolve_ggml_model,
)
from audiomemo.errors import (
    BackendParseError,
    ConfigurationError,
    ExecutableNotFoundError,
    UnsupportedOptionError,
)
from audiomemo.models import TranscribeOptions


def test_detect_variant_from_binary_name() -> None:
    assert detect_variant("/usr/bin/whisper-cli") == "whisper-cpp"
    assert detect_variant("whisper-cpp") == "whisper-cpp"
    assert detect_variant("/opt/venv/bin/whisperx") == "whisperx"
    assert detect_variant("/usr/local/bin/ffmpeg") == "ffmpeg-whisper"
    assert detect_variant("whisper") == "whisper"


def test_parse_timestamp() -> None:
    assert parse_timestamp("01:02:03.456") == pytest.approx(3723.456, abs=1e-3)
    assert parse_timestamp("00:00:07") == 7.0
    with pytest.raises(ValueError):
        parse_timestamp("02:03")


def test_reference_output_keeps_transcript_and_drops_blank_segments() -> None:
    data = json.dumps(
        {
            "text": " Hello world. ",
            "language": "en",
            "segments": [
                {"start": 0.0, "end": 1.2, "text": " Hello"},
                {"start": 1.2, "end": 1.4, "text": "   "},
                {"start": 1.4, "end": 2.6, "text": " world."},
            ],
        }
    ).encode()

    result = parse_reference_output(data)

    assert result.text == "Hello world."
    assert result.language == "en"
    assert [segment.text for segment in result.segments] == ["Hello", "world."]
    assert result.duration == 2.6


def test_whisperx_output_without_text_is_synthesized_with_speakers() -> None:
    data = json.dumps(
        {
            "segments": [
                {"start": 0.5, "end": 1.0, "text": "Hi", "speaker": "SPEAKER_00"},
                {"start": 1.0, "end": 2.0, "text": "Hey", "speaker": "SPEAKER_01"},
            ],
            "language": "en",
        }
    ).encode()

    plain = whisper.DECODERS["whisperx"](data)
    diarized = whisper.DECODERS["whisperx"](data, diarize=True)

    assert plain.text == "Hi Hey"
    assert plain.segments[0].speaker is None
    assert [segment.speaker for segment in diarized.segments] == ["Speaker 0", "Speaker 1"]


def test_native_output_converts_milliseconds() -> None:
    data = json.dumps(
        {
            "result": {"language": "en"},
            "transcription": [
                {"offsets": {"from": 0, "to": 1500}, "text": " Hello"},
                {"offsets": {"from": 1500, "to": 1600}, "text": " "},
                {"offsets": {"from": 1600, "to": 2750}, "text": " world"},
            ],
        }
    ).encode()

    result = parse_native_output(data)

    assert result.text == "Hello world"
    assert [(s.start, s.end) for s in result.segments] == [(0.0, 1.5), (1.6, 2.75)]
    assert result.duration == 2.75
    assert result.language == "en"


def test_filter_output_parses_ndjson_timestamps() -> None:
    data = (
        b'{"from": "00:00:00.000", "to": "00:00:02.500", "text": " First"}\n'
        b"\n"
        b"not json\n"
        b'{"from": "00:00:02.500", "to": "00:01:01.250", "text": "second"}\n'
        b'{"from": "00:01:01.250", "to": "00:01:02", "text": ""}\n'
    )

    result = parse_filter_output(data)

    assert result.text == "First second"
    assert [(s.start, s.end) for s in result.segments] == [(0.0, 2.5), (2.5, 61.25)]
    assert result.duration == 61.25


def test_malformed_json_is_a_parse_error() -> None:
    with pytest.raises(BackendParseError):
        parse_reference_output(b"{not json")
    with pytest.raises(BackendParseError):
        parse_native_output(b'{"transcription": [{"text": "no offsets"}]}')


def test_resolve_ggml_model(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
    model_dir = tmp_path / "whisper"
    model_dir.mkdir()
    (model_dir / "ggml-small.bin").write_bytes(b"")

    assert resolve_ggml_model("small") == str(model_dir / "ggml-small.bin")
    assert resolve_ggml_model("base") == "ggml-base.bin"
    assert resolve_ggml_model("/models/custom.bin") == "/models/custom.bin"


def test_build_args_per_variant(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
    audio = Path("/rec/memo.wav")
    options = TranscribeOptions(language="en")

    reference = WhisperBackend("whisper", "base").build_args(audio, tmp_path, options)
    native = WhisperBackend("whisper-cli", "base").build_args(audio, tmp_path, options)
    embedded = WhisperBackend("ffmpeg", "base").build_args(audio, tmp_path, options)

    assert reference == [
        "--model", "base", "--output_format", "json", "--output_dir", str(tmp_path),
        "--language", "en", "/rec/memo.wav",
    ]
    assert native == [
        "-m", "ggml-base.bin", "-oj", "-of", str(tmp_path / "memo"),
        "-l", "en", "-f", "/rec/memo.wav",
    ]
    assert embedded[embedded.index("-af") + 1] == (
        "whisper=model=ggml-base.bin:format=json"
        f":destination={tmp_path / 'output.json'}:queue=10:language=en"
    )
    assert embedded[-3:] == ["-f", "null", "-"]


def test_whisperx_diarize_needs_token(tmp_path: Path) -> None:
    options = TranscribeOptions(diarize=True)

    with pytest.raises(ConfigurationError):
        WhisperBackend("whisperx").build_args(Path("a.ogg"), tmp_path, options)

    backend = WhisperBackend("whisperx", hf_token="hf_abc")
    args = backend.build_args(Path("a.ogg"), tmp_path, options)
    assert args[-4:] == ["--diarize", "--hf_token", "hf_abc", "a.ogg"]


def test_unsupported_option_rejected_before_launch(tmp_path: Path) -> None:
    with pytest.raises(UnsupportedOptionError):
        WhisperBackend("whisper").transcribe(tmp_path / "a.wav", TranscribeOptions(diarize=True))


def test_missing_binary_is_reported(tmp_path: Path) -> None:
    backend = WhisperBackend("definitely-not-a-whisper-binary")

    with pytest.raises(ExecutableNotFoundError) as excinfo:
        backend.transcribe(tmp_path / "a.wav", TranscribeOptions())

    assert "definitely-not-a-whisper-binary" in str(excinfo.value)


def test_detect_local_backend_priority(monkeypatch: pytest.MonkeyPatch) -> None:
    available = {"whisper": "/usr/bin/whisper", "whisperx": "/usr/bin/whisperx"}
    monkeypatch.setattr(whisper.shutil, "which", lambda name: available.get(name))

    backend = detect_local_backend("small")

    assert backend is not None
    assert backend.name == "whisper"
    assert backend.binary == "/usr/bin/whisper"
    assert backend.default_model == "small"


def test_detect_local_backend_falls_back_to_ffmpeg_filter(monkeypatch: pytest.MonkeyPatch) -> None:
    available = {"ffmpeg": "/usr/bin/ffmpeg"}
    monkeypatch.setattr(whisper.shutil, "which", lambda name: available.get(name))
    monkeypatch.setattr(whisper, "ffmpeg_has_whisper_filter", lambda path: True)

    backend = detect_local_backend()

    assert backend is not None
    assert backend.name == "ffmpeg-whisper"

    monkeypatch.setattr(whisper, "ffmpeg_has_whisper_filter", lambda path: False)
    assert detect_local_backend() is None


LOG_TOOL = """
import json, os, pathlib, sys
args = sys.argv[1:]
with open(os.environ["AUDIOMEMO_TEST_LOG"], "a") as log:
    log.write(json.dumps([pathlib.Path(sys.argv[0]).name, args]) + "\\n")
"""

STUB_WHISPER = LOG_TOOL + """
out_dir = pathlib.Path(args[args.index("--output_dir") + 1])
audio = pathlib.Path(args[-1])
segments = [
    {"start": 0.0, "end": 1.5, "text": " Hello", "speaker": "SPEAKER_01"},
    {"start": 1.5, "end": 3.25, "text": " world", "speaker": "SPEAKER_00"},
]
payload = {"text": " Hello world", "language": "en", "segments": segments}
(out_dir / (audio.stem + ".json")).write_text(json.dumps(payload))
"""

STUB_WHISPER_CLI = LOG_TOOL + """
prefix = args[args.index("-of") + 1]
audio = pathlib.Path(args[args.index("-f") + 1])
if audio.read_bytes() != b"RIFF-converted":
    sys.exit(4)
payload = {
    "result": {"language": "de"},
    "transcription": [{"offsets": {"from": 0, "to": 2500}, "text": " Guten Tag"}],
}
pathlib.Path(prefix + ".json").write_text(json.dumps(payload))
"""

STUB_FFMPEG = LOG_TOOL + """
filters = args[args.index("-af") + 1] if "-af" in args else ""
if filters.startswith("whisper="):
    options = dict(part.split("=", 1) for part in filters[len("whisper="):].split(":"))
    lines = [
        {"from": "00:00:00.000", "to": "00:00:01.000", "text": " one"},
        {"from": "00:00:01.000", "to": "00:00:02.500", "text": " two"},
    ]
    pathlib.Path(options["destination"]).write_text("\\n".join(json.dumps(l) for l in lines))
else:
    pathlib.Path(args[-1]).write_bytes(b"RIFF-converted")
"""


@pytest.fixture
def tool_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Put stub whisper, whisperx, whisper-cli and ffmpeg binaries first on PATH."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    for name, body in (
        ("whisper", STUB_WHISPER),
        ("whisperx", STUB_WHISPER),
        ("whisper-cli", STUB_WHISPER_CLI),
        ("ffmpeg", STUB_FFMPEG),
    ):
        script = bin_dir / name
        script.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
        script.chmod(0o755)

    log = tmp_path / "calls.jsonl"
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("AUDIOMEMO_TEST_LOG", str(log))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    return log


def _calls(log: Path) -> list[tuple[str, list[str]]]:
    return [tuple(json.loads(line)) for line in log.read_text(encoding="utf-8").splitlines()]


@pytest.fixture
def recording(tmp_path: Path) -> Path:
    path = tmp_path / "memo.ogg"
    path.write_bytes(b"OggS")
    return path


@pytest.mark.skipif(sys.platform == "win32", reason="stub binaries need a shebang")
def test_reference_whisper_transcribes_from_its_json_output(
    tool_log: Path, recording: Path
) -> None:
    backend = WhisperBackend("whisper", "small")

    result = backend.transcribe(recording, TranscribeOptions(language="en"))

    assert result.text == "Hello world"
    assert result.language == "en"
    assert [(s.start, s.end, s.text) for s in result.segments] == [
        (0.0, 1.5, "Hello"),
        (1.5, 3.25, "world"),
    ]
    assert not result.has_speakers
    ((tool, args),) = _calls(tool_log)
    assert tool == "whisper"
    assert args[:2] == ["--model", "small"]
    assert args[-1] == str(recording)
    assert not Path(args[args.index("--output_dir") + 1]).exists()


@pytest.mark.skipif(sys.platform == "win32", reason="stub binaries need a shebang")
def test_whisperx_diarization_labels_speakers(tool_log: Path, recording: Path) -> None:
    backend = WhisperBackend("whisperx", hf_token="hf_abc")

    result = backend.transcribe(recording, TranscribeOptions(diarize=True))

    assert [segment.speaker for segment in result.segments] == ["Speaker 1", "Speaker 0"]
    ((tool, args),) = _calls(tool_log)
    assert tool == "whisperx"
    assert args[-4:] == ["--diarize", "--hf_token", "hf_abc", str(recording)]


@pytest.mark.skipif(sys.platform == "win32", reason="stub binaries need a shebang")
def test_whisper_cpp_converts_non_wav_input_first(tool_log: Path, recording: Path) -> None:
    result = WhisperBackend("whisper-cli").transcribe(recording, TranscribeOptions())

    assert result.text == "Guten Tag"
    assert result.language == "de"
    assert result.duration == 2.5
    (convert_tool, convert_args), (whisper_tool, whisper_args) = _calls(tool_log)
    assert convert_tool == "ffmpeg"
    assert convert_args[convert_args.index("-i") + 1] == str(recording)
    conversion = " ".join(convert_args)
    assert "-af aresample=async=1:first_pts=0 -ar 16000 -ac 1 -c:a pcm_s16le" in conversion
    wav_path = Path(convert_args[-1])
    assert wav_path.suffix == ".wav"
    assert whisper_tool == "whisper-cli"
    assert whisper_args[whisper_args.index("-f") + 1] == str(wav_path)
    assert whisper_args[whisper_args.index("-m") + 1] == "ggml-base.bin"
    assert not wav_path.parent.exists()


@pytest.mark.skipif(sys.platform == "win32", reason="stub binaries need a shebang")
def test_whisper_cpp_uses_wav_input_directly(tool_log: Path, tmp_path: Path) -> None:
    wav = tmp_path / "memo.wav"
    wav.write_bytes(b"RIFF-converted")

    result = WhisperBackend("whisper-cli").transcribe(wav, TranscribeOptions())

    assert result.text == "Guten Tag"
    ((tool, args),) = _calls(tool_log)
    assert tool == "whisper-cli"
    assert args[args.index("-f") + 1] == str(wav)


@pytest.mark.skipif(sys.platform == "win32", reason="stub binaries need a shebang")
def test_ffmpeg_whisper_filter_reads_ndjson_destination(tool_log: Path, recording: Path) -> None:
    result = WhisperBackend("ffmpeg").transcribe(recording, TranscribeOptions())

    assert result.text == "one two"
    assert result.duration == 2.5
    ((tool, args),) = _calls(tool_log)
    assert tool == "ffmpeg"
    destination = args[args.index("-af") + 1].split("destination=")[1].split(":")[0]
    assert Path(destination).name == "output.json"
    assert not Path(destination).parent.exists()


@pytest.mark.skipif(sys.platform == "win32", reason="stub binaries need a shebang")
def test_missing_output_file_is_a_parse_error(
    tool_log: Path, recording: Path, tmp_path: Path
) -> None:
    silent = tmp_path / "bin" / "whisper"
    silent.write_text(f"#!{sys.executable}\nimport sys\n", encoding="utf-8")

    with pytest.raises(BackendParseError):
        WhisperBackend("whisper").transcribe(recording, TranscribeOptions())


@pytest.mark.skipif(sys.platform == "win32", reason="stub binaries need a shebang")
def test_missing_audio_file_is_reported(tool_log: Path, tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        WhisperBackend("whisper").transcribe(tmp_path / "absent.ogg", TranscribeOptions())
