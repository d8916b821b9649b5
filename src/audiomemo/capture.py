from __future__ import annotations

import contextlib
import logging
import queue
import re
import signal
import subprocess
import threading
from collections import deque
from collections.abc import Iterator
from pathlib import Path
from typing import IO, cast

from audiomemo.devices import input_format
from audiomemo.errors import CaptureError, ExecutableNotFoundError, InvalidCaptureState
from audiomemo.models import CaptureSpec, CaptureState
from audiomemo.process import ensure_ffmpeg

logger = logging.getLogger(__name__)

CODECS: dict[str, str] = {
    "ogg": "libopus",
    "wav": "pcm_s16le",
    "flac": "flac",
    "mp3": "libmp3lame",
}
OPUS_BITRATE = "64k"

# Fixed 480-sample blocks give a steady meter refresh; astats prints the
# short-term RMS as key=value lines on stderr.
METER_FILTER = (
    "asetnsamples=n=480,astats=metadata=1:reset=1,ametadata=print:file=/dev/stderr"
)

LEVEL_PATTERN = re.compile(r"lavfi\.astats\.Overall\.RMS_level=(-?[\d.]+|inf|-inf)")
LEVEL_QUEUE_SIZE = 10
STDERR_TAIL_LINES = 20

_CLOSED = object()


def codec_for_format(fmt: str) -> str:
    return CODECS.get(fmt, CODECS["ogg"])


def _input_args(device: str, fmt: str) -> list[str]:
    # avfoundation addresses audio-only inputs as ":<device>"
    if fmt == "avfoundation" and not device.startswith(":"):
        device = ":" + device
    return ["-f", fmt, "-i", device]


def _output_args(spec: CaptureSpec) -> list[str]:
    codec = codec_for_format(spec.format)
    args = [
        "-c:a",
        codec,
        "-ar",
        str(spec.sample_rate),
        "-ac",
        str(spec.channel_count),
    ]
    if codec == "libopus":
        args.extend(["-b:a", OPUS_BITRATE])
    # Capture sources stamp packets with wall-clock based PTS; without this
    # the muxer pads the start of the file with silence.
    args.extend(["-output_ts_offset", "0"])
    args.extend(["-y", spec.output_path])
    return args


def build_capture_command(spec: CaptureSpec, ffmpeg: str = "ffmpeg") -> list[str]:
    """Build the encoder command line for a single- or multi-device capture."""
    fmt = input_format()
    cmd: list[str] = [ffmpeg, "-hide_banner", "-nostats"]

    if len(spec.devices) == 1:
        cmd.extend(_input_args(spec.devices[0], fmt))
        cmd.extend(["-af", METER_FILTER])
        cmd.extend(_output_args(spec))
        return cmd

    for device in spec.devices:
        cmd.extend(_input_args(device, fmt))

    count = len(spec.devices)
    labels = "".join(f"[{index}:a]" for index in range(count))
    graph = f"{labels}amix=inputs={count}:duration=longest,{METER_FILTER}[a]"
    cmd.extend(["-filter_complex", graph, "-map", "[a]"])
    cmd.extend(_output_args(spec))
    return cmd


def parse_level(line: str) -> float | None:
    match = LEVEL_PATTERN.search(line)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def _is_meter_noise(line: str) -> bool:
    return line.startswith(("lavfi.", "frame:"))


class CaptureProcess:
    """Owns one running encoder process.

    Two daemon threads live exactly as long as the process: one scans stderr
    for loudness samples, the other waits for exit and publishes the outcome.
    Samples go through a bounded queue that drops the oldest pending sample
    when full, so the newest loudness is always available to the meter.
    """

    def __init__(self, cmd: list[str], output_path: str = "") -> None:
        self.cmd = cmd
        self.output_path = output_path
        self._state = CaptureState.IDLE
        self._lock = threading.Lock()
        self._levels: queue.Queue[object] = queue.Queue(maxsize=LEVEL_QUEUE_SIZE)
        self._levels_closed = False
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._done = threading.Event()
        self._error: CaptureError | None = None
        self._proc: subprocess.Popen[bytes] | None = None
        self._stdin: IO[bytes] | None = None

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def error(self) -> CaptureError | None:
        return self._error

    def start(self) -> None:
        with self._lock:
            if self._state is not CaptureState.IDLE:
                raise InvalidCaptureState(f"cannot start a capture in state {self._state.value}")
            try:
                # A separate session keeps the terminal's Ctrl+C away from the
                # encoder; shutdown always goes through stop().
                proc = subprocess.Popen(
                    self.cmd,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                raise ExecutableNotFoundError(self.cmd[0]) from exc
            except OSError as exc:
                raise CaptureError(f"failed to start {self.cmd[0]}: {exc}") from exc
            if proc.stdin is None or proc.stderr is None:
                proc.kill()
                raise CaptureError(f"failed to open pipes to {self.cmd[0]}")
            self._proc = proc
            self._stdin = proc.stdin
            self._state = CaptureState.RECORDING

        logger.info("Capture started (pid %s) -> %s", proc.pid, self.output_path or "-")
        logger.debug("Capture command: %s", " ".join(self.cmd))
        reader = threading.Thread(
            target=self._read_diagnostics,
            args=(proc.stderr,),
            name=f"capture-stderr-{proc.pid}",
            daemon=True,
        )
        waiter = threading.Thread(
            target=self._wait_for_exit,
            args=(proc, reader),
            name=f"capture-wait-{proc.pid}",
            daemon=True,
        )
        reader.start()
        waiter.start()

    def _offer(self, item: object) -> None:
        while True:
            try:
                self._levels.put_nowait(item)
                return
            except queue.Full:
                with contextlib.suppress(queue.Empty):
                    dropped = self._levels.get_nowait()
                    logger.debug("Dropped stale level sample %s", dropped)

    def _read_diagnostics(self, stderr: IO[bytes]) -> None:
        try:
            for raw in stderr:
                line = raw.decode("utf-8", errors="replace").strip()
                level = parse_level(line)
                if level is not None:
                    self._offer(level)
                elif line and not _is_meter_noise(line):
                    self._stderr_tail.append(line)
        finally:
            stderr.close()
            self._offer(_CLOSED)

    def _wait_for_exit(self, proc: subprocess.Popen[bytes], reader: threading.Thread) -> None:
        returncode = proc.wait()
        reader.join()
        with self._lock:
            if returncode == 0:
                self._state = CaptureState.STOPPED
            else:
                tail = "\n".join(self._stderr_tail) or "<no stderr>"
                self._error = CaptureError(
                    f"{Path(self.cmd[0]).name} exited with status {returncode}: {tail}"
                )
                self._state = CaptureState.FAILED
        logger.info("Capture process %s exited with status %s", proc.pid, returncode)
        self._done.set()

    def _signal(self, signame: str) -> None:
        if self._proc is None:
            raise InvalidCaptureState("capture was never started")
        signum = getattr(signal, signame, None)
        if signum is None:
            raise CaptureError("pausing a capture is not supported on this platform")
        self._proc.send_signal(signum)

    def pause(self) -> None:
        """Suspend the encoder process; nothing is written until resume()."""
        with self._lock:
            if self._state is not CaptureState.RECORDING:
                raise InvalidCaptureState(f"cannot pause a capture in state {self._state.value}")
            self._signal("SIGSTOP")
            self._state = CaptureState.PAUSED
        logger.info("Capture paused")

    def resume(self) -> None:
        with self._lock:
            if self._state is not CaptureState.PAUSED:
                raise InvalidCaptureState(f"cannot resume a capture in state {self._state.value}")
            self._signal("SIGCONT")
            self._state = CaptureState.RECORDING
        logger.info("Capture resumed")

    def toggle_pause(self) -> bool:
        """Pause if recording, resume if paused. Returns True when now paused."""
        if self._state is CaptureState.PAUSED:
            self.resume()
            return False
        self.pause()
        return True

    def stop(self) -> None:
        """Ask the encoder to finish. Call wait() to know the file is complete."""
        with self._lock:
            if self._state is CaptureState.IDLE:
                raise InvalidCaptureState("cannot stop a capture that was never started")
            if self._state in (CaptureState.STOPPING, CaptureState.STOPPED, CaptureState.FAILED):
                return
            if self._state is CaptureState.PAUSED:
                # a stopped process never reads the quit command
                self._signal("SIGCONT")
            stdin = self._stdin
            if stdin is None:
                raise InvalidCaptureState("capture has no control pipe")
            self._state = CaptureState.STOPPING

        logger.info("Stopping capture (pid %s)", self.pid)
        # A broken pipe means the encoder already exited; wait() reports how.
        with contextlib.suppress(BrokenPipeError):
            stdin.write(b"q")
            stdin.flush()
        with contextlib.suppress(BrokenPipeError):
            stdin.close()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the encoder exits.

        Returns False if ``timeout`` elapsed first, True once the output file
        is finalized. Raises CaptureError if the encoder failed.
        """
        if not self._done.wait(timeout):
            return False
        if self._error is not None:
            raise self._error
        return True

    def next_level(self, timeout: float | None = None) -> float | None:
        """Block for the next loudness sample; None once the stream has ended.

        Raises queue.Empty if ``timeout`` elapses without a sample.
        """
        if self._levels_closed:
            return None
        item = self._levels.get(timeout=timeout)
        if item is _CLOSED:
            self._levels_closed = True
            return None
        return cast(float, item)

    def latest_level(self) -> float | None:
        """Drain pending samples without blocking and return the newest one."""
        latest: float | None = None
        while not self._levels_closed:
            try:
                item = self._levels.get_nowait()
            except queue.Empty:
                break
            if item is _CLOSED:
                self._levels_closed = True
            else:
                latest = cast(float, item)
        return latest

    def levels(self) -> Iterator[float]:
        while True:
            level = self.next_level()
            if level is None:
                return
            yield level


def start_capture(spec: CaptureSpec) -> CaptureProcess:
    ffmpeg = ensure_ffmpeg()
    Path(spec.output_path).parent.mkdir(parents=True, exist_ok=True)
    cmd = build_capture_command(spec, ffmpeg=ffmpeg)
    logger.info(
        "Recording %d device(s) [%s] as %s at %d Hz x %d",
        len(spec.devices),
        ", ".join(spec.devices),
        spec.format,
        spec.sample_rate,
        spec.channel_count,
    )
    capture = CaptureProcess(cmd, output_path=spec.output_path)
    capture.start()
    return capture
