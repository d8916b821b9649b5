from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile

from audiomemo.cancel import CancelToken
from audiomemo.errors import BackendProcessError, ExecutableNotFoundError, OperationCanceled

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
STDERR_TAIL = 1000


def require_executable(name: str, hint: str = "") -> str:
    path = shutil.which(name)
    if path is None:
        raise ExecutableNotFoundError(name, hint)
    return path


def ensure_ffmpeg() -> str:
    return require_executable("ffmpeg", "Please install ffmpeg.")


def _stderr_tail(handle) -> str:
    handle.seek(0)
    stderr = handle.read().decode("utf-8", errors="replace").strip()
    return stderr[-STDERR_TAIL:]


def run_command(
    cmd: list[str],
    label: str,
    cancel: CancelToken | None = None,
    verbose: bool = False,
) -> None:
    """Run ``cmd`` to completion, killing it if ``cancel`` fires first.

    Raises BackendProcessError (naming ``label``) on a non-zero exit and
    OperationCanceled/DeadlineExceeded when the token trips. With ``verbose``
    the child's stderr goes straight to ours.
    """
    cancel = cancel or CancelToken()
    cancel.raise_if_cancelled()
    logger.debug("Running %s: %s", label, " ".join(cmd))

    with tempfile.TemporaryFile(prefix="audiomemo_stderr_") as stderr_file:
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=None if verbose else stderr_file,
                # keeps the terminal's Ctrl+C away from the child; cancel kills it
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise ExecutableNotFoundError(cmd[0]) from exc

        while True:
            try:
                returncode = proc.wait(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                pass
            try:
                cancel.raise_if_cancelled()
            except OperationCanceled:
                logger.info("Canceling %s (pid %s)", label, proc.pid)
                proc.kill()
                proc.wait()
                raise

        if returncode != 0:
            # a child that died after the token fired was canceled, not broken
            cancel.raise_if_cancelled()
            tail = "" if verbose else _stderr_tail(stderr_file)
            raise BackendProcessError(label, returncode, tail)
