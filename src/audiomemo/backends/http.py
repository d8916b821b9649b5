from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterator
from pathlib import Path

import httpx

from audiomemo.cancel import CancelToken
from audiomemo.errors import (
    BackendAPIError,
    BackendRequestError,
    DeadlineExceeded,
    OperationCanceled,
)

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 64 * 1024
CANCEL_POLL_INTERVAL = 0.05


class _CancelAwareStream(httpx.SyncByteStream):
    def __init__(self, inner: httpx.SyncByteStream, cancel: CancelToken) -> None:
        self._inner = inner
        self._cancel = cancel

    def __iter__(self) -> Iterator[bytes]:
        for chunk in self._inner:
            self._cancel.raise_if_cancelled()
            yield chunk

    def close(self) -> None:
        self._inner.close()


def _watch(
    stream: httpx.SyncByteStream | httpx.AsyncByteStream,
    cancel: CancelToken,
) -> httpx.SyncByteStream | httpx.AsyncByteStream:
    if isinstance(stream, httpx.SyncByteStream):
        return _CancelAwareStream(stream, cancel)
    return stream


class _PendingSend:
    """One ``handle_request`` call running on a daemon worker thread.

    The caller can abandon it while the worker is still blocked on the
    network; the worker then closes whatever response arrives late.
    """

    def __init__(self, transport: CancelAwareTransport, request: httpx.Request) -> None:
        self._transport = transport
        self._request = request
        self._lock = threading.Lock()
        self._abandoned = False
        self._response: httpx.Response | None = None
        self._error: Exception | None = None
        self.finished = threading.Event()

    def start(self) -> None:
        self._transport._send_started()
        threading.Thread(target=self._run, name="audiomemo-http-send", daemon=True).start()

    def _run(self) -> None:
        try:
            try:
                self._response = self._transport.inner.handle_request(self._request)
            except Exception as exc:
                self._error = exc
            with self._lock:
                self.finished.set()
                abandoned = self._abandoned
            if abandoned and self._response is not None:
                self._response.close()
        finally:
            self._transport._send_finished()

    def abandon(self) -> bool:
        """Give up on the call. False if it already finished."""
        with self._lock:
            if self.finished.is_set():
                return False
            self._abandoned = True
            return True

    def result(self) -> httpx.Response:
        if self._error is not None:
            raise self._error
        if self._response is None:
            raise RuntimeError("request has not finished")
        return self._response


class CancelAwareTransport(httpx.BaseTransport):
    """Wraps a transport so a request can be abandoned the moment the token fires.

    The wrapped ``handle_request`` runs on a worker thread, so a caller
    blocked waiting for a slow server still sees cancellation within
    CANCEL_POLL_INTERVAL. Upload and download bodies are checked per chunk.
    """

    def __init__(self, inner: httpx.BaseTransport, cancel: CancelToken) -> None:
        self.inner = inner
        self._cancel = cancel
        self._lock = threading.Lock()
        self._active = 0
        self._close_when_idle = False

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        self._cancel.raise_if_cancelled()
        request.stream = _watch(request.stream, self._cancel)
        pending = _PendingSend(self, request)
        pending.start()
        while not pending.finished.wait(CANCEL_POLL_INTERVAL):
            try:
                self._cancel.raise_if_cancelled()
            except OperationCanceled:
                if pending.abandon():
                    logger.info(
                        "Abandoned in-flight request to %s", request.url.copy_with(query=None)
                    )
                    raise
        response = pending.result()
        response.stream = _watch(response.stream, self._cancel)
        return response

    def _send_started(self) -> None:
        with self._lock:
            self._active += 1

    def _send_finished(self) -> None:
        with self._lock:
            self._active -= 1
            close_now = self._close_when_idle and not self._active
        if close_now:
            self.inner.close()

    def close(self) -> None:
        # an abandoned send still owns a connection; its worker closes the pool
        with self._lock:
            if self._active:
                self._close_when_idle = True
                return
        self.inner.close()


def open_client(
    cancel: CancelToken,
    transport: httpx.BaseTransport | None = None,
    timeout: float | None = None,
) -> httpx.Client:
    """An httpx client bound to one call's cancel token and deadline."""
    remaining = cancel.remaining()
    if remaining is not None:
        timeout = remaining if timeout is None else min(timeout, remaining)
    inner = transport or httpx.HTTPTransport()
    return httpx.Client(
        transport=CancelAwareTransport(inner, cancel),
        timeout=httpx.Timeout(timeout, connect=min(timeout or 30.0, 30.0)),
    )


def file_chunks(path: Path) -> Iterator[bytes]:
    with path.open("rb") as handle:
        while chunk := handle.read(UPLOAD_CHUNK_SIZE):
            yield chunk


def file_size(path: Path) -> int:
    return os.path.getsize(path)


def send(
    backend: str,
    client: httpx.Client,
    request: httpx.Request,
    cancel: CancelToken,
) -> httpx.Response:
    """Send once (no retries) and turn failures into backend errors."""
    logger.info("Sending %s request to %s", backend, request.url.copy_with(query=None))
    try:
        response = client.send(request)
    except httpx.TimeoutException as exc:
        if cancel.expired:
            raise DeadlineExceeded(f"{backend} request exceeded its deadline") from exc
        raise BackendRequestError(backend, exc) from exc
    except httpx.HTTPError as exc:
        raise BackendRequestError(backend, exc) from exc
    check_status(backend, response)
    return response


def check_status(backend: str, response: httpx.Response) -> None:
    if response.status_code != httpx.codes.OK:
        raise BackendAPIError(backend, response.status_code, response.text)
