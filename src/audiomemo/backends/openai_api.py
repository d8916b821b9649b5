from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import httpx
from openai import NOT_GIVEN, APIConnectionError, APIStatusError, APITimeoutError, OpenAI

from audiomemo.backends.base import build_segments
from audiomemo.backends.capabilities import validate_options
from audiomemo.backends.http import open_client
from audiomemo.cancel import CancelToken
from audiomemo.errors import (
    BackendAPIError,
    BackendParseError,
    BackendRequestError,
    DeadlineExceeded,
    MissingAPIKeyError,
    OperationCanceled,
)
from audiomemo.models import Result, TranscribeOptions

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"


class OpenAIBackend:
    name = "openai"

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-transcribe",
        base_url: str = OPENAI_BASE_URL,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def transcribe(
        self,
        path: Path,
        options: TranscribeOptions,
        cancel: CancelToken | None = None,
    ) -> Result:
        if not self.api_key:
            raise MissingAPIKeyError(self.name, "OPENAI_API_KEY")
        validate_options(self.name, options)
        cancel = cancel or CancelToken()

        model = options.model_or(self.default_model)
        logger.info("Sending %s to OpenAI (model=%s)", path.name, model)
        with open_client(cancel, self._transport) as http_client:
            # one attempt per call, no SDK retries
            client = OpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                http_client=http_client,
                timeout=http_client.timeout,
                max_retries=0,
            )
            try:
                with path.open("rb") as audio_file:
                    raw = client.audio.transcriptions.with_raw_response.create(
                        model=model,
                        file=audio_file,
                        response_format="verbose_json",
                        language=options.language or NOT_GIVEN,
                    )
            except APIStatusError as exc:
                raise BackendAPIError(self.name, exc.status_code, exc.response.text) from exc
            except APITimeoutError as exc:
                if cancel.expired:
                    raise DeadlineExceeded("openai request exceeded its deadline") from exc
                raise BackendRequestError(self.name, exc) from exc
            except APIConnectionError as exc:
                # the SDK wraps transport exceptions, including our own cancel
                if isinstance(exc.__cause__, OperationCanceled):
                    raise exc.__cause__ from exc
                raise BackendRequestError(self.name, exc) from exc
            body = raw.http_response.text

        return self.parse_response(body, options.diarize)

    def parse_response(self, body: str | bytes, diarize: bool = False) -> Result:
        try:
            data: dict[str, Any] = json.loads(body)
            text = data.get("text") or ""
            language = data.get("language")
            duration = float(data.get("duration") or 0.0)
            raw_segments = data.get("segments") or []
        except (ValueError, TypeError, AttributeError) as exc:
            raise BackendParseError(self.name, str(exc)) from exc

        segments = build_segments(self.name, raw_segments, diarize=diarize)
        logger.info("OpenAI returned %d segment(s)", len(segments))
        return Result.from_segments(segments, text=text, language=language, duration=duration)
