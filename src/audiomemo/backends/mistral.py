from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import httpx

from audiomemo.backends.base import build_segments
from audiomemo.backends.capabilities import validate_options
from audiomemo.backends.http import open_client, send
from audiomemo.cancel import CancelToken
from audiomemo.errors import BackendParseError, MissingAPIKeyError
from audiomemo.models import Result, TranscribeOptions

logger = logging.getLogger(__name__)

MISTRAL_BASE_URL = "https://api.mistral.ai"


class MistralBackend:
    name = "mistral"

    def __init__(
        self,
        api_key: str,
        default_model: str = "voxtral-mini-latest",
        base_url: str = MISTRAL_BASE_URL,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def build_form(self, options: TranscribeOptions) -> dict[str, str]:
        form = {"model": options.model_or(self.default_model)}
        if options.language:
            form["language"] = options.language
        return form

    def transcribe(
        self,
        path: Path,
        options: TranscribeOptions,
        cancel: CancelToken | None = None,
    ) -> Result:
        if not self.api_key:
            raise MissingAPIKeyError(self.name, "MISTRAL_API_KEY")
        validate_options(self.name, options)
        cancel = cancel or CancelToken()

        with path.open("rb") as audio_file, open_client(cancel, self._transport) as client:
            request = client.build_request(
                "POST",
                f"{self.base_url}/v1/audio/transcriptions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                data=self.build_form(options),
                files={"file": (path.name, audio_file)},
            )
            response = send(self.name, client, request, cancel)
            body = response.content

        return self.parse_response(body, options.diarize)

    def parse_response(self, body: bytes, diarize: bool = False) -> Result:
        try:
            data: dict[str, Any] = json.loads(body)
            text = data.get("text") or ""
            language = data.get("language")
            raw_segments = data.get("segments") or []
        except (ValueError, AttributeError) as exc:
            raise BackendParseError(self.name, str(exc)) from exc

        segments = build_segments(self.name, raw_segments, diarize=diarize)
        logger.info("Mistral returned %d segment(s)", len(segments))
        return Result.from_segments(segments, text=text, language=language)
