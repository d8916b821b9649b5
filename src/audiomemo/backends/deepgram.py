from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import httpx

from audiomemo.backends.base import build_segments
from audiomemo.backends.capabilities import validate_options
from audiomemo.backends.http import file_chunks, file_size, open_client, send
from audiomemo.cancel import CancelToken
from audiomemo.errors import BackendParseError, MissingAPIKeyError
from audiomemo.models import Result, TranscribeOptions

logger = logging.getLogger(__name__)

DEEPGRAM_BASE_URL = "https://api.deepgram.com"


class DeepgramBackend:
    name = "deepgram"

    def __init__(
        self,
        api_key: str,
        default_model: str = "nova-3",
        base_url: str = DEEPGRAM_BASE_URL,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def build_query(self, options: TranscribeOptions) -> dict[str, str]:
        query = {
            "model": options.model_or(self.default_model),
            "utterances": "true",
        }
        for flag in ("smart_format", "punctuate", "diarize", "filler_words", "numerals"):
            if getattr(options, flag):
                query[flag] = "true"
        if options.language:
            query["language"] = options.language
        else:
            query["detect_language"] = "true"
        return query

    def transcribe(
        self,
        path: Path,
        options: TranscribeOptions,
        cancel: CancelToken | None = None,
    ) -> Result:
        if not self.api_key:
            raise MissingAPIKeyError(self.name, "DEEPGRAM_API_KEY")
        validate_options(self.name, options)
        cancel = cancel or CancelToken()

        with open_client(cancel, self._transport) as client:
            request = client.build_request(
                "POST",
                f"{self.base_url}/v1/listen",
                params=self.build_query(options),
                headers={
                    "Authorization": f"Token {self.api_key}",
                    "Content-Type": "application/octet-stream",
                    "Content-Length": str(file_size(path)),
                },
                content=file_chunks(path),
            )
            response = send(self.name, client, request, cancel)
            body = response.content

        return self.parse_response(body, options.diarize)

    def parse_response(self, body: bytes, diarize: bool) -> Result:
        try:
            data: dict[str, Any] = json.loads(body)
            results = data.get("results") or {}
            channel = (results.get("channels") or [{}])[0]
            alternatives = channel.get("alternatives") or [{}]
            text = alternatives[0].get("transcript") or ""
            language = channel.get("detected_language")
            duration = float((data.get("metadata") or {}).get("duration") or 0.0)
            utterances = results.get("utterances") or []
        except (ValueError, TypeError, AttributeError, IndexError) as exc:
            raise BackendParseError(self.name, str(exc)) from exc

        segments = build_segments(self.name, utterances, text_key="transcript", diarize=diarize)
        logger.info("Deepgram returned %d utterance(s)", len(segments))
        return Result.from_segments(segments, text=text, language=language, duration=duration)
