from __future__ import annotations

import json
import logging
import math
import socket
from pathlib import Path
from typing import Any

import httpx

from ..audio_preprocessor import AudioPreprocessor
from ..errors import EngineConnectionError, TranscriptionError
from ..raw_result import RawSegment, RawTranscriptionResult, RawWord, synthesize_words
from ..retry import RetryPolicy
from .base import EngineClient

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3333
DEFAULT_TEMPERATURE = 0.0
NO_SPEECH_THRESHOLD = 0.6
COMPRESSION_RATIO_THRESHOLD = 2.4
DEFAULT_WORD_PROBABILITY = 0.9
REQUEST_TIMEOUT = httpx.Timeout(3600.0, connect=30.0)
HEALTH_CONNECT_TIMEOUT_SEC = 5.0


def _as_float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_segments(raw_segments: list[dict[str, Any]]) -> list[RawSegment]:
    segments: list[RawSegment] = []
    for item in raw_segments:
        start = _as_float(item.get("start"))
        end = _as_float(item.get("end"))
        if start is None or end is None:
            continue
        confidence = _as_float(item.get("confidence"))
        if confidence is None:
            avg_logprob = _as_float(item.get("avg_logprob"))
            confidence = math.exp(avg_logprob) if avg_logprob is not None else None
        segments.append(
            RawSegment(start=start, end=end, text=str(item.get("text") or "").strip(), confidence=confidence)
        )
    return segments


def parse_words(raw_segments: list[dict[str, Any]]) -> list[RawWord]:
    """Collect word timings nested under each segment.

    Tokens keep their leading space so fragments can be re-joined later. A
    word starting before its (non-zero) segment start is segment-relative and
    is shifted into absolute time.
    """
    words: list[RawWord] = []
    for item in raw_segments:
        seg_start = _as_float(item.get("start")) or 0.0
        for raw in item.get("words") or []:
            start = _as_float(raw.get("start"))
            end = _as_float(raw.get("end"))
            if start is None or end is None:
                continue
            if start < 0 or end < start:
                continue
            if start < seg_start and seg_start > 0:
                start += seg_start
                end += seg_start
            text = str(raw.get("word") or "")
            if not text.strip():
                continue
            probability = _as_float(raw.get("probability"))
            words.append(
                RawWord(
                    start=start,
                    end=end,
                    text=text,
                    confidence=DEFAULT_WORD_PROBABILITY if probability is None else probability,
                )
            )
    return words


def parse_response(body: str) -> RawTranscriptionResult:
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise TranscriptionError(f"Failed to parse Whisper response: {exc}") from exc
    if not isinstance(data, dict):
        raise TranscriptionError("Failed to parse Whisper response: expected a JSON object")

    raw_segments = [item for item in data.get("segments") or [] if isinstance(item, dict)]
    segments = parse_segments(raw_segments)
    words = parse_words(raw_segments)
    subword_tokens = bool(words)
    if not words:
        for segment in segments:
            words.extend(synthesize_words(segment, segment.confidence or DEFAULT_WORD_PROBABILITY))

    duration = _as_float(data.get("duration"))
    if duration is None:
        duration = segments[-1].end if segments else 0.0
    return RawTranscriptionResult(
        text=str(data.get("text") or "").strip(),
        language=data.get("language") or None,
        duration=duration,
        segments=segments,
        words=words,
        subword_tokens=subword_tokens,
    )


class WhisperClient(EngineClient):
    """Client for a local whisper.cpp-style ``/inference`` server."""

    name = "whisper"

    def __init__(
        self,
        *,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        language: str = "en",
        suppress_hallucinations: bool = True,
        preprocessor: AudioPreprocessor | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
        **chunking: float,
    ) -> None:
        super().__init__(preprocessor=preprocessor, retry_policy=retry_policy, **chunking)
        self.host = host
        self.port = int(port)
        self.language = language
        self.suppress_hallucinations = suppress_hallucinations
        self._transport = transport

    @property
    def inference_url(self) -> str:
        return f"http://{self.host}:{self.port}/inference"

    def form_fields(self) -> dict[str, str]:
        fields = {
            "response_format": "verbose_json",
            "language": self.language,
            "word_timestamps": "true",
            "temperature": str(DEFAULT_TEMPERATURE),
        }
        if self.suppress_hallucinations:
            fields.update(
                {
                    "no_speech_threshold": str(NO_SPEECH_THRESHOLD),
                    "compression_ratio_threshold": str(COMPRESSION_RATIO_THRESHOLD),
                    "condition_on_previous_text": "false",
                }
            )
        return fields

    def _transcribe_file(self, audio_path: str, *, compact: bool) -> RawTranscriptionResult:
        path = Path(audio_path)
        content = path.read_bytes()
        files = {"file": (path.name, content, "audio/wav")}
        try:
            with httpx.Client(timeout=REQUEST_TIMEOUT, transport=self._transport) as client:
                response = client.post(self.inference_url, data=self.form_fields(), files=files)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.RemoteProtocolError, httpx.ReadError) as exc:
            raise EngineConnectionError(
                f"Cannot connect to Whisper server at {self.host}:{self.port}. Is it running? Error: {exc}"
            ) from exc
        except httpx.TimeoutException as exc:
            raise TranscriptionError(f"Transcription timed out: {exc}", retryable=True) from exc

        if response.status_code == 400:
            raise TranscriptionError(f"Bad request: {response.text}")
        if response.status_code >= 500:
            raise TranscriptionError(f"Server error: {response.text}", retryable=True)
        if response.status_code != 200:
            raise TranscriptionError(f"Unexpected response: {response.status_code} - {response.text}")
        return parse_response(response.text)

    def health_check(self) -> bool:
        try:
            with socket.create_connection((self.host, self.port), timeout=HEALTH_CONNECT_TIMEOUT_SEC):
                return True
        except OSError:
            return False
