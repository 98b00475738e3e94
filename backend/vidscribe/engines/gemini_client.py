from __future__ import annotations

import base64
import json
import logging
from pathlib import Path
from typing import Any

import httpx

from ..audio_preprocessor import AudioPreprocessor
from ..errors import ConfigurationError, EngineConnectionError, TranscriptionError
from ..raw_result import RawSegment, RawTranscriptionResult, RawWord, synthesize_words
from ..retry import RetryPolicy
from .base import EngineClient

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com"
DEFAULT_MODEL = "gemini-2.0-flash"
INLINE_SIZE_LIMIT_BYTES = 20 * 1024 * 1024
MAX_OUTPUT_TOKENS = 65536
GEMINI_CONFIDENCE = 0.95
SYNTHETIC_WORD_CONFIDENCE = 0.90
GENERATE_TIMEOUT = httpx.Timeout(3600.0, connect=30.0)
UPLOAD_TIMEOUT = httpx.Timeout(600.0, connect=30.0)
SHORT_TIMEOUT = httpx.Timeout(30.0, connect=5.0)
HEALTH_TIMEOUT = httpx.Timeout(5.0)

_OK_FINISH_REASONS = {"STOP", "END_TURN"}
_MIME_TYPES = {
    ".wav": "audio/wav",
    ".mp3": "audio/mp3",
    ".flac": "audio/flac",
    ".m4a": "audio/aac",
    ".aac": "audio/aac",
    ".ogg": "audio/ogg",
}

COMPACT_PROMPT = """Transcribe this audio verbatim with speaker labels and timestamps.

Return the transcription in this exact JSON format:
{
  "text": "complete transcript without timestamps",
  "language": "detected language code (e.g., en)",
  "segments": [
    {
      "start": 0.0,
      "end": 5.2,
      "text": "segment text (one or more sentences)",
      "speaker": "Speaker 1"
    }
  ]
}

Important:
- Each segment should be 1-3 sentences (not individual words)
- Include timestamps in seconds (floating point)
- Label speakers consistently (Speaker 1, Speaker 2, etc.)
- Return ONLY valid JSON, no markdown or explanation
"""

FULL_PROMPT = """Transcribe this audio verbatim with speaker labels and timestamps.

Return the transcription in this exact JSON format:
{
  "text": "complete transcript without timestamps",
  "language": "detected language code (e.g., en)",
  "segments": [
    {
      "start": 0.0,
      "end": 5.2,
      "text": "segment text",
      "speaker": "Speaker 1"
    }
  ],
  "words": [
    {
      "start": 0.0,
      "end": 0.5,
      "word": "Hello",
      "speaker": "Speaker 1"
    }
  ]
}

Important:
- Include timestamps in seconds (floating point)
- Label speakers consistently (Speaker 1, Speaker 2, etc.)
- Include every word with accurate timestamps
- Return ONLY valid JSON, no markdown or explanation
"""


def detect_mime_type(audio_path: str) -> str:
    return _MIME_TYPES.get(Path(audio_path).suffix.lower(), "audio/wav")


def build_payload(*parts: dict[str, Any]) -> dict[str, Any]:
    return {
        "contents": [{"parts": list(parts)}],
        "generationConfig": {
            "responseMimeType": "application/json",
            "maxOutputTokens": MAX_OUTPUT_TOKENS,
        },
    }


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def extract_candidate_text(response: dict[str, Any]) -> str:
    """Return the JSON text of the first candidate, raising on blocked or truncated output."""
    usage = response.get("usageMetadata") or {}
    if usage:
        logger.info(
            "Gemini token usage: "
            f"prompt={usage.get('promptTokenCount')}, "
            f"candidates={usage.get('candidatesTokenCount')}, "
            f"thoughts={usage.get('thoughtsTokenCount') or 0}, "
            f"total={usage.get('totalTokenCount')}"
        )

    candidates = response.get("candidates") or []
    if not candidates:
        block_reason = (response.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise TranscriptionError(f"Gemini blocked request: {block_reason}")
        logger.error(f"Gemini response has no candidates: {json.dumps(response)[:1000]}")
        raise TranscriptionError("Empty response from Gemini (no candidates)")

    candidate = candidates[0] or {}
    finish_reason = candidate.get("finishReason")
    if finish_reason and finish_reason not in _OK_FINISH_REASONS:
        logger.warning(f"Gemini finish reason: {finish_reason}")
        if finish_reason == "SAFETY":
            raise TranscriptionError(f"Gemini blocked for safety: {candidate.get('safetyRatings')}")
        if finish_reason == "MAX_TOKENS":
            tokens_used = usage.get("candidatesTokenCount") or "unknown"
            raise TranscriptionError(
                f"Response truncated at {tokens_used} tokens (MAX_TOKENS). Audio too long for single request."
            )

    parts = (candidate.get("content") or {}).get("parts") or []
    text = parts[0].get("text") if parts and isinstance(parts[0], dict) else None
    if not text:
        logger.error(f"Gemini candidate has no text content: {json.dumps(candidate)[:1000]}")
        raise TranscriptionError("Empty response from Gemini (no text content)")
    return text


def parse_transcription(text: str, *, compact: bool) -> RawTranscriptionResult:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error(f"Failed to parse Gemini response as JSON (length={len(text)}): {text[-200:]}")
        raise TranscriptionError(f"Invalid JSON response from Gemini: {exc}") from exc
    if not isinstance(data, dict):
        raise TranscriptionError("Invalid JSON response from Gemini: expected an object")

    raw_segments = [item for item in data.get("segments") or [] if isinstance(item, dict)]
    raw_words = [item for item in data.get("words") or [] if isinstance(item, dict)]
    segments = [
        RawSegment(
            start=_to_float(item.get("start")),
            end=_to_float(item.get("end")),
            text=str(item.get("text") or "").strip(),
            confidence=GEMINI_CONFIDENCE,
            speaker=item.get("speaker"),
        )
        for item in raw_segments
    ]
    if compact:
        words = [word for segment in segments for word in synthesize_words(segment, SYNTHETIC_WORD_CONFIDENCE)]
    else:
        words = [
            RawWord(
                start=_to_float(item.get("start")),
                end=_to_float(item.get("end")),
                text=str(item.get("word") or "").strip(),
                confidence=GEMINI_CONFIDENCE,
                speaker=item.get("speaker"),
            )
            for item in raw_words
        ]

    last_segment_end = _to_float(raw_segments[-1].get("end")) if raw_segments else 0.0
    last_word_end = _to_float(raw_words[-1].get("end")) if raw_words else 0.0
    return RawTranscriptionResult(
        text=str(data.get("text") or "").strip(),
        language=data.get("language") or "en",
        duration=max(last_segment_end, last_word_end),
        segments=segments,
        words=words,
    )


class GeminiClient(EngineClient):
    name = "gemini"

    def __init__(
        self,
        *,
        api_key: str,
        model: str = DEFAULT_MODEL,
        api_base: str = DEFAULT_API_BASE,
        inline_size_limit: int = INLINE_SIZE_LIMIT_BYTES,
        preprocessor: AudioPreprocessor | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
        **chunking: float,
    ) -> None:
        if not api_key:
            raise ConfigurationError("GEMINI_API_KEY is required")
        super().__init__(preprocessor=preprocessor, retry_policy=retry_policy, **chunking)
        self.api_key = api_key
        self.model = model or DEFAULT_MODEL
        self.api_base = api_base.rstrip("/")
        self.inline_size_limit = inline_size_limit
        self._transport = transport

    @property
    def model_name(self) -> str:
        return self.model

    def _client(self, timeout: httpx.Timeout) -> httpx.Client:
        return httpx.Client(timeout=timeout, transport=self._transport)

    def _transcribe_file(self, audio_path: str, *, compact: bool) -> RawTranscriptionResult:
        size = Path(audio_path).stat().st_size
        logger.info(f"Gemini request for {audio_path} ({size / 1024 / 1024:.2f} MB, compact={compact})")
        try:
            if size > self.inline_size_limit:
                response = self._generate_with_upload(audio_path, compact=compact)
            else:
                response = self._generate_inline(audio_path, compact=compact)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.RemoteProtocolError, httpx.ReadError) as exc:
            raise EngineConnectionError(f"Cannot connect to Gemini API: {exc}") from exc
        except httpx.TimeoutException as exc:
            raise TranscriptionError(f"Gemini transcription timed out: {exc}", retryable=True) from exc
        return parse_transcription(extract_candidate_text(response), compact=compact)

    def _generate_inline(self, audio_path: str, *, compact: bool) -> dict[str, Any]:
        data = base64.b64encode(Path(audio_path).read_bytes()).decode("ascii")
        payload = build_payload(
            {"text": COMPACT_PROMPT if compact else FULL_PROMPT},
            {"inline_data": {"mime_type": detect_mime_type(audio_path), "data": data}},
        )
        return self._generate(payload)

    def _generate_with_upload(self, audio_path: str, *, compact: bool) -> dict[str, Any]:
        logger.info("Using File API for large file upload")
        file_uri = self.upload_file(audio_path)
        try:
            payload = build_payload(
                {"text": COMPACT_PROMPT if compact else FULL_PROMPT},
                {"file_data": {"mime_type": detect_mime_type(audio_path), "file_uri": file_uri}},
            )
            return self._generate(payload)
        finally:
            self.delete_file(file_uri)

    def _generate(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.api_base}/v1beta/models/{self.model}:generateContent"
        with self._client(GENERATE_TIMEOUT) as client:
            response = client.post(url, params={"key": self.api_key}, json=payload)
        if response.status_code != 200:
            raise TranscriptionError(
                f"Gemini API error: {response.status_code} - {response.text}",
                retryable=response.status_code >= 500,
            )
        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise TranscriptionError(f"Invalid JSON envelope from Gemini: {exc}") from exc

    def upload_file(self, audio_path: str) -> str:
        path = Path(audio_path)
        content = path.read_bytes()
        mime_type = detect_mime_type(audio_path)
        with self._client(UPLOAD_TIMEOUT) as client:
            start = client.post(
                f"{self.api_base}/upload/v1beta/files",
                params={"key": self.api_key},
                headers={
                    "X-Goog-Upload-Protocol": "resumable",
                    "X-Goog-Upload-Command": "start",
                    "X-Goog-Upload-Header-Content-Length": str(len(content)),
                    "X-Goog-Upload-Header-Content-Type": mime_type,
                },
                json={"file": {"display_name": path.name}},
            )
            if start.status_code != 200:
                raise TranscriptionError(f"Failed to start file upload: {start.text}")
            upload_url = start.headers.get("X-Goog-Upload-URL")
            if not upload_url:
                raise TranscriptionError("Failed to start file upload: no upload URL returned")

            uploaded = client.put(
                upload_url,
                headers={
                    "Content-Length": str(len(content)),
                    "X-Goog-Upload-Offset": "0",
                    "X-Goog-Upload-Command": "upload, finalize",
                },
                content=content,
            )
        if uploaded.status_code != 200:
            raise TranscriptionError(f"Failed to upload file: {uploaded.text}")
        try:
            file_uri = (uploaded.json().get("file") or {}).get("uri")
        except json.JSONDecodeError as exc:
            raise TranscriptionError(f"Failed to upload file: invalid response ({exc})") from exc
        if not file_uri:
            raise TranscriptionError("Failed to upload file: response has no file uri")
        logger.info(f"File uploaded: {file_uri}")
        return file_uri

    def delete_file(self, file_uri: str) -> None:
        file_name = file_uri.rstrip("/").split("/")[-1]
        try:
            with self._client(SHORT_TIMEOUT) as client:
                client.delete(f"{self.api_base}/v1beta/files/{file_name}", params={"key": self.api_key})
        except httpx.HTTPError as exc:
            logger.warning(f"Failed to delete uploaded file {file_name}: {exc}")
            return
        logger.info(f"Cleaned up uploaded file: {file_name}")

    def health_check(self) -> bool:
        try:
            with self._client(HEALTH_TIMEOUT) as client:
                response = client.get(f"{self.api_base}/v1beta/models", params={"key": self.api_key})
        except httpx.HTTPError:
            return False
        return response.status_code == 200
