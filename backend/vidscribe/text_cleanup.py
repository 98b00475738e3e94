from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx

from .models import Segment

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = httpx.Timeout(120.0, connect=10.0)
MIN_LENGTH_RATIO = 0.5
MAX_LENGTH_RATIO = 1.5

CLEANUP_PROMPT = """You are a text correction assistant. Fix any incorrectly split words in this transcription. For example:
- "Re iner" should be "Reiner"
- "camar ader ie" should be "camaraderie"
- "que ued" should be "queued"
- "tre st le" should be "trestle"

Only output the corrected text, nothing else. Do not add explanations.

Text:
"""


class TextCleanupService:
    """Asks a local Ollama model to re-join words the ASR split apart.

    Failures never propagate; the original text is kept instead.
    """

    def __init__(
        self,
        *,
        host: str = "http://localhost:11434",
        model: str = "gpt-oss:20b",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.host = host.rstrip("/")
        self.model = model
        self._transport = transport

    def cleanup_text(self, text: str) -> str:
        if not text or not text.strip():
            return text
        payload = {
            "model": self.model,
            "prompt": f"{CLEANUP_PROMPT}{text}",
            "stream": False,
            "options": {"temperature": 0.1},
        }
        try:
            with httpx.Client(timeout=REQUEST_TIMEOUT, transport=self._transport) as client:
                response = client.post(f"{self.host}/api/generate", json=payload)
            if response.status_code != 200:
                logger.warning(f"Text cleanup: Ollama error {response.status_code} - {response.text[:200]}")
                return text
            cleaned = str(response.json().get("response") or "").strip()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(f"Text cleanup failed: {exc.__class__.__name__} - {exc}")
            return text

        if not cleaned:
            logger.warning("Text cleanup: empty response from model")
            return text
        if len(cleaned) > len(text) * MAX_LENGTH_RATIO or len(cleaned) < len(text) * MIN_LENGTH_RATIO:
            logger.warning(f"Text cleanup: response length {len(cleaned)} outside bounds for input {len(text)}")
            return text
        return cleaned

    def cleanup_segments(self, segments: Sequence[Segment]) -> int:
        changed = 0
        for segment in segments:
            cleaned = self.cleanup_text(segment.text)
            if cleaned != segment.text:
                segment.text = cleaned
                changed += 1
        logger.info(f"Text cleanup changed {changed} of {len(segments)} segments")
        return changed
