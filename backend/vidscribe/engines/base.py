from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path

from ..audio_preprocessor import AudioPreprocessor
from ..chunk_merger import merge_chunk_results
from ..errors import SourceNotFound
from ..raw_result import RawTranscriptionResult, offset_result
from ..retry import RetryPolicy, engine_call_policy

logger = logging.getLogger(__name__)

LONG_AUDIO_THRESHOLD_SEC = 120.0
CHUNK_DURATION_SEC = 120.0
CHUNK_OVERLAP_SEC = 3.0


class EngineClient(ABC):
    name: str = "engine"

    def __init__(
        self,
        *,
        preprocessor: AudioPreprocessor | None = None,
        retry_policy: RetryPolicy | None = None,
        long_audio_threshold: float = LONG_AUDIO_THRESHOLD_SEC,
        chunk_duration: float = CHUNK_DURATION_SEC,
        chunk_overlap: float = CHUNK_OVERLAP_SEC,
    ) -> None:
        self.preprocessor = preprocessor or AudioPreprocessor()
        self.retry_policy = retry_policy or engine_call_policy(f"{self.name} transcription")
        self.long_audio_threshold = long_audio_threshold
        self.chunk_duration = chunk_duration
        self.chunk_overlap = chunk_overlap

    @property
    def engine_name(self) -> str:
        return self.name

    @abstractmethod
    def health_check(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def _transcribe_file(self, audio_path: str, *, compact: bool) -> RawTranscriptionResult:
        """``compact`` asks for segment-level output only, used for chunks of long audio."""
        raise NotImplementedError

    def transcribe(self, audio_path: str) -> RawTranscriptionResult:
        if not Path(audio_path).exists():
            raise SourceNotFound(f"Audio file not found: {audio_path}")

        duration = self.preprocessor.get_duration(audio_path)
        if duration > self.long_audio_threshold:
            logger.info(
                f"[{self.name}] Audio is {duration:.1f}s (> {self.long_audio_threshold:.0f}s), using chunked transcription"
            )
            return self._transcribe_chunked(audio_path, duration)

        logger.info(f"[{self.name}] Audio is {duration:.1f}s, transcribing in a single request")
        result = self.retry_policy.call(lambda: self._transcribe_file(audio_path, compact=False))
        logger.info(f"[{self.name}] Transcribed {len(result.segments)} segments, {len(result.words)} words")
        return result

    def _transcribe_chunked(self, audio_path: str, duration: float) -> RawTranscriptionResult:
        chunks = self.preprocessor.split_into_chunks(
            audio_path,
            self.chunk_duration,
            self.chunk_overlap,
            total_duration=duration,
            prefix=f"{self.name}_chunk",
        )
        logger.info(f"[{self.name}] Split audio into {len(chunks)} chunks")
        results: list[RawTranscriptionResult] = []
        try:
            for chunk in chunks:
                logger.info(
                    f"[{self.name}] Chunk {chunk.index + 1}/{len(chunks)} "
                    f"({chunk.start_sec:.1f}s - {chunk.end_sec:.1f}s)"
                )
                try:
                    result = self.retry_policy.call(lambda: self._transcribe_file(chunk.path, compact=True))
                finally:
                    chunk.cleanup()
                logger.info(
                    f"[{self.name}] Chunk {chunk.index + 1}: {len(result.segments)} segments, {len(result.words)} words"
                )
                results.append(offset_result(result, chunk.start_sec))
        finally:
            for chunk in chunks:
                chunk.cleanup()

        merged = merge_chunk_results(results)
        if merged.duration < duration:
            merged = RawTranscriptionResult(
                text=merged.text,
                language=merged.language,
                duration=duration,
                segments=merged.segments,
                words=merged.words,
                subword_tokens=merged.subword_tokens,
            )
        return merged
