from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from uuid import uuid4

from .errors import ConversionError, SourceNotFound
from .media_utils import detect_mean_volume, probe_duration_seconds, run_tool

logger = logging.getLogger(__name__)

SAMPLE_RATE_HZ = 16000
LOW_VOLUME_THRESHOLD_DB = -30.0
CACHE_DURATION_TOLERANCE_SEC = 1.0
LOUDNORM_FILTER = "loudnorm=I=-16:TP=-1.5:LRA=11,lowpass=f=8000"


class NormalizeMode(str, Enum):
    AUTO = "auto"
    ON = "on"
    OFF = "off"


@dataclass(frozen=True)
class AudioChunk:
    path: str
    index: int
    start_sec: float
    duration_sec: float

    @property
    def end_sec(self) -> float:
        return self.start_sec + self.duration_sec

    def cleanup(self) -> None:
        Path(self.path).unlink(missing_ok=True)


def plan_chunks(total_duration: float, chunk_duration: float, overlap: float) -> list[tuple[float, float]]:
    """Return ``(start, duration)`` windows covering ``total_duration``.

    Each window starts ``overlap`` seconds before the previous one ended. When
    that start would leave less than ``overlap`` seconds of audio, the next
    window begins at the previous end instead, so no sliver chunk is produced.
    """
    if total_duration <= 0 or chunk_duration <= 0:
        return []
    overlap = max(0.0, min(overlap, chunk_duration / 2))
    windows: list[tuple[float, float]] = []
    chunk_start = 0.0
    while chunk_start < total_duration:
        chunk_end = min(chunk_start + chunk_duration, total_duration)
        windows.append((chunk_start, chunk_end - chunk_start))
        next_start = max(0.0, chunk_end - overlap)
        if next_start >= total_duration - overlap:
            next_start = chunk_end
        chunk_start = next_start
    return windows


class AudioPreprocessor:
    def __init__(
        self,
        *,
        ffmpeg_bin: str = "ffmpeg",
        ffprobe_bin: str = "ffprobe",
        cache_dir: str | Path = "./tmp/audio_cache",
        tmp_dir: str | Path = "./tmp",
    ) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.cache_dir = Path(cache_dir)
        self.tmp_dir = Path(tmp_dir)

    def cache_path(self, cache_key: str) -> Path:
        return self.cache_dir / f"media_{cache_key}.wav"

    def extract_audio(
        self,
        source_path: str,
        cache_key: str,
        *,
        expected_duration: float | None = None,
        reprocess: bool = False,
    ) -> str:
        source = Path(source_path)
        if not source.exists():
            raise SourceNotFound(f"Source file not found: {source_path}")

        cached = self.cache_path(cache_key)
        if self._cache_is_valid(cached, source, expected_duration=expected_duration, reprocess=reprocess):
            logger.info(f"Using cached audio file: {cached}")
            return str(cached)

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        partial = cached.with_name(f"{cached.stem}.{uuid4().hex}.partial.wav")
        cmd = [
            self.ffmpeg_bin,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            str(source),
            "-vn",
            "-acodec",
            "pcm_s16le",
            "-ar",
            str(SAMPLE_RATE_HZ),
            "-ac",
            "1",
            str(partial),
        ]
        logger.info(f"Extracting audio from {source} to {cached}")
        try:
            run_tool(cmd, "Audio extraction failed")
            os.replace(partial, cached)
        finally:
            partial.unlink(missing_ok=True)
        return str(cached)

    def _cache_is_valid(
        self,
        cached: Path,
        source: Path,
        *,
        expected_duration: float | None,
        reprocess: bool,
    ) -> bool:
        if not cached.exists() or cached.stat().st_size == 0:
            return False
        if reprocess:
            if expected_duration is None:
                return False
            cached_duration = probe_duration_seconds(str(cached), ffprobe_bin=self.ffprobe_bin)
            if cached_duration is None:
                return False
            matches = abs(cached_duration - expected_duration) <= CACHE_DURATION_TOLERANCE_SEC
            if not matches:
                logger.info(
                    f"Cached audio duration {cached_duration:.1f}s does not match source "
                    f"{expected_duration:.1f}s, re-extracting"
                )
            return matches
        return cached.stat().st_mtime >= source.stat().st_mtime

    def get_duration(self, audio_path: str) -> float:
        duration = probe_duration_seconds(audio_path, ffprobe_bin=self.ffprobe_bin)
        if duration is None:
            raise ConversionError(f"Could not determine duration of {audio_path}")
        return duration

    def get_mean_volume(self, audio_path: str) -> float:
        volume = detect_mean_volume(audio_path, ffmpeg_bin=self.ffmpeg_bin)
        if volume is None:
            logger.warning(f"Volume analysis failed for {audio_path}, assuming normal level")
            return 0.0
        return volume

    def normalize_if_needed(self, audio_path: str, mode: NormalizeMode | str = NormalizeMode.AUTO) -> str:
        mode = NormalizeMode(mode)
        if mode is NormalizeMode.OFF:
            return audio_path
        if mode is NormalizeMode.AUTO:
            mean_volume = self.get_mean_volume(audio_path)
            logger.info(f"Audio mean volume: {mean_volume:.1f} dB")
            if mean_volume >= LOW_VOLUME_THRESHOLD_DB:
                return audio_path
            logger.info(
                f"Low volume detected ({mean_volume:.1f} dB < {LOW_VOLUME_THRESHOLD_DB:.0f} dB), normalizing"
            )
        return self.normalize(audio_path)

    def normalize(self, audio_path: str) -> str:
        source = Path(audio_path)
        output = source.with_name(f"{source.stem}_normalized.wav")
        cmd = [
            self.ffmpeg_bin,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            str(source),
            "-af",
            LOUDNORM_FILTER,
            "-acodec",
            "pcm_s16le",
            "-ar",
            str(SAMPLE_RATE_HZ),
            "-ac",
            "1",
            str(output),
        ]
        run_tool(cmd, "Audio normalization failed")
        logger.info(f"Audio normalized to: {output}")
        return str(output)

    def extract_segment(self, audio_path: str, output_path: str, *, start_sec: float, duration_sec: float) -> str:
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.ffmpeg_bin,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-ss",
            f"{start_sec:.3f}",
            "-t",
            f"{duration_sec:.3f}",
            "-i",
            str(audio_path),
            "-acodec",
            "pcm_s16le",
            "-ar",
            str(SAMPLE_RATE_HZ),
            "-ac",
            "1",
            str(output_path),
        ]
        run_tool(cmd, "Audio chunk extraction failed")
        return output_path

    def split_into_chunks(
        self,
        audio_path: str,
        chunk_duration: float,
        overlap: float,
        *,
        total_duration: float | None = None,
        prefix: str = "chunk",
    ) -> list[AudioChunk]:
        if total_duration is None:
            total_duration = self.get_duration(audio_path)
        run_id = uuid4().hex[:12]
        chunks: list[AudioChunk] = []
        try:
            for index, (start_sec, duration_sec) in enumerate(plan_chunks(total_duration, chunk_duration, overlap)):
                chunk_path = str(self.tmp_dir / f"{prefix}_{run_id}_{index}.wav")
                self.extract_segment(audio_path, chunk_path, start_sec=start_sec, duration_sec=duration_sec)
                chunks.append(AudioChunk(path=chunk_path, index=index, start_sec=start_sec, duration_sec=duration_sec))
        except ConversionError:
            for chunk in chunks:
                chunk.cleanup()
            raise
        return chunks
