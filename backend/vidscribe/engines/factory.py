from __future__ import annotations

import logging

from ..audio_preprocessor import AudioPreprocessor
from ..config import Settings, get_settings
from ..errors import ConfigurationError
from .base import EngineClient
from .gemini_client import GeminiClient
from .whisper_client import WhisperClient

logger = logging.getLogger(__name__)

ENGINES: dict[str, type[EngineClient]] = {
    "whisper": WhisperClient,
    "gemini": GeminiClient,
}


def available_engines() -> list[str]:
    return sorted(ENGINES)


def build_preprocessor(settings: Settings) -> AudioPreprocessor:
    return AudioPreprocessor(
        ffmpeg_bin=settings.ffmpeg_bin,
        ffprobe_bin=settings.ffprobe_bin,
        cache_dir=settings.audio_cache_dir,
        tmp_dir=settings.tmp_dir,
    )


def create_client(
    name: str | None = None,
    *,
    settings: Settings | None = None,
    preprocessor: AudioPreprocessor | None = None,
) -> EngineClient:
    settings = settings or get_settings()
    engine = (name or settings.transcription_engine or "whisper").strip().lower()
    if engine not in ENGINES:
        raise ConfigurationError(
            f"Unknown transcription engine: {engine}. Available: {', '.join(available_engines())}"
        )
    preprocessor = preprocessor or build_preprocessor(settings)
    logger.info(f"Using transcription engine: {engine}")
    if engine == "gemini":
        return GeminiClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            api_base=settings.gemini_api_base,
            preprocessor=preprocessor,
        )
    return WhisperClient(
        host=settings.whisper_host,
        port=settings.whisper_port,
        language=settings.transcribe_language,
        suppress_hallucinations=settings.whisper_suppress_hallucinations,
        preprocessor=preprocessor,
    )


def engine_available(name: str | None = None, *, settings: Settings | None = None) -> bool:
    try:
        client = create_client(name, settings=settings)
    except ConfigurationError as exc:
        logger.info(f"Engine {name or 'default'} unavailable: {exc}")
        return False
    return client.health_check()
