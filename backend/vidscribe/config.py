from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


def _load_env() -> None:
    backend_dir = Path(__file__).resolve().parents[1]
    env_file = backend_dir / ".env"
    load_dotenv(env_file, override=False)


_load_env()


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    tmp_dir: str
    audio_cache_dir: str
    ffmpeg_bin: str
    ffprobe_bin: str
    transcription_engine: str
    transcribe_language: str
    whisper_host: str
    whisper_port: int
    whisper_suppress_hallucinations: bool
    gemini_api_key: str
    gemini_model: str
    gemini_api_base: str
    normalize_mode: str
    text_cleanup_enabled: bool
    ollama_host: str
    ollama_cleanup_model: str
    max_concurrent_transcribe_jobs: int
    log_level: str


def _as_bool(value: str, default: bool) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str, default: int, minimum: int = 0) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, parsed)


def _normalize_mode(value: str) -> str:
    lowered = value.strip().lower()
    if lowered in {"on", "true", "1", "force", "forced-on"}:
        return "on"
    if lowered in {"off", "false", "0", "forced-off"}:
        return "off"
    return "auto"


@lru_cache
def get_settings() -> Settings:
    tmp_dir = os.getenv("TMP_DIR", "./tmp")
    return Settings(
        app_name=os.getenv("APP_NAME", "Vidscribe Transcription API"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./vidscribe.db"),
        tmp_dir=tmp_dir,
        audio_cache_dir=os.getenv("AUDIO_CACHE_DIR", str(Path(tmp_dir) / "audio_cache")),
        ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
        ffprobe_bin=os.getenv("FFPROBE_BIN", "ffprobe"),
        transcription_engine=(os.getenv("TRANSCRIPTION_ENGINE", "whisper") or "whisper").strip().lower(),
        transcribe_language=(os.getenv("TRANSCRIBE_LANGUAGE", "en") or "en").strip(),
        whisper_host=os.getenv("WHISPER_HOST", "127.0.0.1"),
        whisper_port=_as_int(os.getenv("WHISPER_PORT", "3333"), 3333, 1),
        whisper_suppress_hallucinations=_as_bool(os.getenv("WHISPER_SUPPRESS_HALLUCINATIONS", "true"), True),
        gemini_api_key=os.getenv("GEMINI_API_KEY", "").strip(),
        gemini_model=(os.getenv("GEMINI_MODEL", "gemini-2.0-flash") or "gemini-2.0-flash").strip(),
        gemini_api_base=os.getenv("GEMINI_API_BASE", "https://generativelanguage.googleapis.com").rstrip("/"),
        normalize_mode=_normalize_mode(os.getenv("TRANSCRIBE_NORMALIZE", "auto")),
        text_cleanup_enabled=_as_bool(os.getenv("TEXT_CLEANUP_ENABLED", "false"), False),
        ollama_host=os.getenv("OLLAMA_HOST", "http://localhost:11434").rstrip("/"),
        ollama_cleanup_model=os.getenv("OLLAMA_CLEANUP_MODEL", "gpt-oss:20b"),
        max_concurrent_transcribe_jobs=_as_int(os.getenv("MAX_CONCURRENT_TRANSCRIBE_JOBS", "1"), 1, 1),
        log_level=(os.getenv("LOG_LEVEL", "INFO") or "INFO").strip().upper(),
    )
