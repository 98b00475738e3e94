from __future__ import annotations

import logging
from pathlib import Path
from shutil import which

from fastapi import FastAPI

from .config import get_settings
from .database import init_db
from .engines.factory import available_engines, engine_available
from .jobs import start_transcribe_workers, stop_transcribe_workers
from .routers.transcripts import router as transcripts_router

settings = get_settings()
app = FastAPI(title=settings.app_name, version="1.0.0")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@app.on_event("startup")
def on_startup() -> None:
    configure_logging(settings.log_level)
    init_db()
    Path(settings.tmp_dir).mkdir(parents=True, exist_ok=True)
    Path(settings.audio_cache_dir).mkdir(parents=True, exist_ok=True)
    start_transcribe_workers()


@app.on_event("shutdown")
def on_shutdown() -> None:
    stop_transcribe_workers()


app.include_router(transcripts_router)


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "status": "ok",
        "ffmpeg": "available" if which(settings.ffmpeg_bin) else "missing",
        "ffprobe": "available" if which(settings.ffprobe_bin) else "missing",
        "default_engine": settings.transcription_engine,
        "engines": {name: engine_available(name) for name in available_engines()},
    }
