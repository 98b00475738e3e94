from __future__ import annotations

import argparse
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlmodel import Session

from vidscribe.config import get_settings
from vidscribe.database import engine, init_db
from vidscribe.errors import PipelineError
from vidscribe.main import configure_logging
from vidscribe.pipeline import build_pipeline, retry_media, run_pipeline
from vidscribe.segment_store import segment_counts


def run(media_id: str, *, engine_name: str | None, normalize: str | None, retry: bool) -> int:
    init_db()
    pipeline = build_pipeline(engine_name=engine_name, normalize_mode=normalize)
    try:
        if retry:
            transcript = retry_media(media_id, pipeline=pipeline)
        else:
            transcript = run_pipeline(media_id, pipeline=pipeline)
    except PipelineError as exc:
        print(f"Transcription failed: {exc}", file=sys.stderr)
        return 1

    with Session(engine) as session:
        counts = segment_counts(session, transcript.id)
    print(f"Transcript: {transcript.id} ({transcript.state}, engine={transcript.engine})")
    for kind, count in counts.items():
        print(f"{kind}s: {count}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Transcribe one media item synchronously")
    parser.add_argument("--media-id", required=True, help="MediaItem id to transcribe")
    parser.add_argument("--engine", choices=["whisper", "gemini"], default=None, help="Override TRANSCRIPTION_ENGINE")
    parser.add_argument("--normalize", choices=["auto", "on", "off"], default=None, help="Loudness normalization mode")
    parser.add_argument("--retry", action="store_true", help="Reset the item and reprocess it")
    args = parser.parse_args()
    configure_logging(get_settings().log_level)
    return run(args.media_id, engine_name=args.engine, normalize=args.normalize, retry=args.retry)


if __name__ == "__main__":
    raise SystemExit(main())
