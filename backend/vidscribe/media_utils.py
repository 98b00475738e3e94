from __future__ import annotations

import json
import logging
import re
import subprocess
from pathlib import Path

from .errors import ConversionError

logger = logging.getLogger(__name__)

_MEAN_VOLUME_PATTERN = re.compile(r"mean_volume:\s*(-?[0-9]*\.?[0-9]+)\s*dB")


def run_tool(cmd: list[str], error_message: str, *, timeout: float | None = None) -> str:
    """Run an ffmpeg/ffprobe command, returning stdout.

    Every failure mode (non-zero exit, missing binary, timeout) surfaces as
    ``ConversionError`` carrying whatever stderr was captured.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise ConversionError(f"{error_message}: {exc}", stderr=str(exc)) from exc
    if proc.returncode != 0:
        stderr = (proc.stderr or "").strip()
        logger.error(f"{cmd[0]} failed (rc={proc.returncode}): {stderr[-500:]}")
        raise ConversionError(f"{error_message}: {stderr}", stderr=stderr)
    return proc.stdout or ""


def probe_duration_seconds(path: str, *, ffprobe_bin: str = "ffprobe") -> float | None:
    file_path = Path(path)
    if not file_path.exists():
        return None
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "json",
        str(file_path),
    ]
    try:
        payload = json.loads(run_tool(cmd, "Duration probe failed", timeout=60))
        value = payload.get("format", {}).get("duration")
        return float(value) if value is not None else None
    except (ConversionError, json.JSONDecodeError, ValueError):
        return None


def parse_mean_volume(stderr: str) -> float | None:
    match = _MEAN_VOLUME_PATTERN.search(stderr or "")
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def detect_mean_volume(path: str, *, ffmpeg_bin: str = "ffmpeg") -> float | None:
    cmd = [
        ffmpeg_bin,
        "-hide_banner",
        "-i",
        str(path),
        "-af",
        "volumedetect",
        "-f",
        "null",
        "-",
    ]
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=600)
    except (OSError, subprocess.TimeoutExpired):
        return None
    if proc.returncode != 0:
        return None
    return parse_mean_volume(proc.stderr or "")
