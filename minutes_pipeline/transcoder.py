from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from pathlib import Path

from minutes_pipeline.errors import StageError

logger = logging.getLogger(__name__)

SAMPLE_RATE_HZ = 16000
CHANNELS = 1


class FfmpegTranscoder:
    """Normalises any media container to 16 kHz mono FLAC through the ffmpeg binary."""

    def __init__(self, *, ffmpeg_bin: str = "ffmpeg", timeout_s: float = 600.0) -> None:
        self._ffmpeg_bin = ffmpeg_bin
        self._timeout_s = timeout_s

    def to_flac(self, *, content: bytes, source_name: str) -> bytes:
        if shutil.which(self._ffmpeg_bin) is None:
            raise StageError(stage="transform", message=f"ffmpeg binary not found: {self._ffmpeg_bin}")
        suffix = Path(source_name).suffix or ".bin"
        with tempfile.TemporaryDirectory(prefix="minutes-ffmpeg-") as tmp:
            src = Path(tmp) / f"input{suffix}"
            dst = Path(tmp) / "audio.flac"
            src.write_bytes(content)
            cmd = [
                self._ffmpeg_bin,
                "-hide_banner",
                "-loglevel",
                "error",
                "-y",
                "-i",
                str(src),
                "-vn",
                "-acodec",
                "flac",
                "-ac",
                str(CHANNELS),
                "-ar",
                str(SAMPLE_RATE_HZ),
                str(dst),
            ]
            try:
                proc = subprocess.run(cmd, capture_output=True, timeout=self._timeout_s, check=False)
            except subprocess.TimeoutExpired as exc:
                raise StageError(stage="transform", message=f"ffmpeg timed out after {self._timeout_s}s") from exc
            if proc.returncode != 0 or not dst.exists():
                stderr = proc.stderr.decode("utf-8", errors="replace").strip()
                raise StageError(stage="transform", message=f"ffmpeg failed: {stderr[-300:] or proc.returncode}")
            logger.info("audio_extracted source=%s bytes=%s", source_name, dst.stat().st_size)
            return dst.read_bytes()
