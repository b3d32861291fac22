"""
FFmpeg transcoder — clip trimming and watermark mixing.

Inputs and outputs are LOCAL FILE PATHS; the pipeline downloads and
uploads around it. Output is AAC in an MP4 container (.m4a).
"""
from __future__ import annotations

import asyncio
import shlex
import subprocess
import structlog
from typing import List

from core.errors import TranscodeError

logger = structlog.get_logger()


class FFmpegTranscoder:
    def __init__(self, ffmpeg_bin: str = "ffmpeg", timeout: float = 300.0):
        self.ffmpeg = ffmpeg_bin
        self.timeout = timeout

    def _run(self, cmd: List[str]) -> None:
        try:
            p = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise TranscodeError(f"ffmpeg timed out after {self.timeout}s") from e
        except OSError as e:
            raise TranscodeError(f"ffmpeg could not start: {e}") from e
        if p.returncode != 0:
            raise TranscodeError(
                "ffmpeg_failed:"
                + "\nCMD: " + " ".join(shlex.quote(c) for c in cmd)
                + "\nSTDERR:\n" + (p.stderr[-2500:] if p.stderr else "")
            )

    async def trim(self, in_path: str, out_path: str, duration_s: float) -> str:
        """Keep the first duration_s seconds."""
        cmd = [
            self.ffmpeg, "-y",
            "-ss", "0",
            "-t", str(float(duration_s)),
            "-i", in_path,
            "-c:a", "aac",
            "-f", "ipod",
            out_path,
        ]
        await asyncio.to_thread(self._run, cmd)
        logger.debug("transcoder_trimmed", out=out_path, seconds=duration_s)
        return out_path

    async def mix(self, main_path: str, overlay_path: str, out_path: str, delay_ms: int = 1000, gain: float = 0.3) -> str:
        """Mix overlay into main after delay_ms at the given gain; length follows main."""
        graph = (
            f"[1]adelay={int(delay_ms)}|{int(delay_ms)},volume={gain}[wm];"
            "[0][wm]amix=inputs=2:duration=first"
        )
        cmd = [
            self.ffmpeg, "-y",
            "-i", main_path,
            "-i", overlay_path,
            "-filter_complex", graph,
            "-c:a", "aac",
            "-f", "ipod",
            out_path,
        ]
        await asyncio.to_thread(self._run, cmd)
        logger.debug("transcoder_mixed", out=out_path, delay_ms=delay_ms, gain=gain)
        return out_path
