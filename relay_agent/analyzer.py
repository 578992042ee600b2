"""Probe a source with ffprobe to learn its video properties."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from .errors import ProbeFailed
from .models import MAX_FPS, MIN_FPS, ProbeResult

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 15.0


def _frame_rate(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    num, _, den = str(value).partition("/")
    try:
        numerator = float(num)
        denominator = float(den) if den else 1.0
    except ValueError:
        return None
    if not denominator:
        return None
    return round(numerator / denominator)


def parse_probe_output(output: str) -> ProbeResult:
    """Turn ffprobe's JSON into a ProbeResult, raising ProbeFailed on bad data."""
    try:
        probe = json.loads(output)
    except ValueError as exc:
        raise ProbeFailed(f"Failed to parse ffprobe output: {exc}") from exc

    streams = probe.get("streams") if isinstance(probe, dict) else None
    if not streams:
        raise ProbeFailed("No video stream found")
    video: Dict[str, Any] = streams[0]
    if not isinstance(video, dict):
        raise ProbeFailed("Malformed stream entry")

    # r_frame_rate is preferred; avg_frame_rate only when r_frame_rate is absent
    if video.get("r_frame_rate"):
        fps = _frame_rate(video.get("r_frame_rate"))
    else:
        fps = _frame_rate(video.get("avg_frame_rate"))
    fps = min(max(fps or 30, MIN_FPS), MAX_FPS)

    try:
        width = int(video.get("width") or 1280)
        height = int(video.get("height") or 720)
        bitrate = int(video["bit_rate"]) if video.get("bit_rate") else None
        duration = float(video["duration"]) if video.get("duration") else None
    except (TypeError, ValueError) as exc:
        raise ProbeFailed(f"Malformed stream metadata: {exc}") from exc

    return ProbeResult(
        width=width,
        height=height,
        fps=fps,
        bitrate=bitrate,
        codec=video.get("codec_name") or None,
        duration=duration,
    )


class StreamAnalyzer:
    """Runs a bounded-time ffprobe of the first video stream."""

    def __init__(self, timeout: float = PROBE_TIMEOUT, runner=None, ffprobe: str = "ffprobe"):
        self.timeout = timeout
        self.ffprobe = ffprobe
        self._runner = runner or asyncio.create_subprocess_exec

    def build_command(self, url: str) -> list[str]:
        return [
            self.ffprobe,
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_streams",
            "-select_streams",
            "v:0",
            "-analyzeduration",
            "5000000",
            "-probesize",
            "5000000",
            url,
        ]

    async def analyze(self, url: str) -> ProbeResult:
        try:
            process = await self._runner(
                *self.build_command(url),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise ProbeFailed(f"ffprobe error: {exc}") from exc

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            raise ProbeFailed("Stream analysis timed out") from exc

        if process.returncode != 0:
            raise ProbeFailed(f"ffprobe failed with code {process.returncode}")

        result = parse_probe_output((stdout or b"").decode("utf-8", errors="replace"))
        logger.info(
            "Input stream analyzed: %dx%d@%dfps codec=%s bitrate=%s",
            result.width,
            result.height,
            result.fps,
            result.codec or "unknown",
            f"{round(result.bitrate / 1000)}kbps" if result.bitrate else "unknown",
        )
        return result
