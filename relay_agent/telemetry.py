"""Parsing of ffmpeg diagnostic lines.

The parser is deliberately forgiving: anything it does not recognise yields
``None`` so scoring code never has to deal with parse errors.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

PROGRESS_RE = re.compile(
    r"frame=\s*(\d+).*?fps=\s*([\d.]+).*?q=\s*([\d.-]+).*?size=\s*(\S+).*?"
    r"time=\s*(\S+).*?bitrate=\s*([\d.]+|N/A)\S*.*?speed=\s*([\d.]+)x"
)
DUP_RE = re.compile(r"dup=\s*(\d+)")
DROP_RE = re.compile(r"drop=\s*(\d+)")
RESOLUTION_RE = re.compile(r"Stream #\d+:\d+.*?Video:.*?\b(\d{2,5})x(\d{2,5})\b")

END_MARKERS = ("Exiting normally", "received signal")


@dataclass(frozen=True)
class ProgressStats:
    frame: int
    fps: float
    quality: float
    size: str
    time: str
    bitrate: float
    speed: float
    dup: Optional[int] = None
    drop: Optional[int] = None


@dataclass(frozen=True)
class ResolutionInfo:
    width: int
    height: int


@dataclass(frozen=True)
class EndOfStream:
    reason: str


@dataclass(frozen=True)
class EncoderMessage:
    level: int
    text: str


TelemetryRecord = Union[ProgressStats, ResolutionInfo, EndOfStream, EncoderMessage]


def _parse_progress(line: str) -> Optional[ProgressStats]:
    match = PROGRESS_RE.search(line)
    if not match:
        return None
    frame, fps, quality, size, time_, bitrate, speed = match.groups()
    try:
        stats = ProgressStats(
            frame=int(frame),
            fps=float(fps),
            quality=float(quality),
            size=size,
            time=time_,
            bitrate=0.0 if bitrate == "N/A" else float(bitrate),
            speed=float(speed),
            dup=int(DUP_RE.search(line).group(1)) if DUP_RE.search(line) else None,
            drop=int(DROP_RE.search(line).group(1)) if DROP_RE.search(line) else None,
        )
    except ValueError:
        return None
    return stats


def parse_telemetry_line(line: str) -> Optional[TelemetryRecord]:
    line = (line or "").strip()
    if not line:
        return None

    progress = _parse_progress(line)
    if progress is not None:
        return progress

    resolution = RESOLUTION_RE.search(line)
    if resolution:
        return ResolutionInfo(width=int(resolution.group(1)), height=int(resolution.group(2)))

    for marker in END_MARKERS:
        if marker in line:
            return EndOfStream(reason=marker)

    lowered = line.lower()
    if "error" in lowered:
        return EncoderMessage(level=logging.ERROR, text=line)
    if "warning" in lowered:
        return EncoderMessage(level=logging.WARNING, text=line)
    return None


def classify_encoder_line(line: str) -> int:
    """Logging level for an encoder diagnostic line."""
    lowered = line.lower()
    if "error" in lowered or "failed" in lowered or "cannot" in lowered:
        return logging.ERROR
    if "warning" in lowered or "deprecated" in lowered or "could not find" in lowered:
        return logging.WARNING
    return logging.DEBUG
