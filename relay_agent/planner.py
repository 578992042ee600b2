"""Derive encode settings from a probe of the source."""

from __future__ import annotations

import logging

from .models import MAX_FPS, MIN_FPS, EncodeProfile, ProbeResult

logger = logging.getLogger(__name__)

MAX_WIDTH = 2560
MAX_HEIGHT = 1440

PIXELS_1440P = 2560 * 1440
PIXELS_1080P = 1920 * 1080
PIXELS_720P = 1280 * 720

# (pixel floor, hardware base kbps, software base kbps)
BITRATE_TIERS = (
    (PIXELS_1440P, 6000, 4000),
    (PIXELS_1080P, 4000, 3000),
    (PIXELS_720P, 2500, 2000),
    (0, 1500, 1000),
)

MAX_BITRATE_FACTOR = 1.3


def bucket_fps(fps: int) -> int:
    target = min(fps, 60)
    if target >= 50:
        return 60
    if target > 40:
        return 50
    if target >= 30:
        return target
    if target > 25:
        return 30
    return 25


def base_bitrate(pixels: int, hardware_accel: bool) -> int:
    for floor, hardware, software in BITRATE_TIERS:
        if pixels >= floor:
            return hardware if hardware_accel else software
    return BITRATE_TIERS[-1][2]


def fps_factor(fps: int) -> float:
    if fps >= 50:
        return 1.6
    if fps > 30:
        return 1.3
    return 1.0


def plan_encode_settings(probe: ProbeResult, hardware_accel: bool, codec: str = "H264") -> EncodeProfile:
    """Pure mapping of probe results to an encode profile."""
    width, height = probe.width, probe.height
    if width > MAX_WIDTH or height > MAX_HEIGHT:
        width, height = MAX_WIDTH, MAX_HEIGHT
    width = width // 2 * 2
    height = height // 2 * 2

    fps = min(max(bucket_fps(probe.fps), MIN_FPS), MAX_FPS)

    bitrate = round(base_bitrate(width * height, hardware_accel) * fps_factor(fps))
    max_bitrate = round(bitrate * MAX_BITRATE_FACTOR)

    logger.info(
        "Planned encode settings: %dx%d@%s -> %dx%d@%d %dkbps (max %dkbps, hw=%s)",
        probe.width,
        probe.height,
        probe.fps,
        width,
        height,
        fps,
        bitrate,
        max_bitrate,
        hardware_accel,
    )
    return EncodeProfile(
        width=width,
        height=height,
        fps=fps,
        bitrate_kbps=bitrate,
        max_bitrate_kbps=max_bitrate,
        codec=codec,
        hardware_accel=hardware_accel,
    )
