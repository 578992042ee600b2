"""NVIDIA / NVENC availability detection."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import List

from .config import StreamConfig

logger = logging.getLogger(__name__)

NVIDIA_DEVICES = ("/dev/nvidia0", "/dev/nvidiactl", "/dev/nvidia-uvm")


@dataclass
class NvidiaInfo:
    available: bool = False
    gpu_count: int = 0
    gpu_info: List[str] = field(default_factory=list)
    nvenc_supported: bool = False


def detect_nvidia_capabilities(ffmpeg: str = "ffmpeg") -> NvidiaInfo:
    info = NvidiaInfo()

    present = sum(1 for device in NVIDIA_DEVICES if os.path.exists(device))
    if present >= 2:
        info.available = True
        info.gpu_count = 1
        info.gpu_info = ["NVIDIA GPU (detected via device files)"]

    try:
        result = subprocess.run(  # noqa: S603
            [ffmpeg, "-hide_banner", "-encoders"],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            timeout=5,
            check=False,
        )
        info.nvenc_supported = "nvenc" in result.stdout
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("Could not list ffmpeg encoders: %s", exc)
        info.nvenc_supported = False
    return info


def log_hardware_acceleration(config: StreamConfig, ffmpeg: str = "ffmpeg") -> NvidiaInfo | None:
    if not config.hardware_acceleration:
        logger.info("Hardware acceleration disabled in config")
        return None

    info = detect_nvidia_capabilities(ffmpeg)
    if info.available:
        logger.info("NVIDIA GPU detected (gpus=%d, nvenc=%s)", info.gpu_count, info.nvenc_supported)
        if not info.nvenc_supported:
            logger.warning("NVENC encoder not listed by ffmpeg; hardware encodes will likely fail")
    else:
        logger.warning("Hardware acceleration enabled but no NVIDIA GPU detected")
    return info
