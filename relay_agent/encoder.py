"""ffmpeg command construction for the relay encoder."""

from __future__ import annotations

from typing import List

from .models import EncodeProfile

AUDIO_BITRATE = "128k"

HARDWARE_CODECS = {"H264": "h264_nvenc", "H265": "hevc_nvenc"}


def build_encoder_command(url: str, profile: EncodeProfile, ffmpeg: str = "ffmpeg") -> List[str]:
    """Low-latency matroska on stdout, progress stats on stderr."""
    input_args = [
        "-re",
        "-analyzeduration",
        "2000000",
        "-probesize",
        "2000000",
        "-fflags",
        "+genpts",
        "-i",
        url,
    ]

    if profile.hardware_accel:
        video_codec = HARDWARE_CODECS.get(profile.codec.upper(), "h264_nvenc")
        codec_args = [
            "-preset",
            "p4",
            "-tune",
            "ll",
            "-profile:v",
            "main",
            "-pix_fmt",
            "yuv420p",
            "-b_ref_mode",
            "0",
            "-rc-lookahead",
            "4",
            "-gpu",
            "0",
            "-strict_gop",
            "1",
            "-delay",
            "0",
            "-zerolatency",
            "1",
        ]
    else:
        video_codec = "libx264"
        codec_args = [
            "-preset",
            "veryfast",
            "-tune",
            "zerolatency",
            "-pix_fmt",
            "yuv420p",
            "-profile:v",
            "baseline",
            "-level",
            "3.1",
            "-rc-lookahead",
            "0",
        ]

    args = [
        ffmpeg,
        "-hide_banner",
        "-nostdin",
        "-stats",
        *input_args,
        "-map",
        "0:v:0",
        "-map",
        "0:a:0?",
        "-c:v",
        video_codec,
        "-s",
        profile.resolution,
        "-r",
        str(profile.fps),
        "-g",
        str(profile.fps * 2),
        "-b:v",
        f"{profile.bitrate_kbps}k",
        "-maxrate",
        f"{profile.max_bitrate_kbps}k",
        "-bufsize",
        f"{profile.max_bitrate_kbps * 2}k",
        *codec_args,
        "-c:a",
        "libopus",
        "-ac",
        "2",
        "-ar",
        "48000",
        "-b:a",
        AUDIO_BITRATE,
        "-af",
        "aresample=async=1",
        "-fflags",
        "nobuffer",
        "-flush_packets",
        "1",
        "-max_delay",
        "0",
        "-avoid_negative_ts",
        "make_zero",
        "-f",
        "matroska",
        "pipe:1",
    ]
    return args
