"""Configuration helpers for the relay agent."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

RECOVERY_ACTION_ENV = {
    "reconnect-connection": "RECOVERY_RECONNECT_CONNECTION",
    "reconnect-voice": "RECOVERY_RECONNECT_VOICE",
    "restart-stream": "RECOVERY_RESTART_STREAM",
    "memory-cleanup": "RECOVERY_MEMORY_CLEANUP",
    "restart-encoder": "RECOVERY_RESTART_ENCODER",
    "network-reset": "RECOVERY_NETWORK_RESET",
}


@dataclass
class StreamConfig:
    width: int = 1920
    height: int = 1080
    fps: int = 30
    bitrate_kbps: int = 2500
    max_bitrate_kbps: int = 4000
    video_codec: str = "H264"
    hardware_acceleration: bool = False
    adaptive_settings: bool = True


@dataclass
class MonitoringConfig:
    health_check_interval_ms: int = 30000
    metrics_interval_ms: int = 5000
    enable_stream_monitoring: bool = True


@dataclass
class RecoveryConfig:
    enabled: bool = True
    max_retries_per_hour: int = 10
    critical_error_threshold: int = 5
    auto_restart_threshold: int = 3
    actions_enabled: Dict[str, bool] = field(
        default_factory=lambda: {name: True for name in RECOVERY_ACTION_ENV}
    )

    def action_enabled(self, name: str) -> bool:
        return self.actions_enabled.get(name, True)


@dataclass
class HealthServerConfig:
    port: int = 8080
    host: str = "0.0.0.0"
    enable_recovery_endpoints: bool = False
    timeout_ms: int = 10000


@dataclass
class NotifierConfig:
    webhook_url: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: Optional[str] = None
    email_to: Optional[str] = None


@dataclass
class AgentConfig:
    project_name: str = "Relay Agent"
    log_level: str = "INFO"
    output_path: Optional[str] = None
    stream: StreamConfig = field(default_factory=StreamConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    health_server: HealthServerConfig = field(default_factory=HealthServerConfig)
    notifier: NotifierConfig | None = None


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def load_config() -> AgentConfig:
    """Load configuration from environment variables."""
    codec = os.getenv("STREAM_VIDEO_CODEC", "H264").upper()
    if codec not in {"H264", "H265"}:
        raise ValueError(f"STREAM_VIDEO_CODEC must be H264 or H265, got {codec!r}")

    stream = StreamConfig(
        width=_env_int("STREAM_WIDTH", 1920),
        height=_env_int("STREAM_HEIGHT", 1080),
        fps=_env_int("STREAM_FPS", 30),
        bitrate_kbps=_env_int("STREAM_BITRATE_KBPS", 2500),
        max_bitrate_kbps=_env_int("STREAM_MAX_BITRATE_KBPS", 4000),
        video_codec=codec,
        hardware_acceleration=_env_flag("HARDWARE_ACCELERATION", False),
        adaptive_settings=_env_flag("ADAPTIVE_SETTINGS", True),
    )

    monitoring = MonitoringConfig(
        health_check_interval_ms=_env_int("HEALTH_CHECK_INTERVAL", 30000),
        metrics_interval_ms=_env_int("METRICS_INTERVAL", 5000),
        enable_stream_monitoring=_env_flag("ENABLE_STREAM_MONITORING", True),
    )

    recovery = RecoveryConfig(
        enabled=_env_flag("AUTO_RECOVERY", True),
        max_retries_per_hour=_env_int("MAX_RECOVERY_RETRIES", 10),
        critical_error_threshold=_env_int("CRITICAL_ERROR_THRESHOLD", 5),
        auto_restart_threshold=_env_int("AUTO_RESTART_THRESHOLD", 3),
        actions_enabled={name: _env_flag(env, True) for name, env in RECOVERY_ACTION_ENV.items()},
    )

    health_server = HealthServerConfig(
        port=_env_int("HEALTH_PORT", 8080),
        host=os.getenv("HEALTH_HOST", "0.0.0.0"),
        enable_recovery_endpoints=_env_flag("ENABLE_RECOVERY_ENDPOINTS", False),
        timeout_ms=_env_int("HEALTH_TIMEOUT_MS", 10000),
    )

    notifier = NotifierConfig(
        webhook_url=os.getenv("NOTIFY_WEBHOOK_URL"),
        smtp_host=os.getenv("SMTP_HOST"),
        smtp_port=_env_int("SMTP_PORT", 587),
        smtp_username=os.getenv("SMTP_USERNAME"),
        smtp_password=os.getenv("SMTP_PASSWORD"),
        email_from=os.getenv("NOTIFY_EMAIL_FROM"),
        email_to=os.getenv("NOTIFY_EMAIL_TO"),
    )

    return AgentConfig(
        project_name=os.getenv("PROJECT_NAME", "Relay Agent"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        output_path=os.getenv("OUTPUT_PATH") or None,
        stream=stream,
        monitoring=monitoring,
        recovery=recovery,
        health_server=health_server,
        notifier=notifier,
    )
