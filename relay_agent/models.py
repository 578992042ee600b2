"""Domain models for relay sessions, health and recovery."""

from __future__ import annotations

import datetime as dt
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from dateutil.tz import tzutc

from .config import StreamConfig

MIN_FPS = 15
MAX_FPS = 120


def utcnow() -> dt.datetime:
    return dt.datetime.now(tzutc())


@dataclass
class ProbeResult:
    width: int = 1280
    height: int = 720
    fps: int = 30
    bitrate: Optional[int] = None
    codec: Optional[str] = None
    duration: Optional[float] = None


@dataclass
class EncodeProfile:
    width: int
    height: int
    fps: int
    bitrate_kbps: int
    max_bitrate_kbps: int
    codec: str = "H264"
    hardware_accel: bool = False

    @classmethod
    def from_config(cls, config: StreamConfig) -> "EncodeProfile":
        bitrate = config.bitrate_kbps or 4000
        return cls(
            width=(config.width or 1920) // 2 * 2,
            height=(config.height or 1080) // 2 * 2,
            fps=min(max(config.fps or 60, MIN_FPS), MAX_FPS),
            bitrate_kbps=bitrate,
            max_bitrate_kbps=max(config.max_bitrate_kbps or 6000, bitrate),
            codec=config.video_codec or "H264",
            hardware_accel=config.hardware_acceleration,
        )

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


class SwitcherState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    LIVE = "live"
    SWITCHING = "switching"
    DRAINING = "draining"
    ABORTED = "aborted"


@dataclass
class StreamSession:
    source_url: str
    active_profile: EncodeProfile
    started_at: dt.datetime = field(default_factory=utcnow)
    state: SwitcherState = SwitcherState.STARTING
    encoder_pid: Optional[int] = None


@dataclass
class GraceWindow:
    """Time window after a (re)start during which checks stay lenient."""

    threshold: float
    clock: Callable[[], float] = time.monotonic
    started: Optional[float] = None

    def mark(self) -> None:
        self.started = self.clock()

    def clear(self) -> None:
        self.started = None

    def age(self) -> float:
        if self.started is None:
            return 0.0
        return self.clock() - self.started

    def active(self) -> bool:
        return self.started is not None and self.age() < self.threshold

    def remaining(self) -> float:
        if self.started is None:
            return 0.0
        return max(0.0, self.threshold - self.age())


class CheckStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class CheckOutcome:
    status: CheckStatus
    message: str
    duration_ms: Optional[float] = None


@dataclass
class HealthCheckResult:
    status: HealthStatus
    checks: Dict[str, CheckOutcome]
    timestamp: dt.datetime = field(default_factory=utcnow)

    def check_status(self, name: str) -> Optional[CheckStatus]:
        outcome = self.checks.get(name)
        return outcome.status if outcome else None


@dataclass
class HealthMetrics:
    uptime: float = 0.0
    memory_rss: int = 0
    peak_memory_rss: int = 0
    cpu_percent: float = 0.0
    connection_connected: bool = False
    connection_ready: bool = False
    connection_latency_ms: float = 0.0
    voice_connected: bool = False
    voice_channel_id: Optional[str] = None
    streaming: bool = False
    stream_url: Optional[str] = None
    encoder_running: bool = False
    encoder_pid: Optional[int] = None
    last_error: Optional[str] = None
    error_count: int = 0
    warning_count: int = 0
    average_sample_ms: float = 0.0
    timestamp: dt.datetime = field(default_factory=utcnow)

    @property
    def memory_mb(self) -> float:
        return self.memory_rss / 1024 / 1024


@dataclass
class QualitySample:
    bitrate: Optional[float]
    fps: Optional[float]
    timestamp: dt.datetime = field(default_factory=utcnow)


class BufferHealth(str, Enum):
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class Resolution:
    width: int = 0
    height: int = 0


@dataclass
class StreamQualityMetrics:
    stream_url: Optional[str] = None
    stream_started_at: Optional[dt.datetime] = None
    stream_duration: float = 0.0
    frame_rate: float = 0.0
    bitrate: float = 0.0
    resolution: Resolution = field(default_factory=Resolution)
    dropped_frames: int = 0
    duplicate_frames: int = 0
    encoding_speed: float = 0.0
    bandwidth: float = 0.0
    packet_loss: float = 0.0
    error_count: int = 0
    warning_count: int = 0
    last_error: Optional[str] = None
    buffer_health: BufferHealth = BufferHealth.GOOD
    timestamp: dt.datetime = field(default_factory=utcnow)


class QualityStatus(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    DEGRADED = "degraded"
    POOR = "poor"
    CRITICAL = "critical"


@dataclass
class StreamHealthStatus:
    status: QualityStatus
    score: float
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    timestamp: dt.datetime = field(default_factory=utcnow)


class QualityPhase(str, Enum):
    IDLE = "idle"
    STARTUP = "startup"
    STEADY = "steady"
    ENDED = "ended"


@dataclass
class QualityAlert:
    severity: str
    status: StreamHealthStatus
    consecutive_count: int
    startup_phase: bool


@dataclass
class StreamEnded:
    exit_code: Optional[int]
    signal: Optional[str]
    duration: float
    final_metrics: StreamQualityMetrics
    timestamp: dt.datetime = field(default_factory=utcnow)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class RecoveryAction:
    name: str
    description: str
    severity: Severity
    cooldown_ms: int
    max_retries: int
    effect: Callable[[], Awaitable[bool]] = field(repr=False, compare=False)


@dataclass
class RecoveryAttempt:
    action_name: str
    success: bool
    duration_ms: float
    error: Optional[str] = None
    timestamp: dt.datetime = field(default_factory=utcnow)
