"""Stream quality scoring driven by encoder telemetry."""

from __future__ import annotations

import copy
import datetime as dt
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from .events import (
    ENCODER_ERROR,
    QUALITY_ALERT,
    QUALITY_ANALYSIS,
    STREAM_ENDED,
    STREAM_METRICS_UPDATED,
    STREAM_MONITORING_STARTED,
    STREAM_MONITORING_STOPPED,
    EventBus,
)
from .models import (
    BufferHealth,
    QualityAlert,
    QualityPhase,
    QualityStatus,
    Resolution,
    StreamEnded,
    StreamHealthStatus,
    StreamQualityMetrics,
    utcnow,
)
from .telemetry import EncoderMessage, EndOfStream, ProgressStats, ResolutionInfo, parse_telemetry_line

logger = logging.getLogger(__name__)

METRICS_INTERVAL = 2.0
ANALYSIS_INTERVAL = 10.0
STARTUP_GRACE = 60.0
STALE_TIMEOUT = 30.0
BUFFER_STALL = 10.0
HISTORY_LIMIT = 300

STARTUP_PENALTY_SCALE = 0.1
STARTUP_ALERT_TICKS = 6
STEADY_ALERT_TICKS = 3

QUALITY_THRESHOLDS: Dict[str, Dict[str, float]] = {
    "excellent": {"fps": 58, "bitrate": 8000, "dropped_frames": 0, "speed": 0.98},
    "good": {"fps": 55, "bitrate": 6000, "dropped_frames": 5, "speed": 0.95},
    "degraded": {"fps": 45, "bitrate": 4000, "dropped_frames": 20, "speed": 0.9},
    "poor": {"fps": 30, "bitrate": 2000, "dropped_frames": 50, "speed": 0.8},
}

# Floors used while the encoder is still warming up
STARTUP_FLOORS = {"fps": 5, "bitrate": 100, "speed": 0.5}


def status_for_score(score: float) -> QualityStatus:
    if score >= 90:
        return QualityStatus.EXCELLENT
    if score >= 75:
        return QualityStatus.GOOD
    if score >= 60:
        return QualityStatus.DEGRADED
    if score >= 40:
        return QualityStatus.POOR
    return QualityStatus.CRITICAL


def score_metrics(metrics: StreamQualityMetrics, startup: bool = False) -> StreamHealthStatus:
    """Weighted-penalty score of a metrics snapshot, clamped to [0, 100]."""
    issues: List[str] = []
    recommendations: List[str] = []
    score = 100.0
    scale = STARTUP_PENALTY_SCALE if startup else 1.0
    poor = QUALITY_THRESHOLDS["poor"]
    degraded = QUALITY_THRESHOLDS["degraded"]

    fps_floor = STARTUP_FLOORS["fps"] if startup else poor["fps"]
    if metrics.frame_rate < fps_floor:
        score -= (10 if startup else 30) * scale
        if not startup:
            issues.append("Very low frame rate")
            recommendations.append("Reduce resolution or bitrate")
    elif metrics.frame_rate < degraded["fps"] and not startup:
        score -= 15
        issues.append("Below target frame rate")
        recommendations.append("Check CPU/GPU usage")

    bitrate_floor = STARTUP_FLOORS["bitrate"] if startup else poor["bitrate"]
    if metrics.bitrate < bitrate_floor:
        score -= (5 if startup else 25) * scale
        if not startup:
            issues.append("Very low bitrate")
            recommendations.append("Check network connection")
    elif metrics.bitrate < degraded["bitrate"] and not startup:
        score -= 10
        issues.append("Below optimal bitrate")

    if metrics.dropped_frames > poor["dropped_frames"]:
        score -= 20 * scale
        issues.append("High frame drops")
        recommendations.append("Reduce encoding settings or check system resources")
    elif metrics.dropped_frames > degraded["dropped_frames"]:
        score -= 10 * scale
        issues.append("Some frame drops detected")

    speed_floor = STARTUP_FLOORS["speed"] if startup else poor["speed"]
    if metrics.encoding_speed < speed_floor:
        score -= (5 if startup else 25) * scale
        if not startup:
            issues.append("Encoding falling behind real-time")
            recommendations.append("Reduce quality settings or upgrade hardware")
    elif metrics.encoding_speed < degraded["speed"] and not startup:
        score -= 10
        issues.append("Encoding speed below optimal")

    if metrics.buffer_health == BufferHealth.CRITICAL:
        score -= (5 if startup else 30) * scale
        if not startup:
            issues.append("Critical buffer issues")
            recommendations.append("Restart stream or check network")
    elif metrics.buffer_health == BufferHealth.WARNING and not startup:
        score -= 15
        issues.append("Buffer health degraded")

    score = min(100.0, max(0.0, score))
    return StreamHealthStatus(
        status=status_for_score(score),
        score=round(score, 2),
        issues=issues,
        recommendations=recommendations,
    )


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    minutes, hours = seconds // 60, seconds // 3600
    if hours > 0:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


class StreamQualityMonitor:
    """Per-session quality state machine: startup, steady, ended."""

    def __init__(
        self,
        bus: EventBus,
        scheduler=None,
        clock: Callable[[], float] = time.monotonic,
        startup_grace: float = STARTUP_GRACE,
        stale_timeout: float = STALE_TIMEOUT,
        metrics_interval: float = METRICS_INTERVAL,
        analysis_interval: float = ANALYSIS_INTERVAL,
        history_limit: int = HISTORY_LIMIT,
    ):
        self.bus = bus
        self.scheduler = scheduler
        self.clock = clock
        self.startup_grace = startup_grace
        self.stale_timeout = stale_timeout
        self.metrics_interval = metrics_interval
        self.analysis_interval = analysis_interval
        self._metrics = StreamQualityMetrics()
        self._history: Deque[StreamQualityMetrics] = deque(maxlen=history_limit)
        self._monitoring = False
        self._ended = False
        self._started_at: Optional[float] = None
        self._last_telemetry: Optional[float] = None
        self._consecutive_poor = 0
        self._job_ids: List[str] = []

    # State ---------------------------------------------------------------

    @property
    def phase(self) -> QualityPhase:
        if self._ended:
            return QualityPhase.ENDED
        if not self._monitoring:
            return QualityPhase.IDLE
        if self.in_startup():
            return QualityPhase.STARTUP
        return QualityPhase.STEADY

    @property
    def is_monitoring(self) -> bool:
        return self._monitoring

    def in_startup(self) -> bool:
        return (
            self._monitoring
            and self._started_at is not None
            and self.clock() - self._started_at < self.startup_grace
        )

    def startup_time_remaining(self) -> float:
        if not self.in_startup():
            return 0.0
        return max(0.0, self.startup_grace - (self.clock() - self._started_at))

    def _elapsed(self) -> float:
        return self.clock() - self._started_at if self._started_at is not None else 0.0

    # Lifecycle -----------------------------------------------------------

    def start_monitoring(self, stream_url: Optional[str] = None) -> None:
        if self._monitoring:
            logger.warning("Stream monitoring already active")
            return
        self._monitoring = True
        self._ended = False
        self._started_at = self.clock()
        self._last_telemetry = None
        self._consecutive_poor = 0
        self._metrics = StreamQualityMetrics(stream_url=stream_url, stream_started_at=utcnow())

        logger.info(
            "Starting stream quality monitoring for %s (startup grace %.0fs)",
            (stream_url or "unknown")[:50],
            self.startup_grace,
        )
        self._schedule()
        self.bus.emit(STREAM_MONITORING_STARTED, {"stream_url": stream_url, "timestamp": utcnow()})

    def _schedule(self) -> None:
        if self.scheduler is None:
            return
        self._job_ids = [
            self.scheduler.add_job(
                self.collect_metrics,
                "interval",
                seconds=self.metrics_interval,
                id="stream-quality-metrics",
                replace_existing=True,
            ).id,
            self.scheduler.add_job(
                self.analyze_quality,
                "interval",
                seconds=self.analysis_interval,
                id="stream-quality-analysis",
                replace_existing=True,
            ).id,
        ]

    def _unschedule(self) -> None:
        if self.scheduler is None:
            return
        for job_id in self._job_ids:
            if self.scheduler.get_job(job_id) is not None:
                self.scheduler.remove_job(job_id)
        self._job_ids = []

    def stop_monitoring(self) -> None:
        if not self._monitoring and not self._ended:
            return
        was_monitoring = self._monitoring
        self._monitoring = False
        self._ended = False
        self._unschedule()

        if was_monitoring:
            duration = self._elapsed()
            logger.info(
                "Stopped stream quality monitoring after %s (avg bitrate %dkbps, errors %d)",
                format_duration(duration),
                self.average_bitrate(),
                self._metrics.error_count,
            )
            self.bus.emit(
                STREAM_MONITORING_STOPPED,
                {"duration": duration, "final_metrics": copy.deepcopy(self._metrics)},
            )
        self._metrics = StreamQualityMetrics()
        self._started_at = None
        self._last_telemetry = None
        self._consecutive_poor = 0

    # Encoder input -------------------------------------------------------

    def handle_telemetry_line(self, line: str) -> None:
        if not self._monitoring:
            return
        record = parse_telemetry_line(line)
        if record is None:
            return
        metrics = self._metrics
        if isinstance(record, ProgressStats):
            metrics.frame_rate = record.fps
            metrics.encoding_speed = record.speed
            metrics.bitrate = record.bitrate
            if record.drop is not None:
                metrics.dropped_frames = record.drop
            if record.dup is not None:
                metrics.duplicate_frames = record.dup
            self._last_telemetry = self.clock()
        elif isinstance(record, ResolutionInfo):
            metrics.resolution = Resolution(width=record.width, height=record.height)
            logger.debug("Detected stream resolution %dx%d", record.width, record.height)
        elif isinstance(record, EndOfStream):
            self.handle_stream_end(0, None)
        elif isinstance(record, EncoderMessage):
            if record.level >= logging.ERROR:
                metrics.error_count += 1
                metrics.last_error = record.text
            else:
                metrics.warning_count += 1

    def handle_encoder_exit(self, exit_code: Optional[int], signal: Optional[str] = None) -> None:
        if not self._monitoring:
            return
        logger.info("Encoder exited (code=%s, signal=%s)", exit_code, signal)
        if exit_code not in (0, None):
            self._metrics.error_count += 1
            self.bus.emit(ENCODER_ERROR, {"exit_code": exit_code, "signal": signal})
        self.handle_stream_end(exit_code, signal)

    def handle_stream_end(self, exit_code: Optional[int], signal: Optional[str]) -> None:
        if not self._monitoring or self._ended:
            return
        duration = self._elapsed()
        final = copy.deepcopy(self._metrics)
        final.stream_duration = duration
        logger.info(
            "Stream ended after %s (code=%s, signal=%s, fps=%.1f, bitrate=%.0fkbps, speed=%.2fx)",
            format_duration(duration),
            exit_code,
            signal,
            final.frame_rate,
            final.bitrate,
            final.encoding_speed,
        )
        self._monitoring = False
        self._ended = True
        self._consecutive_poor = 0
        self._unschedule()
        self.bus.emit(
            STREAM_ENDED,
            StreamEnded(exit_code=exit_code, signal=signal, duration=duration, final_metrics=final),
        )

    # Periodic ticks --------------------------------------------------------

    def collect_metrics(self) -> None:
        if not self._monitoring:
            return
        metrics = self._metrics
        metrics.stream_duration = self._elapsed()
        metrics.bandwidth = round(metrics.bitrate * 1.2)
        if metrics.encoding_speed < 0.95:
            metrics.packet_loss = max(0.0, (1 - metrics.encoding_speed) * 10)
        else:
            metrics.packet_loss = 0.0
        metrics.buffer_health = self._buffer_health()
        metrics.timestamp = utcnow()
        self._history.append(copy.deepcopy(metrics))
        self.bus.emit(STREAM_METRICS_UPDATED, metrics)

    def _buffer_health(self) -> BufferHealth:
        metrics = self._metrics
        if self._last_telemetry is None or self.clock() - self._last_telemetry > BUFFER_STALL:
            return BufferHealth.CRITICAL
        if metrics.encoding_speed < 0.8:
            return BufferHealth.CRITICAL
        if metrics.encoding_speed < 0.9 or metrics.dropped_frames > 50:
            return BufferHealth.WARNING
        return BufferHealth.GOOD

    def analyze_quality(self) -> Optional[StreamHealthStatus]:
        if not self._monitoring:
            logger.debug("Stream quality analysis skipped - not monitoring")
            return None

        # silence after telemetry means the stream finished, not that it broke
        if self._last_telemetry is not None:
            silence = self.clock() - self._last_telemetry
            if silence > self.stale_timeout:
                logger.warning("Stale stream detected - no encoder output for %.0fs", silence)
                self.handle_stream_end(None, "STALE")
                return None

        startup = self.in_startup()
        health = score_metrics(self._metrics, startup=startup)

        if startup:
            if health.status == QualityStatus.CRITICAL:
                self._consecutive_poor += 1
            else:
                self._consecutive_poor = 0
            logger.debug(
                "Stream quality (startup): %s score=%.1f remaining=%.0fs",
                health.status.value,
                health.score,
                self.startup_time_remaining(),
            )
            if self._consecutive_poor >= STARTUP_ALERT_TICKS:
                logger.warning("Critical stream issues detected during startup: %s", health.issues)
                self.bus.emit(
                    QUALITY_ALERT,
                    QualityAlert(
                        severity="critical",
                        status=health,
                        consecutive_count=self._consecutive_poor,
                        startup_phase=True,
                    ),
                )
        else:
            if health.status in (QualityStatus.POOR, QualityStatus.CRITICAL):
                self._consecutive_poor += 1
            else:
                self._consecutive_poor = 0
            logger.debug(
                "Stream quality: %s score=%.1f consecutive_poor=%d",
                health.status.value,
                health.score,
                self._consecutive_poor,
            )
            if self._consecutive_poor >= STEADY_ALERT_TICKS:
                logger.warning("Persistent stream quality issues detected: %s", health.issues)
                self.bus.emit(
                    QUALITY_ALERT,
                    QualityAlert(
                        severity="critical" if health.status == QualityStatus.CRITICAL else "warning",
                        status=health,
                        consecutive_count=self._consecutive_poor,
                        startup_phase=False,
                    ),
                )

        self.bus.emit(QUALITY_ANALYSIS, health)
        return health

    # Queries ---------------------------------------------------------------

    def current_metrics(self) -> StreamQualityMetrics:
        return copy.deepcopy(self._metrics)

    def metrics_history(self, minutes: float = 10) -> List[StreamQualityMetrics]:
        cutoff = utcnow() - dt.timedelta(minutes=minutes)
        return [copy.deepcopy(m) for m in self._history if m.timestamp > cutoff]

    def current_quality(self) -> StreamHealthStatus:
        return score_metrics(self._metrics, startup=self.in_startup())

    def is_stream_healthy(self) -> bool:
        return self.current_quality().status in (QualityStatus.EXCELLENT, QualityStatus.GOOD)

    def average_bitrate(self) -> int:
        if not self._history:
            return 0
        return round(sum(m.bitrate for m in self._history) / len(self._history))

    def stream_statistics(self) -> Dict[str, float]:
        if not self._history:
            return {
                "uptime": 0,
                "average_fps": 0,
                "average_bitrate": 0,
                "total_frames": 0,
                "total_drops": 0,
                "quality_score": 0,
            }
        recent = list(self._history)[-30:]
        avg_fps = sum(m.frame_rate for m in recent) / len(recent)
        avg_bitrate = sum(m.bitrate for m in recent) / len(recent)
        return {
            "uptime": self._metrics.stream_duration,
            "average_fps": round(avg_fps, 2),
            "average_bitrate": round(avg_bitrate),
            "total_frames": round(avg_fps * self._metrics.stream_duration),
            "total_drops": self._metrics.dropped_frames,
            "quality_score": self.current_quality().score,
        }
