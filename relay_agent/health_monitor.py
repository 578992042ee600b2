"""Composite health checks over the process, the connection layer and the encoder."""

from __future__ import annotations

import copy
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Protocol

import psutil

from .events import (
    CONNECTION_DISCONNECTED,
    CONNECTION_ERROR,
    CRITICAL_ERROR,
    HEALTH_CHECK_COMPLETED,
    METRICS_UPDATED,
    VOICE_DISCONNECTED,
    EventBus,
)
from .models import (
    CheckOutcome,
    CheckStatus,
    GraceWindow,
    HealthCheckResult,
    HealthMetrics,
    HealthStatus,
    QualitySample,
    utcnow,
)

logger = logging.getLogger(__name__)

MB = 1024 * 1024
GB = 1024 * MB

MEMORY_WARN_MB = 1000
HEALTHY_MEMORY_LIMIT = 2 * GB
CRITICAL_MEMORY_LIMIT = 3 * GB
HEALTHY_ERROR_LIMIT = 10
CRITICAL_ERROR_LIMIT = 20

STREAM_GRACE_SECONDS = 30.0
QUALITY_SAMPLE_INTERVAL = 5.0
QUALITY_HISTORY_LIMIT = 60
CHECK_HISTORY_LIMIT = 20
SAMPLE_TIMES_LIMIT = 100


class ConnectionLayer(Protocol):
    """What the control plane needs from the transport it streams over."""

    @property
    def connected(self) -> bool: ...

    @property
    def ready(self) -> bool: ...

    @property
    def latency_ms(self) -> float: ...

    @property
    def voice_channel_id(self) -> Optional[str]: ...

    def is_connection_healthy(self) -> bool: ...

    def is_voice_session_healthy(self) -> bool: ...

    async def reconnect(self) -> bool: ...

    async def reconnect_voice(self) -> bool: ...

    async def reset(self) -> bool: ...


class HealthMonitor:
    """Samples metrics and runs the periodic composite health check.

    The encoder is never discovered from the process table: the switcher that
    owns it is passed in and asked directly.
    """

    def __init__(
        self,
        bus: EventBus,
        connection: ConnectionLayer,
        switcher=None,
        quality_source=None,
        scheduler=None,
        clock: Callable[[], float] = time.monotonic,
        process: Optional[psutil.Process] = None,
        grace_seconds: float = STREAM_GRACE_SECONDS,
    ):
        self.bus = bus
        self.connection = connection
        self.switcher = switcher
        self.quality_source = quality_source
        self.scheduler = scheduler
        self.clock = clock
        self.process = process or psutil.Process()
        self.grace = GraceWindow(grace_seconds, clock=clock)

        self._started_at = clock()
        self._metrics = HealthMetrics()
        self._error_count = 0
        self._warning_count = 0
        self._last_error: Optional[str] = None
        self._sample_times: Deque[float] = deque(maxlen=SAMPLE_TIMES_LIMIT)
        self._quality_history: Deque[QualitySample] = deque(maxlen=QUALITY_HISTORY_LIMIT)
        self._last_quality_sample: Optional[float] = None
        self._check_history: Deque[HealthCheckResult] = deque(maxlen=CHECK_HISTORY_LIMIT)
        self._job_ids: List[str] = []

    # Scheduling ------------------------------------------------------------

    def start(self, check_interval_ms: int = 30000, metrics_interval_ms: int = 5000) -> None:
        logger.info(
            "Starting health monitor (check every %dms, metrics every %dms)",
            check_interval_ms,
            metrics_interval_ms,
        )
        if self.scheduler is not None:
            self._job_ids = [
                self.scheduler.add_job(
                    self._check_tick,
                    "interval",
                    seconds=check_interval_ms / 1000,
                    id="health-check",
                    replace_existing=True,
                ).id,
                self.scheduler.add_job(
                    self._metrics_tick,
                    "interval",
                    seconds=metrics_interval_ms / 1000,
                    id="health-metrics",
                    replace_existing=True,
                ).id,
            ]
        self._metrics_tick()

    def stop(self) -> None:
        if self.scheduler is not None:
            for job_id in self._job_ids:
                if self.scheduler.get_job(job_id) is not None:
                    self.scheduler.remove_job(job_id)
        self._job_ids = []
        logger.info("Health monitor stopped")

    def _check_tick(self) -> None:
        try:
            self.perform_health_check()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Health check failed")
            self._record_failure(exc)

    def _metrics_tick(self) -> None:
        try:
            self.collect_metrics()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Metrics collection failed")
            self._record_failure(exc)

    def _record_failure(self, exc: BaseException) -> None:
        self._error_count += 1
        self._last_error = str(exc)

    # Sampling --------------------------------------------------------------

    def _memory_rss(self) -> int:
        return self.process.memory_info().rss

    def _encoder_state(self):
        if self.switcher is None:
            return False, None
        return self.switcher.is_encoder_running(), self.switcher.active_pid

    def collect_metrics(self) -> HealthMetrics:
        started = time.perf_counter()
        metrics = self._metrics

        metrics.uptime = self.clock() - self._started_at
        metrics.memory_rss = self._memory_rss()
        metrics.peak_memory_rss = max(metrics.peak_memory_rss, metrics.memory_rss)
        metrics.cpu_percent = self.process.cpu_percent(interval=None)

        conn = self.connection
        metrics.connection_connected = bool(conn.connected)
        metrics.connection_ready = bool(conn.ready)
        metrics.connection_latency_ms = conn.latency_ms or 0.0

        voice_ok = conn.is_voice_session_healthy()
        metrics.voice_connected = voice_ok
        metrics.voice_channel_id = conn.voice_channel_id if voice_ok else None

        running, pid = self._encoder_state()
        metrics.encoder_running = running
        metrics.encoder_pid = pid if running else None
        metrics.streaming = voice_ok and running
        metrics.stream_url = self.switcher.current_url if self.switcher is not None else None
        if metrics.streaming:
            self._sample_stream_quality()

        metrics.error_count = self._error_count
        metrics.warning_count = self._warning_count
        metrics.last_error = self._last_error

        self._sample_times.append((time.perf_counter() - started) * 1000)
        metrics.average_sample_ms = sum(self._sample_times) / len(self._sample_times)
        metrics.timestamp = utcnow()

        self.bus.emit(METRICS_UPDATED, metrics)
        return copy.deepcopy(metrics)

    def _sample_stream_quality(self) -> None:
        now = self.clock()
        if self._last_quality_sample is not None and now - self._last_quality_sample < QUALITY_SAMPLE_INTERVAL:
            return
        current = self.quality_source.current_metrics() if self.quality_source is not None else None
        self._quality_history.append(
            QualitySample(
                bitrate=current.bitrate if current else None,
                fps=current.frame_rate if current else None,
            )
        )
        self._last_quality_sample = now

    # Checks ----------------------------------------------------------------

    @staticmethod
    def _run_check(name: str, check: Callable[[], CheckOutcome]) -> CheckOutcome:
        started = time.perf_counter()
        try:
            outcome = check()
        except Exception as exc:  # noqa: BLE001
            logger.error("%s check failed: %s", name, exc)
            return CheckOutcome(CheckStatus.FAIL, f"{name.capitalize()} check failed: {exc}")
        outcome.duration_ms = (time.perf_counter() - started) * 1000
        return outcome

    def _check_connection(self) -> CheckOutcome:
        if self.connection.is_connection_healthy():
            return CheckOutcome(CheckStatus.PASS, f"Connected (latency: {self.connection.latency_ms or 0:.0f}ms)")
        return CheckOutcome(CheckStatus.FAIL, "Connection layer not connected")

    def _check_voice(self) -> CheckOutcome:
        if self.connection.is_voice_session_healthy():
            return CheckOutcome(CheckStatus.PASS, f"Connected to channel {self.connection.voice_channel_id}")
        return CheckOutcome(CheckStatus.WARN, "No active voice session")

    def _check_memory(self) -> CheckOutcome:
        used_mb = self._memory_rss() / MB
        if used_mb > MEMORY_WARN_MB:
            return CheckOutcome(CheckStatus.WARN, f"{used_mb:.2f}MB used (high usage)")
        return CheckOutcome(CheckStatus.PASS, f"{used_mb:.2f}MB used")

    def _check_stream(self) -> CheckOutcome:
        if self.grace.active():
            logger.debug("Stream check during grace period (%.0fs remaining)", self.grace.remaining())
            return CheckOutcome(CheckStatus.PASS, "Stream starting (grace period)")
        running, _ = self._encoder_state()
        if not running:
            return CheckOutcome(CheckStatus.FAIL, "Encoder not running")
        recent = list(self._quality_history)[-3:]
        zero_bitrate = sum(1 for sample in recent if not sample.bitrate)
        if recent and zero_bitrate >= 2:
            return CheckOutcome(CheckStatus.FAIL, "Stream reports no bitrate")
        return CheckOutcome(CheckStatus.PASS, "Stream is healthy")

    def _check_encoder(self) -> CheckOutcome:
        if self.grace.active():
            return CheckOutcome(CheckStatus.PASS, "Encoder starting (grace period)")
        running, pid = self._encoder_state()
        if running:
            return CheckOutcome(CheckStatus.PASS, f"Encoder running (pid={pid})")
        return CheckOutcome(CheckStatus.WARN, "No encoder process running")

    def perform_health_check(self, emit: bool = True) -> HealthCheckResult:
        checks: Dict[str, CheckOutcome] = {
            "connection": self._run_check("connection", self._check_connection),
            "voice": self._run_check("voice", self._check_voice),
            "memory": self._run_check("memory", self._check_memory),
        }
        if self._metrics.streaming:
            checks["stream"] = self._run_check("stream", self._check_stream)
        checks["encoder"] = self._run_check("encoder", self._check_encoder)

        statuses = [outcome.status for outcome in checks.values()]
        if CheckStatus.FAIL in statuses:
            status = HealthStatus.UNHEALTHY
        elif CheckStatus.WARN in statuses:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        result = HealthCheckResult(status=status, checks=checks)
        logger.debug("Health check completed: %s (%d checks)", status.value, len(checks))
        if emit:
            self._check_history.append(result)
            self.bus.emit(HEALTH_CHECK_COMPLETED, result)
        return result

    # Predicates --------------------------------------------------------------

    def is_healthy(self) -> bool:
        m = self._metrics
        return m.connection_connected and self._error_count < HEALTHY_ERROR_LIMIT and m.memory_rss < HEALTHY_MEMORY_LIMIT

    def is_ready(self) -> bool:
        return self._metrics.connection_ready

    def is_live(self) -> bool:
        return self.is_ready() and not self._has_critical_errors()

    def _has_critical_errors(self) -> bool:
        m = self._metrics
        return (
            self._error_count > CRITICAL_ERROR_LIMIT
            or not m.connection_connected
            or m.memory_rss > CRITICAL_MEMORY_LIMIT
        )

    # Collaborator notifications ----------------------------------------------

    def notify_connected(self) -> None:
        self._metrics.connection_connected = True
        self._metrics.connection_ready = True
        logger.info("Health monitor: connection established")

    def notify_disconnected(self) -> None:
        self._metrics.connection_connected = False
        self._metrics.connection_ready = False
        self._error_count += 1
        logger.warning("Health monitor: connection lost")
        self.bus.emit(CONNECTION_DISCONNECTED)

    def notify_voice_disconnected(self) -> None:
        self._metrics.voice_connected = False
        self._metrics.voice_channel_id = None
        if self._metrics.streaming:
            self._metrics.streaming = False
            logger.warning("Stream marked inactive after voice disconnection")
        logger.warning("Health monitor: voice session disconnected")
        self.bus.emit(VOICE_DISCONNECTED)

    def record_error(self, exc: BaseException) -> None:
        self._record_failure(exc)
        logger.error("Health monitor: connection error: %s", exc)
        self.bus.emit(CONNECTION_ERROR, str(exc))

    def record_warning(self, message: str = "") -> None:
        self._warning_count += 1
        logger.warning("Health monitor: connection warning: %s", message)

    def install_exception_handler(self, loop) -> None:
        """Route unhandled event-loop errors into the critical-error path."""
        loop.set_exception_handler(self._handle_loop_exception)

    def _handle_loop_exception(self, loop, context) -> None:
        exc = context.get("exception")
        message = str(exc) if exc is not None else context.get("message", "unknown error")
        self._error_count += 1
        self._last_error = message
        logger.error("Unhandled exception in event loop: %s", message, exc_info=exc)
        self.bus.emit(CRITICAL_ERROR, message)

    def notify_stream_started(self) -> None:
        self.grace.mark()
        self._quality_history.clear()
        self._last_quality_sample = None
        logger.debug("Stream start received, health grace period %.0fs", self.grace.threshold)

    # Queries -----------------------------------------------------------------

    def metrics(self) -> HealthMetrics:
        return copy.deepcopy(self._metrics)

    def quality_history(self) -> List[QualitySample]:
        return list(self._quality_history)

    def check_history(self) -> List[HealthCheckResult]:
        return list(self._check_history)

    @property
    def error_count(self) -> int:
        return self._error_count
