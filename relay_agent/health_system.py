"""Wires the monitors, the recovery system and the switcher together."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dateutil.tz import tzutc

from .config import AgentConfig, NotifierConfig
from .errors import RecoveryError
from .events import (
    ENCODER_ERROR,
    QUALITY_ALERT,
    RECOVERY_FAILED,
    STREAM_ENDED,
    EventBus,
)
from .health_monitor import HealthMonitor
from .models import QualityAlert, StreamEnded
from .notifier import Notifier
from .quality_monitor import StreamQualityMonitor
from .recovery import AutoRecoverySystem, terminate_process

logger = logging.getLogger(__name__)

QUALITY_RECOVERY_ACTIONS = ("restart-encoder", "restart-stream")


class HealthSystem:
    """Owns the shared scheduler and every monitoring component."""

    def __init__(
        self,
        config: AgentConfig,
        connection,
        switcher,
        bus: Optional[EventBus] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep=asyncio.sleep,
        terminate: Callable[[int], None] = terminate_process,
        process=None,
    ):
        self.config = config
        self.connection = connection
        self.switcher = switcher
        self.bus = bus or EventBus()
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or AsyncIOScheduler(timezone=tzutc())
        self.notifier = notifier or Notifier(config.notifier or NotifierConfig(), config.project_name)

        self.quality_monitor = StreamQualityMonitor(self.bus, scheduler=self.scheduler, clock=clock)
        self.health_monitor = HealthMonitor(
            self.bus,
            connection,
            switcher=switcher,
            quality_source=self.quality_monitor,
            scheduler=self.scheduler,
            clock=clock,
            process=process,
        )
        self.recovery = AutoRecoverySystem(
            config.recovery,
            self.bus,
            connection=connection,
            switcher=switcher,
            clock=clock,
            sleep=sleep,
            terminate=terminate,
        )
        self._started = False
        self._wire()

    def _wire(self) -> None:
        self.recovery.attach()
        self.bus.subscribe(QUALITY_ALERT, self._on_quality_alert)
        self.bus.subscribe(STREAM_ENDED, self._on_stream_ended)
        self.bus.subscribe(RECOVERY_FAILED, self.notifier.recovery_failed)
        self.bus.subscribe(ENCODER_ERROR, self._on_encoder_error)

        if self.switcher is not None:
            self.switcher.on_stderr(self._on_encoder_line)
            self.switcher.on_process_exit(self._on_encoder_exit)
            self.switcher.on_process_started(self._on_process_started)
            self.switcher.on_aborted(self.on_stream_stopped)

    # Switcher observers ------------------------------------------------------

    def _on_encoder_line(self, line: str) -> None:
        if self.config.monitoring.enable_stream_monitoring:
            self.quality_monitor.handle_telemetry_line(line)

    def _on_encoder_exit(self, exit_code: Optional[int], signal: Optional[str]) -> None:
        self.quality_monitor.handle_encoder_exit(exit_code, signal)

    def _on_process_started(self, process) -> None:
        url = self.switcher.current_url
        logger.debug("Encoder process started (pid=%s)", process.pid)
        if url:
            self.on_stream_started(url)

    # Stream lifecycle --------------------------------------------------------

    def on_stream_started(self, stream_url: str) -> None:
        self.recovery.update_stream_state(stream_url)
        self.health_monitor.notify_stream_started()
        logger.info(
            "Stream startup grace periods active for %s (health %.0fs, quality %.0fs, recovery %.0fs)",
            stream_url[:50],
            self.health_monitor.grace.threshold,
            self.quality_monitor.startup_grace,
            self.recovery.grace.threshold,
        )
        if self.config.monitoring.enable_stream_monitoring:
            self.quality_monitor.stop_monitoring()
            self.quality_monitor.start_monitoring(stream_url)

    def on_stream_stopped(self) -> None:
        logger.debug("Stream stopped")
        self.recovery.update_stream_state(None)
        self.quality_monitor.stop_monitoring()

    # Event handlers ----------------------------------------------------------

    async def _on_quality_alert(self, alert: QualityAlert) -> None:
        status = alert.status
        logger.warning(
            "Stream quality alert: %s score=%.1f consecutive=%d issues=%s",
            status.status.value,
            status.score,
            alert.consecutive_count,
            status.issues,
        )
        if alert.severity != "critical":
            return
        if alert.startup_phase:
            logger.info(
                "Critical quality during startup grace (%.0fs left), recovery suppressed",
                self.quality_monitor.startup_time_remaining(),
            )
            return
        self.notifier.quality_alert(alert)
        if not self.config.recovery.enabled:
            logger.warning("Stream quality critical, auto-recovery disabled")
            return
        logger.warning("Stream quality critical, forcing stream recovery")
        try:
            await self.recovery.force_recovery(QUALITY_RECOVERY_ACTIONS)
        except RecoveryError as exc:
            logger.error("Failed to trigger stream recovery: %s", exc)

    def _on_stream_ended(self, event: StreamEnded) -> None:
        final = event.final_metrics
        logger.info(
            "Stream ended (code=%s, duration=%.0fs, fps=%.1f, bitrate=%.0fkbps), no recovery needed",
            event.exit_code,
            event.duration,
            final.frame_rate,
            final.bitrate,
        )
        self.notifier.stream_ended(event)

    def _on_encoder_error(self, payload: Dict[str, Any]) -> None:
        logger.error("Encoder exited with an error: %s", payload)

    # Lifecycle ---------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            logger.warning("Health system already started")
            return
        monitoring = self.config.monitoring
        self.health_monitor.install_exception_handler(asyncio.get_running_loop())
        if not self.scheduler.running:
            self.scheduler.start()
        self.health_monitor.start(monitoring.health_check_interval_ms, monitoring.metrics_interval_ms)
        self._started = True
        logger.info(
            "Health system started (recovery=%s, stream monitoring=%s)",
            self.config.recovery.enabled,
            monitoring.enable_stream_monitoring,
        )

    async def stop(self) -> None:
        if not self._started:
            return
        self.health_monitor.stop()
        self.quality_monitor.stop_monitoring()
        if self._owns_scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.bus.drain()
        self._started = False
        logger.info("Health system stopped")

    # Status ------------------------------------------------------------------

    def is_healthy(self) -> bool:
        return self.health_monitor.is_healthy()

    def is_ready(self) -> bool:
        return self.health_monitor.is_ready()

    def is_live(self) -> bool:
        return self.health_monitor.is_live()

    def system_status(self) -> Dict[str, Any]:
        metrics = self.health_monitor.metrics()
        return {
            "healthy": self.is_healthy(),
            "ready": self.is_ready(),
            "live": self.is_live(),
            "uptime": metrics.uptime,
            "components": {
                "connection": metrics.connection_connected,
                "voice": metrics.voice_connected,
                "streaming": metrics.streaming,
                "recovery": not self.recovery.is_recovering,
            },
            "switcher": self.switcher.state.value if self.switcher is not None else None,
            "last_check": metrics.timestamp,
        }

    def detailed_status(self) -> Dict[str, Any]:
        quality = self.quality_monitor
        return {
            "system": self.system_status(),
            "health": self.health_monitor.perform_health_check(emit=False),
            "metrics": self.health_monitor.metrics(),
            "stream": {
                "phase": quality.phase.value,
                "startup_time_remaining": quality.startup_time_remaining(),
                "metrics": quality.current_metrics(),
                "quality": quality.current_quality(),
                "statistics": quality.stream_statistics(),
                "history": self.health_monitor.quality_history()[-10:],
            },
            "recovery": {
                **self.recovery.recovery_stats(),
                "grace_period": self.recovery.grace_period_status(),
            },
        }
