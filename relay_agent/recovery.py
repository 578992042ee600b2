"""Cooldown-gated recovery actions and the policy that triggers them."""

from __future__ import annotations

import asyncio
import dataclasses
import gc
import inspect
import logging
import os
import time
from collections import defaultdict, deque
from typing import Awaitable, Callable, Deque, Dict, Iterable, List, Optional

import psutil

from .config import RecoveryConfig
from .errors import RecoveryBusy, RecoveryError, UnknownRecoveryAction
from .events import (
    CONNECTION_DISCONNECTED,
    CONNECTION_ERROR,
    CRITICAL_ERROR,
    HEALTH_CHECK_COMPLETED,
    METRICS_UPDATED,
    RECOVERY_COMPLETED,
    RECOVERY_FAILED,
    RECOVERY_STARTED,
    VOICE_DISCONNECTED,
    EventBus,
)
from .models import (
    CheckStatus,
    GraceWindow,
    HealthCheckResult,
    HealthMetrics,
    HealthStatus,
    RecoveryAction,
    RecoveryAttempt,
    Severity,
)

logger = logging.getLogger(__name__)

MB = 1024 * 1024
MEMORY_WARN_BYTES = 1500 * MB
MEMORY_CRITICAL_BYTES = 2500 * MB

RECOVERY_GRACE_SECONDS = 60.0
ACTION_DELAY_SECONDS = 2.0
STREAM_RESTART_PAUSE = 3.0
HOUR = 3600.0
HISTORY_LIMIT = 100
CONNECTION_ERROR_STREAK = 3

# Connection-level actions stay allowed while a stream is in its startup grace
GRACE_EXEMPT = ("reconnect-connection", "reconnect-voice")

FAILED_CHECK_ACTIONS = (
    ("connection", "reconnect-connection"),
    ("voice", "reconnect-voice"),
    ("stream", "restart-stream"),
    ("memory", "memory-cleanup"),
)


def terminate_process(code: int) -> None:
    logging.shutdown()
    os._exit(code)


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


class AutoRecoverySystem:
    """Runs one recovery batch at a time under rate limits and cooldowns.

    Batches that arrive while another is executing are dropped, not queued.
    Repeated fully failed batches end the process so that a supervisor can
    restart the agent from scratch.
    """

    def __init__(
        self,
        config: RecoveryConfig,
        bus: EventBus,
        connection=None,
        switcher=None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        terminate: Callable[[int], None] = terminate_process,
        memory_probe: Optional[Callable[[], int]] = None,
        grace_seconds: float = RECOVERY_GRACE_SECONDS,
        action_delay: float = ACTION_DELAY_SECONDS,
    ):
        self.config = config
        self.bus = bus
        self.connection = connection
        self.switcher = switcher
        self.clock = clock
        self.sleep = sleep
        self.terminate = terminate
        self.memory_probe = memory_probe or (lambda: psutil.Process().memory_info().rss)
        self.action_delay = action_delay
        self.grace = GraceWindow(grace_seconds, clock=clock)

        self._actions: Dict[str, RecoveryAction] = {a.name: a for a in self._build_catalog()}
        self._cooldowns: Dict[str, float] = {}
        self._action_failures: Dict[str, int] = defaultdict(int)
        self._history: Deque[RecoveryAttempt] = deque(maxlen=HISTORY_LIMIT)
        self._attempt_times: Deque[float] = deque()
        self._recovering = False
        self._consecutive_failures = 0
        self._unhealthy_streak = 0
        self._connection_errors = 0
        self._stream_url: Optional[str] = None
        self._unsubscribers: List[Callable[[], None]] = []

    def _build_catalog(self) -> List[RecoveryAction]:
        return [
            RecoveryAction(
                "reconnect-connection", "Reconnect the connection layer", Severity.MEDIUM, 30000, 3,
                self._reconnect_connection,
            ),
            RecoveryAction(
                "reconnect-voice", "Re-establish the voice session", Severity.MEDIUM, 15000, 5,
                self._reconnect_voice,
            ),
            RecoveryAction(
                "restart-stream", "Stop and restart the current stream", Severity.HIGH, 60000, 2,
                self._restart_stream,
            ),
            RecoveryAction(
                "memory-cleanup", "Force garbage collection", Severity.LOW, 10000, 10,
                self._memory_cleanup,
            ),
            RecoveryAction(
                "restart-encoder", "Hot-restart the encoder process", Severity.HIGH, 30000, 3,
                self._restart_encoder,
            ),
            RecoveryAction(
                "network-reset", "Reset all network connections", Severity.CRITICAL, 120000, 1,
                self._network_reset,
            ),
        ]

    # Action effects ------------------------------------------------------

    async def _reconnect_connection(self) -> bool:
        if self.connection is None:
            return False
        logger.info("Attempting connection reconnect")
        return bool(await _resolve(self.connection.reconnect()))

    async def _reconnect_voice(self) -> bool:
        if self.connection is None:
            return False
        logger.info("Attempting voice session reconnect")
        return bool(await _resolve(self.connection.reconnect_voice()))

    async def _restart_stream(self) -> bool:
        url = self._stream_url
        if self.switcher is None or not url:
            logger.warning("No active stream to restart")
            return False
        logger.info("Restarting stream %s", url[:50])
        await self.switcher.stop()
        await self.sleep(STREAM_RESTART_PAUSE)
        await self.switcher.switch_to(url)
        return True

    async def _memory_cleanup(self) -> bool:
        collected = gc.collect()
        logger.info("Memory cleanup collected %d objects", collected)
        return True

    async def _restart_encoder(self) -> bool:
        if self.switcher is None or not self.switcher.current_url:
            logger.warning("No encoder to restart")
            return False
        logger.info("Restarting encoder for %s", self.switcher.current_url[:50])
        await self.switcher.restart_encoder()
        return True

    async def _network_reset(self) -> bool:
        if self.connection is None:
            return False
        logger.info("Attempting network reset")
        return bool(await _resolve(self.connection.reset()))

    # Event wiring ----------------------------------------------------------

    def attach(self) -> None:
        bus = self.bus
        self._unsubscribers = [
            bus.subscribe(HEALTH_CHECK_COMPLETED, self._on_health_check),
            bus.subscribe(CONNECTION_DISCONNECTED, self._on_disconnected),
            bus.subscribe(VOICE_DISCONNECTED, self._on_voice_disconnected),
            bus.subscribe(CONNECTION_ERROR, self._on_connection_error),
            bus.subscribe(CRITICAL_ERROR, self._on_critical_error),
            bus.subscribe(METRICS_UPDATED, self._on_metrics),
        ]
        logger.info("Auto-recovery monitoring attached (enabled=%s)", self.config.enabled)

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def _on_health_check(self, result: HealthCheckResult) -> None:
        if self._recovering:
            return
        if result.status == HealthStatus.HEALTHY:
            if self._unhealthy_streak or self._action_failures:
                logger.info("Health restored, closing recovery incident")
            self._unhealthy_streak = 0
            self._connection_errors = 0
            self._action_failures.clear()
            return

        actions: List[str] = []
        if result.status == HealthStatus.UNHEALTHY:
            for check, action in FAILED_CHECK_ACTIONS:
                if result.check_status(check) == CheckStatus.FAIL:
                    actions.append(action)
        elif result.check_status("memory") == CheckStatus.WARN:
            actions.append("memory-cleanup")

        if self.grace.active():
            logger.debug(
                "Health check %s during grace period (%.0fs remaining)",
                result.status.value,
                self.grace.remaining(),
            )
        else:
            self._unhealthy_streak += 1
            if self._unhealthy_streak >= self.config.critical_error_threshold:
                actions.append("network-reset")

        if actions:
            logger.info(
                "Health check %s, requesting recovery %s (streak=%d)",
                result.status.value,
                actions,
                self._unhealthy_streak,
            )
            await self.trigger_recovery(actions)

    async def _on_disconnected(self, _payload=None) -> None:
        await self.trigger_recovery(["reconnect-connection"])

    async def _on_voice_disconnected(self, _payload=None) -> None:
        await self.trigger_recovery(["reconnect-voice"])

    async def _on_connection_error(self, _payload=None) -> None:
        self._connection_errors += 1
        if self._connection_errors >= CONNECTION_ERROR_STREAK:
            self._connection_errors = 0
            await self.trigger_recovery(["memory-cleanup", "reconnect-connection"])

    async def _on_critical_error(self, _payload=None) -> None:
        await self.trigger_recovery(["memory-cleanup", "restart-encoder", "network-reset"])

    async def _on_metrics(self, metrics: HealthMetrics) -> None:
        if metrics.memory_rss > MEMORY_CRITICAL_BYTES:
            await self.trigger_recovery(["memory-cleanup", "restart-stream"])
        elif metrics.memory_rss > MEMORY_WARN_BYTES:
            await self.trigger_recovery(["memory-cleanup"])

    # Execution -------------------------------------------------------------

    def _recent_attempt_count(self) -> int:
        cutoff = self.clock() - HOUR
        while self._attempt_times and self._attempt_times[0] <= cutoff:
            self._attempt_times.popleft()
        return len(self._attempt_times)

    def _cooldown_remaining(self, action: RecoveryAction) -> float:
        last = self._cooldowns.get(action.name)
        if last is None:
            return 0.0
        return max(0.0, action.cooldown_ms / 1000 - (self.clock() - last))

    async def trigger_recovery(self, names: Iterable[str]) -> List[RecoveryAttempt]:
        """Run an automatic recovery batch; returns the attempts actually made."""
        return await self._run_batch(list(names), manual=False)

    async def force_recovery(self, names: Iterable[str]) -> List[RecoveryAttempt]:
        """Operator-requested batch: no cooldowns, no grace suppression."""
        names = list(names)
        if not names:
            raise RecoveryError("No recovery actions provided")
        unknown = [name for name in names if name not in self._actions]
        if unknown:
            raise UnknownRecoveryAction(unknown)
        if self._recovering:
            raise RecoveryBusy("A recovery batch is already running")
        logger.info("Forcing recovery actions %s", names)
        return await self._run_batch(names, manual=True)

    async def _run_batch(self, names: List[str], manual: bool) -> List[RecoveryAttempt]:
        if self._recovering:
            logger.debug("Recovery already in progress, dropping %s", names)
            return []
        if not manual and not self.config.enabled:
            logger.debug("Auto-recovery disabled, skipping %s", names)
            return []
        recent = self._recent_attempt_count()
        if recent >= self.config.max_retries_per_hour:
            logger.warning(
                "Maximum recovery attempts per hour exceeded (%d/%d)",
                recent,
                self.config.max_retries_per_hour,
            )
            return []

        names = list(dict.fromkeys(names))
        if not manual and self.grace.active():
            allowed = [name for name in names if name in GRACE_EXEMPT]
            if len(allowed) < len(names):
                logger.info(
                    "Stream in startup grace period (%.0fs left), suppressing %s",
                    self.grace.remaining(),
                    [name for name in names if name not in GRACE_EXEMPT],
                )
            names = allowed
            if not names:
                return []

        self._recovering = True
        logger.info("Starting recovery batch %s (consecutive failures=%d)", names, self._consecutive_failures)
        self.bus.emit(RECOVERY_STARTED, names)
        results: List[RecoveryAttempt] = []
        try:
            for name in names:
                action = self._actions.get(name)
                if action is None:
                    logger.warning("Unknown recovery action %s", name)
                    continue
                if not self.config.action_enabled(name):
                    logger.debug("Recovery action %s disabled in config", name)
                    continue
                if not manual:
                    remaining = self._cooldown_remaining(action)
                    if remaining > 0:
                        logger.debug("Recovery action %s on cooldown (%.1fs left)", name, remaining)
                        continue
                    if self._action_failures[name] >= action.max_retries:
                        logger.warning(
                            "Recovery action %s gave up after %d failures this incident",
                            name,
                            self._action_failures[name],
                        )
                        continue
                if self._recent_attempt_count() >= self.config.max_retries_per_hour:
                    logger.warning("Hourly recovery ceiling reached mid-batch, stopping")
                    break
                if results:
                    await self.sleep(self.action_delay)

                attempt = await self._execute(action)
                results.append(attempt)
                self._history.append(attempt)
                self._attempt_times.append(self.clock())
                self._cooldowns[name] = self.clock()
                if attempt.success:
                    self._action_failures.pop(name, None)
                else:
                    self._action_failures[name] += 1
        finally:
            self._recovering = False

        succeeded = sum(1 for attempt in results if attempt.success)
        logger.info("Recovery batch completed: %d/%d succeeded", succeeded, len(results))
        self.bus.emit(RECOVERY_COMPLETED, results)

        if results and not succeeded:
            self._consecutive_failures += 1
            if self._consecutive_failures >= self.config.auto_restart_threshold:
                self._fatal(
                    f"{self._consecutive_failures} consecutive recovery batches failed",
                    results,
                )
                return results
        elif succeeded:
            self._consecutive_failures = max(0, self._consecutive_failures - 1)

        if any(attempt.action_name == "memory-cleanup" for attempt in results):
            rss = self.memory_probe()
            if rss > MEMORY_CRITICAL_BYTES:
                self._fatal(f"Memory still at {rss / MB:.0f}MB after cleanup", results)
        return results

    async def _execute(self, action: RecoveryAction) -> RecoveryAttempt:
        logger.info("Executing recovery action %s (%s, %s)", action.name, action.description, action.severity.value)
        started = time.perf_counter()
        try:
            success = bool(await action.effect())
        except Exception as exc:  # noqa: BLE001
            duration = (time.perf_counter() - started) * 1000
            logger.error("Recovery action %s raised: %s", action.name, exc)
            return RecoveryAttempt(action.name, False, duration, error=str(exc))
        duration = (time.perf_counter() - started) * 1000
        if success:
            logger.info("Recovery action %s succeeded in %.0fms", action.name, duration)
        else:
            logger.warning("Recovery action %s failed in %.0fms", action.name, duration)
        return RecoveryAttempt(action.name, success, duration)

    def _fatal(self, reason: str, results: List[RecoveryAttempt]) -> None:
        logger.critical("Recovery exhausted, terminating for restart: %s", reason)
        self.bus.emit(RECOVERY_FAILED, {"reason": reason, "attempts": results})
        self.terminate(1)

    # State and queries -------------------------------------------------------

    def update_stream_state(self, stream_url: Optional[str] = None) -> None:
        self._stream_url = stream_url
        if stream_url:
            self.grace.mark()
            logger.debug("Recovery grace period started (%.0fs)", self.grace.threshold)
        else:
            self.grace.clear()

    def update_config(self, **changes) -> RecoveryConfig:
        self.config = dataclasses.replace(self.config, **changes)
        logger.info("Recovery config updated: %s", changes)
        return self.config

    @property
    def is_recovering(self) -> bool:
        return self._recovering

    def in_grace_period(self) -> bool:
        return self.grace.active()

    def grace_period_status(self) -> Dict[str, float]:
        return {
            "is_active": self.grace.active(),
            "time_remaining": self.grace.remaining(),
            "stream_age": self.grace.age(),
        }

    def recovery_history(self, limit: Optional[int] = None) -> List[RecoveryAttempt]:
        history = list(self._history)
        return history[-limit:] if limit else history

    def recovery_stats(self) -> Dict[str, object]:
        successful = sum(1 for attempt in self._history if attempt.success)
        return {
            "total_attempts": len(self._history),
            "successful_attempts": successful,
            "failed_attempts": len(self._history) - successful,
            "recent_attempts": self._recent_attempt_count(),
            "consecutive_failures": self._consecutive_failures,
            "unhealthy_streak": self._unhealthy_streak,
            "is_recovering": self._recovering,
        }

    def available_actions(self) -> List[str]:
        return list(self._actions)
