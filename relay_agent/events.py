"""Small observer hub used to fan events out between components."""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)

METRICS_UPDATED = "metrics-updated"
HEALTH_CHECK_COMPLETED = "health-check-completed"
CONNECTION_DISCONNECTED = "connection-disconnected"
VOICE_DISCONNECTED = "voice-disconnected"
CONNECTION_ERROR = "connection-error"
CRITICAL_ERROR = "critical-error"

STREAM_MONITORING_STARTED = "stream-monitoring-started"
STREAM_MONITORING_STOPPED = "stream-monitoring-stopped"
STREAM_METRICS_UPDATED = "stream-metrics-updated"
QUALITY_ANALYSIS = "quality-analysis"
QUALITY_ALERT = "quality-alert"
STREAM_ENDED = "stream-ended"
ENCODER_ERROR = "encoder-error"

RECOVERY_STARTED = "recovery-started"
RECOVERY_COMPLETED = "recovery-completed"
RECOVERY_FAILED = "recovery-failed"

Handler = Callable[[Any], Any]


class EventBus:
    """Synchronous fan-out; coroutine handlers are scheduled as tasks.

    Each handler receives its own deep copy of the payload so no subscriber
    can mutate the publisher's state.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)

        return unsubscribe

    def emit(self, event: str, payload: Any = None) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(copy.deepcopy(payload))
            except Exception:  # noqa: BLE001
                logger.exception("Handler for %s failed", event)
                continue
            if inspect.isawaitable(result):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    logger.warning("No running event loop, dropping async handler for %s", event)
                    if inspect.iscoroutine(result):
                        result.close()
                    continue
                task = asyncio.ensure_future(result, loop=loop)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async event handler failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for handler tasks scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
