"""Standalone relay agent: switcher, health system and sink writer together."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional

from .config import AgentConfig
from .hardware import log_hardware_acceleration
from .health_system import HealthSystem
from .models import StreamSession
from .switcher import StreamSwitcher

logger = logging.getLogger(__name__)


def _write_chunk(handle, chunk: bytes) -> None:
    handle.write(chunk)
    handle.flush()


class LocalConnection:
    """Connection layer for runs where the sink is a local file or pipe.

    There is no remote session to lose, so it is healthy whenever it is open
    and reconnecting simply reopens it.
    """

    def __init__(self, channel_id: str = "local"):
        self._open = False
        self.channel_id = channel_id

    @property
    def connected(self) -> bool:
        return self._open

    @property
    def ready(self) -> bool:
        return self._open

    @property
    def latency_ms(self) -> float:
        return 0.0

    @property
    def voice_channel_id(self) -> Optional[str]:
        return self.channel_id if self._open else None

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def is_connection_healthy(self) -> bool:
        return self._open

    def is_voice_session_healthy(self) -> bool:
        return self._open

    async def reconnect(self) -> bool:
        self._open = True
        return True

    async def reconnect_voice(self) -> bool:
        return self._open

    async def reset(self) -> bool:
        self._open = True
        return True


class RelayAgent:
    def __init__(
        self,
        config: AgentConfig,
        connection=None,
        switcher: Optional[StreamSwitcher] = None,
        health: Optional[HealthSystem] = None,
    ):
        self.config = config
        self._owns_connection = connection is None
        self.connection = connection or LocalConnection()
        self.switcher = switcher or StreamSwitcher(config.stream)
        self.health = health or HealthSystem(config, self.connection, self.switcher)
        self._writer_task: Optional[asyncio.Task] = None
        self.bytes_relayed = 0

    async def start(self) -> None:
        log_hardware_acceleration(self.config.stream, ffmpeg=self.switcher.ffmpeg)
        if self._owns_connection:
            self.connection.open()
        self.health.health_monitor.notify_connected()
        await self.health.start()
        self._writer_task = asyncio.ensure_future(self._write_sink())
        logger.info("Relay agent started (output=%s)", self.config.output_path or "discard")

    async def play(self, url: str, abort: Optional[asyncio.Event] = None) -> StreamSession:
        """Start or hot-switch the relayed source."""
        return await self.switcher.switch_to(url, abort)

    async def stop_stream(self) -> None:
        await self.switcher.stop()
        self.health.on_stream_stopped()

    async def shutdown(self) -> None:
        logger.info("Shutting down relay agent")
        await self.health.stop()
        await self.switcher.cleanup()
        if self._writer_task is not None:
            await self._writer_task
            self._writer_task = None
        if self._owns_connection:
            self.connection.close()

    async def _write_sink(self) -> None:
        path = self.config.output_path
        if not path:
            async for chunk in self.switcher.output:
                self.bytes_relayed += len(chunk)
            return
        if path == "-":
            handle = sys.stdout.buffer
        else:
            handle = open(path, "ab")  # noqa: SIM115
        try:
            async for chunk in self.switcher.output:
                # blocking file or pipe IO stays off the event loop
                await asyncio.to_thread(_write_chunk, handle, chunk)
                self.bytes_relayed += len(chunk)
        finally:
            if handle is not sys.stdout.buffer:
                await asyncio.to_thread(handle.close)
        logger.info("Sink writer finished (%d bytes)", self.bytes_relayed)
