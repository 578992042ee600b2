"""Fakes standing in for processes, clocks and the connection layer."""

import asyncio
import itertools
from typing import List, Optional
from unittest.mock import MagicMock


from relay_agent.switcher import OutputSink

MB = 1024 * 1024

_pids = itertools.count(4000)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProcess:
    """Stands in for ``asyncio.subprocess.Process``, recording signals in a shared log."""

    def __init__(self, name: str, log: List[tuple], exits_on_terminate: bool = True):
        self.name = name
        self.log = log
        self.pid = next(_pids)
        self.returncode: Optional[int] = None
        self.argv: List[str] = []
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.exits_on_terminate = exits_on_terminate
        self._exited = asyncio.Event()

    def emit(self, data: bytes) -> None:
        if self.returncode is None:
            self.stdout.feed_data(data)

    def emit_stderr(self, text: str) -> None:
        if self.returncode is None:
            self.stderr.feed_data(text.encode())

    def finish(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.log.append(("exit", self.name, code))
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def terminate(self) -> None:
        self.log.append(("terminate", self.name))
        if self.exits_on_terminate:
            self.finish(-15)

    def kill(self) -> None:
        self.log.append(("kill", self.name))
        self.finish(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeLauncher:
    """Hands out scripted FakeProcess objects in order.

    ``behaviour`` per process: "output" emits one chunk right after launch,
    "silent" never writes, "crash" exits with code 1 straight away.
    """

    def __init__(self, log: List[tuple]):
        self.log = log
        self.plan: List[tuple] = []
        self.launched: List[FakeProcess] = []

    def script(self, name: str, behaviour: str = "output", **kwargs) -> None:
        self.plan.append((name, behaviour, kwargs))

    async def __call__(self, *argv, **kwargs) -> FakeProcess:
        name, behaviour, options = self.plan.pop(0)
        process = FakeProcess(name, self.log, **options)
        process.argv = list(argv)
        self.launched.append(process)
        self.log.append(("launch", name))
        loop = asyncio.get_running_loop()
        if behaviour == "output":
            loop.call_soon(process.emit, f"{name}-0".encode())
        elif behaviour == "crash":
            loop.call_soon(process.finish, 1)
        return process


class RecordingSink(OutputSink):
    def __init__(self, log: List[tuple]):
        super().__init__()
        self.log = log

    async def write(self, chunk: bytes) -> None:
        self.log.append(("sink", chunk))
        await super().write(chunk)


class FakeConnection:
    def __init__(self, connected: bool = True, voice: bool = True):
        self.connected = connected
        self.ready = connected
        self.latency_ms = 42.0
        self.voice = voice
        self.reconnect_result = True
        self.reconnect_calls = 0
        self.voice_calls = 0
        self.reset_calls = 0

    @property
    def voice_channel_id(self):
        return "channel-1" if self.voice else None

    def is_connection_healthy(self) -> bool:
        return self.connected

    def is_voice_session_healthy(self) -> bool:
        return self.voice

    async def reconnect(self) -> bool:
        self.reconnect_calls += 1
        return self.reconnect_result

    async def reconnect_voice(self) -> bool:
        self.voice_calls += 1
        return True

    async def reset(self) -> bool:
        self.reset_calls += 1
        return True


def fake_psutil_process(rss_mb: float = 200, cpu: float = 3.5) -> MagicMock:
    process = MagicMock()
    process.memory_info.return_value = MagicMock(rss=int(rss_mb * MB))
    process.cpu_percent.return_value = cpu
    return process


