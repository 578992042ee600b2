"""Hot-switching of the ffmpeg encode pipeline behind a continuous output sink."""

from __future__ import annotations

import asyncio
import logging
import signal as signal_module
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from .analyzer import StreamAnalyzer
from .config import StreamConfig
from .encoder import build_encoder_command
from .errors import ProbeFailed, SwitchFailed, SwitchSuperseded
from .models import EncodeProfile, StreamSession, SwitcherState
from .planner import plan_encode_settings
from .telemetry import classify_encoder_line

logger = logging.getLogger(__name__)
encoder_logger = logging.getLogger("relay_agent.encoder")

StderrListener = Callable[[str], None]
ExitListener = Callable[[Optional[int], Optional[str]], None]
ProcessListener = Callable[["EncoderProcess"], None]


class EncoderProcess(Protocol):
    """The subset of ``asyncio.subprocess.Process`` the switcher relies on."""

    pid: int
    returncode: Optional[int]
    stdout: Any
    stderr: Any

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> int: ...


class OutputSink:
    """Continuous downstream byte channel that outlives individual encoders."""

    def __init__(self, max_chunks: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_chunks)
        self._closed = False
        self.bytes_written = 0
        self.chunks_written = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, chunk: bytes) -> None:
        if self._closed:
            return
        await self._queue.put(chunk)
        self.bytes_written += len(chunk)
        self.chunks_written += 1

    async def read(self) -> bytes:
        """Next chunk, or ``b""`` once the sink is closed and drained."""
        if self._closed and self._queue.empty():
            return b""
        chunk = await self._queue.get()
        return chunk or b""

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(b"")
        except asyncio.QueueFull:
            pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.read()
        if not chunk:
            raise StopAsyncIteration
        return chunk


def _signal_name(returncode: Optional[int]) -> Optional[str]:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal_module.Signals(-returncode).name
    except ValueError:
        return str(-returncode)


class StreamSwitcher:
    """Owns the active encoder process and the sink it feeds.

    A switch launches the replacement first, lets it take over the sink on its
    first chunk of output, and only then retires the previous process.
    """

    def __init__(
        self,
        config: StreamConfig,
        analyzer: Optional[StreamAnalyzer] = None,
        launcher: Optional[Callable[..., Awaitable[EncoderProcess]]] = None,
        output: Optional[OutputSink] = None,
        startup_check: float = 0.5,
        first_output_timeout: float = 10.0,
        drain_timeout: float = 0.7,
        stop_timeout: float = 5.0,
        chunk_size: int = 64 * 1024,
        ffmpeg: str = "ffmpeg",
    ):
        self.config = config
        self.analyzer = analyzer or StreamAnalyzer()
        self.output = output or OutputSink()
        self.startup_check = startup_check
        self.first_output_timeout = first_output_timeout
        self.drain_timeout = drain_timeout
        self.stop_timeout = stop_timeout
        self.chunk_size = chunk_size
        self.ffmpeg = ffmpeg
        self._launcher = launcher or asyncio.create_subprocess_exec

        self._state = SwitcherState.IDLE
        self._session: Optional[StreamSession] = None
        self._process: Optional[EncoderProcess] = None
        self._pending: Optional[EncoderProcess] = None
        self._output_owner: Optional[EncoderProcess] = None
        self._handover: Optional[asyncio.Event] = None
        self._last_profile: Optional[EncodeProfile] = None
        self._lock = asyncio.Lock()
        self._switch_task: Optional[asyncio.Task] = None
        self._process_tasks: Dict[int, List[asyncio.Task]] = {}
        self._reapers: Set[asyncio.Task] = set()

        self._stderr_listeners: List[StderrListener] = []
        self._exit_listeners: List[ExitListener] = []
        self._started_listeners: List[ProcessListener] = []
        self._aborted_listeners: List[Callable[[], None]] = []

    # Observers ---------------------------------------------------------

    def on_stderr(self, callback: StderrListener) -> None:
        self._stderr_listeners.append(callback)

    def remove_stderr_listener(self, callback: StderrListener) -> None:
        if callback in self._stderr_listeners:
            self._stderr_listeners.remove(callback)

    def on_process_exit(self, callback: ExitListener) -> None:
        self._exit_listeners.append(callback)

    def on_process_started(self, callback: ProcessListener) -> None:
        self._started_listeners.append(callback)

    def on_aborted(self, callback: Callable[[], None]) -> None:
        """Called once a live encoder has been torn down by its abort event."""
        self._aborted_listeners.append(callback)

    # Queries -----------------------------------------------------------

    @property
    def state(self) -> SwitcherState:
        return self._state

    @property
    def session(self) -> Optional[StreamSession]:
        return self._session

    @property
    def current_url(self) -> Optional[str]:
        return self._session.source_url if self._session else None

    @property
    def active_pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def last_profile(self) -> Optional[EncodeProfile]:
        return self._last_profile

    def is_encoder_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    # Switching ---------------------------------------------------------

    async def switch_to(self, url: str, abort: Optional[asyncio.Event] = None) -> StreamSession:
        """Start streaming ``url``, superseding any switch still in flight."""
        previous = self._switch_task
        if previous is not None and not previous.done():
            logger.info("Superseding in-flight switch for %s", url)
            previous.cancel()
        task = asyncio.ensure_future(self._switch(url, abort))
        self._switch_task = task
        try:
            return await task
        except asyncio.CancelledError:
            # cancelled before it ever ran, by a newer request
            if task.cancelled() and self._switch_task is not task:
                raise SwitchSuperseded(f"Switch to {url} superseded by a newer request") from None
            raise

    async def restart_encoder(self) -> Optional[StreamSession]:
        url = self.current_url
        if not url:
            return None
        return await self.switch_to(url)

    async def _switch(self, url: str, abort: Optional[asyncio.Event]) -> StreamSession:
        try:
            await self._lock.acquire()
        except asyncio.CancelledError:
            if asyncio.current_task() is not self._switch_task:
                raise SwitchSuperseded(f"Switch to {url} superseded while waiting for the previous switch") from None
            raise
        try:
            return await self._switch_locked(url, abort)
        finally:
            self._lock.release()

    async def _switch_locked(self, url: str, abort: Optional[asyncio.Event]) -> StreamSession:
        previous = self._process if self.is_encoder_running() else None
        prior_state = self._state
        self._state = SwitcherState.SWITCHING if previous else SwitcherState.STARTING
        logger.info("Switching stream source to %s (live=%s)", url, previous is not None)

        process: Optional[EncoderProcess] = None
        handover = asyncio.Event()
        try:
            profile = await self._guarded(self._resolve_profile(url), abort)
            # the first chunk of new output claims the sink via this event
            self._handover = handover
            process = await self._launch(url, profile)
            if abort is not None:
                self._track(process, self._watch_abort(process, abort))
            await self._confirm_started(process, abort)
            if previous is not None:
                await self._await_handover(process, handover, abort)
            else:
                self._output_owner = process
        except asyncio.CancelledError:
            await self._abandon(process, previous)
            self._state = prior_state if previous else SwitcherState.IDLE
            if asyncio.current_task() is not self._switch_task:
                raise SwitchSuperseded(f"Switch to {url} superseded by a newer request") from None
            raise
        except SwitchSuperseded:
            await self._abandon(process, previous)
            self._state = SwitcherState.ABORTED if previous is None else prior_state
            raise
        except SwitchFailed:
            await self._abandon(process, previous)
            self._state = prior_state if previous else SwitcherState.IDLE
            raise
        except Exception as exc:
            logger.exception("Unexpected error while switching to %s", url)
            await self._abandon(process, previous)
            self._state = prior_state if previous else SwitcherState.IDLE
            raise SwitchFailed(f"Switch to {url} failed: {exc}") from exc
        finally:
            if self._handover is handover:
                self._handover = None

        self._process = process
        self._pending = None
        self._last_profile = profile
        session = StreamSession(
            source_url=url,
            active_profile=profile,
            state=SwitcherState.LIVE,
            encoder_pid=process.pid,
        )
        self._session = session
        for callback in list(self._started_listeners):
            try:
                callback(process)
            except Exception:  # noqa: BLE001
                logger.exception("Process-started listener failed")

        if previous is not None:
            self._state = SwitcherState.DRAINING
            reaper = asyncio.ensure_future(self._retire(previous, self.drain_timeout))
            self._reapers.add(reaper)
            reaper.add_done_callback(self._reapers.discard)
            try:
                await asyncio.shield(reaper)
            except asyncio.CancelledError:
                if asyncio.current_task() is not self._switch_task:
                    raise SwitchSuperseded(f"Switch to {url} superseded while draining") from None
                raise

        if self._process is process:
            self._state = SwitcherState.LIVE
        logger.info("Stream switch completed for %s (pid=%s, %s@%dfps)", url, process.pid, profile.resolution, profile.fps)
        return session

    async def _resolve_profile(self, url: str) -> EncodeProfile:
        config = self.config
        if not config.adaptive_settings:
            return EncodeProfile.from_config(config)
        try:
            probe = await self.analyzer.analyze(url)
        except ProbeFailed as exc:
            fallback = self._last_profile or EncodeProfile.from_config(config)
            logger.warning("Failed to analyze input stream, using fallback settings: %s", exc)
            return fallback
        return plan_encode_settings(probe, config.hardware_acceleration, config.video_codec)

    async def _launch(self, url: str, profile: EncodeProfile) -> EncoderProcess:
        cmd = build_encoder_command(url, profile, ffmpeg=self.ffmpeg)
        logger.info(
            "Launching %s encoder: %s %dkbps",
            "hardware" if profile.hardware_accel else "software",
            profile.resolution,
            profile.bitrate_kbps,
        )
        logger.debug("Encoder command: %s", " ".join(cmd))
        try:
            process = await self._launcher(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Failed to start encoder for %s: %s", url, exc)
            raise SwitchFailed(f"Encoder failed to start: {exc}") from exc

        self._pending = process
        self._track(process, self._read_stderr(process))
        self._track(process, self._forward_output(process))
        self._track(process, self._watch_exit(process))
        return process

    async def _confirm_started(self, process: EncoderProcess, abort: Optional[asyncio.Event]) -> None:
        if self.startup_check > 0:
            await self._guarded(asyncio.sleep(self.startup_check), abort)
        else:
            await asyncio.sleep(0)
        if process.returncode is not None:
            raise SwitchFailed(f"Encoder exited during startup with code {process.returncode}")

    async def _await_handover(
        self, process: EncoderProcess, handover: asyncio.Event, abort: Optional[asyncio.Event]
    ) -> None:
        if handover.is_set():
            return
        exited = asyncio.ensure_future(process.wait())
        try:
            await self._guarded(
                handover.wait(),
                abort,
                timeout=self.first_output_timeout,
                also=exited,
            )
        except asyncio.TimeoutError:
            raise SwitchFailed("Replacement encoder produced no output") from None
        finally:
            exited.cancel()
        if not handover.is_set():
            raise SwitchFailed(f"Replacement encoder exited with code {process.returncode}")

    async def _guarded(self, awaitable, abort: Optional[asyncio.Event], timeout: Optional[float] = None, also=None):
        """Await ``awaitable`` unless the abort event fires or ``also`` completes first."""
        if abort is not None and abort.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise SwitchSuperseded("Switch aborted")
        task = asyncio.ensure_future(awaitable)
        waiters = {task}
        abort_task = None
        if abort is not None:
            abort_task = asyncio.ensure_future(abort.wait())
            waiters.add(abort_task)
        if also is not None:
            waiters.add(also)
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (task, abort_task):
                if waiter is not None and not waiter.done():
                    waiter.cancel()
        if abort_task is not None and abort_task in done:
            raise SwitchSuperseded("Switch aborted")
        if task in done:
            return task.result()
        if also is not None and also in done:
            return None
        raise asyncio.TimeoutError

    # Per-process tasks -------------------------------------------------

    def _track(self, process: EncoderProcess, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._process_tasks.setdefault(id(process), []).append(task)

    async def _forward_output(self, process: EncoderProcess) -> None:
        reader = process.stdout
        if reader is None:
            return
        chunks = 0
        while True:
            chunk = await reader.read(self.chunk_size)
            if not chunk:
                break
            if self._output_owner is not process:
                if process is self._pending and self._handover is not None:
                    self._output_owner = process
                    self._handover.set()
                else:
                    continue
            await self.output.write(chunk)
            chunks += 1
            if chunks % 1000 == 0:
                logger.debug("Stream data flowing (pid=%s, chunks=%d)", process.pid, chunks)
        logger.debug("Encoder output ended (pid=%s)", process.pid)

    async def _read_stderr(self, process: EncoderProcess) -> None:
        reader = process.stderr
        if reader is None:
            return
        buffer = b""
        while True:
            data = await reader.read(4096)
            if not data:
                break
            # ffmpeg ends progress lines with \r rather than \n
            buffer += data.replace(b"\r", b"\n")
            *lines, buffer = buffer.split(b"\n")
            for raw in lines:
                self._dispatch_stderr(process, raw.decode("utf-8", errors="replace").strip())
        if buffer:
            self._dispatch_stderr(process, buffer.decode("utf-8", errors="replace").strip())

    def _dispatch_stderr(self, process: EncoderProcess, line: str) -> None:
        if not line:
            return
        encoder_logger.log(classify_encoder_line(line), "%s", line)
        if process is not self._process and process is not self._pending:
            return
        for callback in list(self._stderr_listeners):
            try:
                callback(line)
            except Exception:  # noqa: BLE001
                logger.exception("Error in stderr listener")

    async def _watch_exit(self, process: EncoderProcess) -> None:
        returncode = await process.wait()
        signal_name = _signal_name(returncode)
        if process is not self._process:
            logger.debug("Retired encoder exited (pid=%s, code=%s)", process.pid, returncode)
            return
        logger.info("Encoder process ended (pid=%s, code=%s, signal=%s)", process.pid, returncode, signal_name)
        self._process = None
        if self._output_owner is process:
            self._output_owner = None
        if self._session is not None:
            self._session.state = SwitcherState.IDLE
        if self._state in (SwitcherState.LIVE, SwitcherState.DRAINING):
            self._state = SwitcherState.IDLE
        for callback in list(self._exit_listeners):
            try:
                callback(returncode, signal_name)
            except Exception:  # noqa: BLE001
                logger.exception("Error in exit listener")

    async def _watch_abort(self, process: EncoderProcess, abort: asyncio.Event) -> None:
        await abort.wait()
        if process is self._process:
            logger.info("Aborting encoder process (pid=%s)", process.pid)
            self._process = None
            if self._output_owner is process:
                self._output_owner = None
            self._session = None
            self._state = SwitcherState.ABORTED
            await self._retire(process, self.stop_timeout)
            for callback in list(self._aborted_listeners):
                try:
                    callback()
                except Exception:  # noqa: BLE001
                    logger.exception("Error in abort listener")

    # Teardown ----------------------------------------------------------

    async def _retire(self, process: EncoderProcess, timeout: float) -> None:
        """SIGTERM, bounded wait, then SIGKILL."""
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Encoder pid=%s ignored SIGTERM, killing", process.pid)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(process.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.error("Encoder pid=%s did not exit after SIGKILL", process.pid)
        self._release_tasks(process)

    async def _abandon(self, process: Optional[EncoderProcess], previous: Optional[EncoderProcess]) -> None:
        """Tear down a replacement that never went live and give the sink back."""
        if process is not None:
            if self._pending is process:
                self._pending = None
            if self._output_owner is process:
                self._output_owner = None
        if previous is not None and previous.returncode is None:
            self._output_owner = previous
        if process is not None:
            await asyncio.shield(self._retire(process, self.stop_timeout))

    def _release_tasks(self, process: EncoderProcess) -> None:
        for task in self._process_tasks.pop(id(process), []):
            if not task.done() and task is not asyncio.current_task():
                task.cancel()

    async def stop(self) -> None:
        """Terminate the active encoder. Safe to call repeatedly."""
        task = self._switch_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, SwitchSuperseded, SwitchFailed):
                pass
        process = self._process
        self._process = None
        self._output_owner = None
        self._session = None
        if process is not None:
            logger.info("Stopping encoder (pid=%s)", process.pid)
            await self._retire(process, self.stop_timeout)
        self._state = SwitcherState.IDLE

    async def cleanup(self) -> None:
        await self.stop()
        if self._reapers:
            await asyncio.gather(*list(self._reapers), return_exceptions=True)
        self.output.close()
