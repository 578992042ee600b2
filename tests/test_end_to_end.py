"""Full relay scenario: real switcher, fake encoder, simulated clock."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import FakeClock, FakeConnection, FakeLauncher, RecordingSink, fake_psutil_process
from relay_agent.config import AgentConfig, StreamConfig
from relay_agent.events import QUALITY_ALERT, RECOVERY_STARTED, STREAM_ENDED
from relay_agent.health_system import HealthSystem
from relay_agent.models import HealthStatus, QualityPhase, QualityStatus
from relay_agent.switcher import StreamSwitcher

STEADY_LINE = (
    "frame= {frame} fps= 59 q=23.0 size=   20480kB time=00:01:00.00 "
    "bitrate=9600.0kbits/s speed=1.02x\n"
)


async def build(log):
    clock = FakeClock()
    config = AgentConfig(stream=StreamConfig(adaptive_settings=False))
    launcher = FakeLauncher(log)
    switcher = StreamSwitcher(
        config.stream,
        analyzer=MagicMock(),
        launcher=launcher,
        output=RecordingSink(log),
        startup_check=0.01,
        drain_timeout=0.1,
        stop_timeout=0.1,
    )
    system = HealthSystem(
        config,
        FakeConnection(),
        switcher,
        scheduler=MagicMock(),
        notifier=MagicMock(),
        clock=clock,
        sleep=AsyncMock(),
        terminate=MagicMock(),
        process=fake_psutil_process(),
    )
    return clock, launcher, switcher, system


class TestSteadyRelay:
    """A healthy two-minute relay never triggers recovery."""

    @pytest.mark.asyncio
    async def test_two_minutes_of_healthy_stream(self, event_log):
        """Test steady 59fps telemetry keeps every monitor green."""
        clock, launcher, switcher, system = await build(event_log)
        alerts, batches = [], []
        system.bus.subscribe(QUALITY_ALERT, alerts.append)
        system.bus.subscribe(RECOVERY_STARTED, batches.append)
        launcher.script("A")

        await switcher.switch_to("http://source/live.m3u8")
        encoder = launcher.launched[0]
        assert system.quality_monitor.phase == QualityPhase.STARTUP

        for tick in range(1, 61):
            encoder.emit_stderr(STEADY_LINE.format(frame=tick * 118))
            await asyncio.sleep(0.001)
            clock.advance(2)
            system.quality_monitor.collect_metrics()
            if tick % 5 == 0:
                system.quality_monitor.analyze_quality()
            if tick % 15 == 0:
                system.health_monitor.collect_metrics()
                system.health_monitor.perform_health_check()
            await system.bus.drain()

        assert alerts == []
        assert batches == []
        system.recovery.terminate.assert_not_called()
        assert system.quality_monitor.phase == QualityPhase.STEADY
        assert system.quality_monitor.current_quality().status == QualityStatus.EXCELLENT
        assert system.health_monitor.check_history()[-1].status == HealthStatus.HEALTHY
        assert system.quality_monitor.stream_statistics()["average_bitrate"] == 9600

        await system.stop()
        await switcher.cleanup()

    @pytest.mark.asyncio
    async def test_hot_switch_restarts_quality_session(self, event_log):
        """Test a source switch opens a fresh quality session without ending the stream."""
        clock, launcher, switcher, system = await build(event_log)
        ended = []
        system.bus.subscribe(STREAM_ENDED, ended.append)
        launcher.script("A")
        launcher.script("B")

        await switcher.switch_to("http://one")
        launcher.launched[0].emit_stderr(STEADY_LINE.format(frame=10))
        await asyncio.sleep(0.001)
        clock.advance(90)

        await switcher.switch_to("http://two")

        assert ended == []
        assert ("terminate", "A") in event_log
        assert system.quality_monitor.phase == QualityPhase.STARTUP
        assert system.quality_monitor.current_metrics().stream_url == "http://two"
        assert system.recovery.grace_period_status()["stream_age"] == 0
        await switcher.cleanup()
