"""Tests for HealthMonitor metrics and composite checks."""

from unittest.mock import MagicMock

import pytest

from fakes import FakeConnection, fake_psutil_process
from relay_agent.events import (
    CONNECTION_DISCONNECTED,
    CONNECTION_ERROR,
    CRITICAL_ERROR,
    HEALTH_CHECK_COMPLETED,
    METRICS_UPDATED,
    EventBus,
)
from relay_agent.health_monitor import HealthMonitor
from relay_agent.models import CheckStatus, HealthStatus, StreamQualityMetrics


def running_switcher(running=True, pid=4242, url="http://a"):
    switcher = MagicMock()
    switcher.is_encoder_running.return_value = running
    switcher.active_pid = pid
    switcher.current_url = url
    return switcher


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    seen = {}
    for name in (METRICS_UPDATED, HEALTH_CHECK_COMPLETED, CONNECTION_DISCONNECTED, CONNECTION_ERROR, CRITICAL_ERROR):
        seen[name] = []
        bus.subscribe(name, seen[name].append)
    return seen


def make_monitor(bus, clock, connection=None, switcher=None, quality=None, rss_mb=200):
    return HealthMonitor(
        bus,
        connection or FakeConnection(),
        switcher=switcher,
        quality_source=quality,
        clock=clock,
        process=fake_psutil_process(rss_mb=rss_mb),
    )


class TestMetrics:
    """Tests for collect_metrics."""

    def test_collect_metrics(self, bus, clock, events):
        """Test process and connection readings end up in the snapshot."""
        monitor = make_monitor(bus, clock)
        clock.advance(12)

        metrics = monitor.collect_metrics()

        assert metrics.uptime == 12
        assert metrics.memory_mb == 200
        assert metrics.cpu_percent == 3.5
        assert metrics.connection_connected is True
        assert metrics.connection_latency_ms == 42.0
        assert metrics.voice_channel_id == "channel-1"
        assert metrics.streaming is False
        assert len(events[METRICS_UPDATED]) == 1

    def test_streaming_requires_voice_and_encoder(self, bus, clock):
        """Test streaming is only reported with both a voice session and a live encoder."""
        monitor = make_monitor(bus, clock, switcher=running_switcher())
        assert monitor.collect_metrics().streaming is True

        quiet = make_monitor(bus, clock, connection=FakeConnection(voice=False), switcher=running_switcher())
        assert quiet.collect_metrics().streaming is False

    def test_quality_samples_throttled(self, bus, clock):
        """Test stream quality is sampled at most every five seconds."""
        quality = MagicMock()
        quality.current_metrics.return_value = StreamQualityMetrics(bitrate=9600, frame_rate=59)
        monitor = make_monitor(bus, clock, switcher=running_switcher(), quality=quality)

        monitor.collect_metrics()
        monitor.collect_metrics()
        clock.advance(5)
        monitor.collect_metrics()

        samples = monitor.quality_history()
        assert len(samples) == 2
        assert samples[0].bitrate == 9600

    def test_metrics_tick_records_failures(self, bus, clock):
        """Test a failing sample is counted instead of raised."""
        monitor = make_monitor(bus, clock)
        monitor.process.memory_info.side_effect = OSError("gone")

        monitor._metrics_tick()

        assert monitor.error_count == 1
        assert monitor.metrics().last_error is None


class TestHealthCheck:
    """Tests for perform_health_check."""

    def test_all_pass(self, bus, clock, events):
        """Test a connected agent with a running encoder is healthy."""
        monitor = make_monitor(bus, clock, switcher=running_switcher())

        result = monitor.perform_health_check()

        assert result.status == HealthStatus.HEALTHY
        assert set(result.checks) == {"connection", "voice", "memory", "encoder"}
        assert result.checks["connection"].message == "Connected (latency: 42ms)"
        assert events[HEALTH_CHECK_COMPLETED] == [result]
        assert len(monitor.check_history()) == 1

    def test_connection_failure_is_unhealthy(self, bus, clock):
        """Test a dropped connection fails the check."""
        monitor = make_monitor(bus, clock, connection=FakeConnection(connected=False), switcher=running_switcher())

        result = monitor.perform_health_check()

        assert result.status == HealthStatus.UNHEALTHY
        assert result.check_status("connection") == CheckStatus.FAIL

    def test_missing_voice_is_degraded(self, bus, clock):
        """Test a missing voice session only warns."""
        monitor = make_monitor(bus, clock, connection=FakeConnection(voice=False), switcher=running_switcher())

        result = monitor.perform_health_check()

        assert result.status == HealthStatus.DEGRADED
        assert result.check_status("voice") == CheckStatus.WARN

    def test_high_memory_warns(self, bus, clock):
        """Test memory above the warning level degrades health."""
        monitor = make_monitor(bus, clock, switcher=running_switcher(), rss_mb=1200)

        result = monitor.perform_health_check()

        assert result.check_status("memory") == CheckStatus.WARN
        assert "high usage" in result.checks["memory"].message

    def test_no_encoder_warns(self, bus, clock):
        """Test a missing encoder is a warning rather than a failure."""
        monitor = make_monitor(bus, clock, switcher=running_switcher(running=False))

        result = monitor.perform_health_check()

        assert result.check_status("encoder") == CheckStatus.WARN
        assert "stream" not in result.checks

    def test_zero_bitrate_fails_stream_check(self, bus, clock):
        """Test two zero-bitrate samples out of the last three fail the stream check."""
        quality = MagicMock()
        quality.current_metrics.return_value = StreamQualityMetrics(bitrate=0)
        monitor = make_monitor(bus, clock, switcher=running_switcher(), quality=quality)
        monitor.collect_metrics()
        clock.advance(5)
        monitor.collect_metrics()

        result = monitor.perform_health_check()

        assert result.check_status("stream") == CheckStatus.FAIL
        assert result.status == HealthStatus.UNHEALTHY

    def test_stream_grace_period(self, bus, clock):
        """Test stream and encoder checks pass during the start grace period."""
        quality = MagicMock()
        quality.current_metrics.return_value = StreamQualityMetrics(bitrate=0)
        monitor = make_monitor(bus, clock, switcher=running_switcher(), quality=quality)
        monitor.notify_stream_started()
        monitor.collect_metrics()
        clock.advance(5)
        monitor.collect_metrics()

        result = monitor.perform_health_check()
        assert result.check_status("stream") == CheckStatus.PASS
        assert "grace" in result.checks["stream"].message

        clock.advance(30)
        assert monitor.perform_health_check().check_status("stream") == CheckStatus.FAIL

    def test_check_exception_becomes_failure(self, bus, clock):
        """Test a check that raises is reported as a failed check."""
        connection = FakeConnection()
        connection.is_connection_healthy = MagicMock(side_effect=RuntimeError("boom"))
        monitor = make_monitor(bus, clock, connection=connection)

        result = monitor.perform_health_check()

        assert result.check_status("connection") == CheckStatus.FAIL
        assert "boom" in result.checks["connection"].message

    def test_silent_check(self, bus, clock, events):
        """Test emit=False neither records nor publishes the result."""
        monitor = make_monitor(bus, clock)

        monitor.perform_health_check(emit=False)

        assert events[HEALTH_CHECK_COMPLETED] == []
        assert monitor.check_history() == []


class TestPredicates:
    """Tests for is_healthy, is_ready and is_live."""

    def test_healthy_after_sample(self, bus, clock):
        """Test a connected, lean process is healthy, ready and live."""
        monitor = make_monitor(bus, clock)
        monitor.collect_metrics()

        assert monitor.is_healthy()
        assert monitor.is_ready()
        assert monitor.is_live()

    def test_memory_limits(self, bus, clock):
        """Test large memory fails health first, then liveness."""
        monitor = make_monitor(bus, clock, rss_mb=2500)
        monitor.collect_metrics()
        assert not monitor.is_healthy()
        assert monitor.is_live()

        monitor.process.memory_info.return_value = MagicMock(rss=3500 * 1024 * 1024)
        monitor.collect_metrics()
        assert not monitor.is_live()

    def test_disconnect_clears_readiness(self, bus, clock, events):
        """Test a disconnect notification clears readiness and publishes an event."""
        monitor = make_monitor(bus, clock)
        monitor.collect_metrics()

        monitor.notify_disconnected()

        assert not monitor.is_ready()
        assert monitor.error_count == 1
        assert len(events[CONNECTION_DISCONNECTED]) == 1

        monitor.notify_connected()
        assert monitor.is_ready()


class TestErrorRouting:
    """Tests for error and exception notifications."""

    def test_record_error(self, bus, clock, events):
        """Test connection errors are counted and published."""
        monitor = make_monitor(bus, clock)

        monitor.record_error(ConnectionError("reset by peer"))

        assert events[CONNECTION_ERROR] == ["reset by peer"]
        assert monitor.metrics().last_error is None
        assert monitor.collect_metrics().last_error == "reset by peer"

    def test_loop_exception_handler(self, bus, clock, events):
        """Test unhandled loop exceptions are raised as critical errors."""
        monitor = make_monitor(bus, clock)
        loop = MagicMock()

        monitor.install_exception_handler(loop)
        handler = loop.set_exception_handler.call_args.args[0]
        handler(loop, {"message": "Task exception was never retrieved", "exception": ValueError("bad")})

        assert events[CRITICAL_ERROR] == ["bad"]
        assert monitor.error_count == 1


class TestScheduling:
    """Tests for start and stop."""

    def test_start_and_stop(self, bus, clock, events):
        """Test start registers both jobs and samples once; stop removes them."""
        scheduler = MagicMock()
        monitor = HealthMonitor(
            bus, FakeConnection(), scheduler=scheduler, clock=clock, process=fake_psutil_process()
        )

        monitor.start(check_interval_ms=30000, metrics_interval_ms=5000)

        calls = scheduler.add_job.call_args_list
        assert [call.kwargs["id"] for call in calls] == ["health-check", "health-metrics"]
        assert [call.kwargs["seconds"] for call in calls] == [30, 5]
        assert len(events[METRICS_UPDATED]) == 1

        monitor.stop()
        assert scheduler.remove_job.call_count == 2
