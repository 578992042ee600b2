"""Tests for ffprobe analysis."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from relay_agent.analyzer import StreamAnalyzer, parse_probe_output
from relay_agent.errors import ProbeFailed


def probe_json(**stream):
    return json.dumps({"streams": [stream]})


class FakeProbe:
    def __init__(self, stdout: bytes = b"", returncode: int = 0, hang: bool = False):
        self._stdout = stdout
        self.returncode = returncode
        self.hang = hang
        self.kill = MagicMock()
        self.waited = False

    async def communicate(self):
        if self.hang:
            await asyncio.sleep(3600)
        return self._stdout, b""

    async def wait(self):
        self.waited = True
        return -9


def runner_for(process, calls=None):
    async def runner(*argv, **kwargs):
        if calls is not None:
            calls.append(argv)
        return process

    return runner


class TestParseProbeOutput:
    """Tests for parse_probe_output."""

    def test_full_stream(self):
        """Test all fields are read from the first video stream."""
        result = parse_probe_output(
            probe_json(
                width=3840,
                height=2160,
                r_frame_rate="60000/1001",
                bit_rate="12000000",
                codec_name="h264",
                duration="12.5",
            )
        )

        assert (result.width, result.height, result.fps) == (3840, 2160, 60)
        assert result.bitrate == 12_000_000
        assert result.codec == "h264"
        assert result.duration == 12.5

    def test_avg_frame_rate_fallback(self):
        """Test avg_frame_rate is used when r_frame_rate is missing."""
        result = parse_probe_output(probe_json(width=1280, height=720, avg_frame_rate="25/1"))

        assert result.fps == 25

    def test_defaults_when_fields_missing(self):
        """Test missing dimensions and rate fall back to 1280x720@30."""
        result = parse_probe_output(probe_json())

        assert (result.width, result.height, result.fps) == (1280, 720, 30)
        assert result.bitrate is None

    def test_fps_clamped(self):
        """Test frame rates are clamped into [15, 120]."""
        assert parse_probe_output(probe_json(r_frame_rate="5/1")).fps == 15
        assert parse_probe_output(probe_json(r_frame_rate="240/1")).fps == 120

    def test_zero_denominator(self):
        """Test a 0/0 frame rate falls back to the default."""
        assert parse_probe_output(probe_json(r_frame_rate="0/0")).fps == 30

    def test_malformed_json(self):
        """Test unparsable output raises ProbeFailed."""
        with pytest.raises(ProbeFailed):
            parse_probe_output("not json")

    def test_no_video_stream(self):
        """Test an empty stream list raises ProbeFailed."""
        with pytest.raises(ProbeFailed):
            parse_probe_output(json.dumps({"streams": []}))

    def test_non_numeric_dimensions(self):
        """Test a width ffprobe reports as N/A raises ProbeFailed."""
        with pytest.raises(ProbeFailed, match="Malformed"):
            parse_probe_output(probe_json(width="N/A", height=720))

    def test_stream_entry_not_an_object(self):
        """Test a stream entry that is not an object raises ProbeFailed."""
        with pytest.raises(ProbeFailed, match="Malformed"):
            parse_probe_output(json.dumps({"streams": ["oops"]}))


class TestStreamAnalyzer:
    """Tests for StreamAnalyzer.analyze."""

    @pytest.mark.asyncio
    async def test_analyze_success(self):
        """Test a successful probe returns parsed results."""
        calls = []
        process = FakeProbe(probe_json(width=1920, height=1080, r_frame_rate="30/1").encode())
        analyzer = StreamAnalyzer(runner=runner_for(process, calls))

        result = await analyzer.analyze("http://example.com/live.m3u8")

        assert (result.width, result.height, result.fps) == (1920, 1080, 30)
        argv = calls[0]
        assert argv[0] == "ffprobe"
        assert argv[-1] == "http://example.com/live.m3u8"
        assert "v:0" in argv

    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        """Test a failing ffprobe raises ProbeFailed."""
        analyzer = StreamAnalyzer(runner=runner_for(FakeProbe(b"", returncode=1)))

        with pytest.raises(ProbeFailed):
            await analyzer.analyze("http://bad")

    @pytest.mark.asyncio
    async def test_timeout_kills_probe(self):
        """Test a hung probe is killed and reported as ProbeFailed."""
        process = FakeProbe(hang=True)
        analyzer = StreamAnalyzer(timeout=0.05, runner=runner_for(process))

        with pytest.raises(ProbeFailed, match="timed out"):
            await analyzer.analyze("http://slow")

        process.kill.assert_called_once()
        assert process.waited

    @pytest.mark.asyncio
    async def test_spawn_error(self):
        """Test a missing ffprobe binary is reported as ProbeFailed."""

        async def missing(*argv, **kwargs):
            raise FileNotFoundError("ffprobe")

        analyzer = StreamAnalyzer(runner=missing)

        with pytest.raises(ProbeFailed):
            await analyzer.analyze("http://x")
