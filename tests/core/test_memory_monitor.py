"""
Unit tests for MemoryMonitor.

Tests throttling, high-watermark tracking and failure handling.
"""
import pytest

from boltindex.core.errors import MemorySamplingError
from boltindex.core.memory import MemoryMonitor, process_rss
from conftest import FakeProbe, FakeClock


class TestMemoryMonitor:

    def test_first_sample_queries_probe(self):
        probe = FakeProbe(1000)
        monitor = MemoryMonitor(min_interval=0.1, probe=probe, clock=FakeClock())

        assert monitor.sample() == 1000
        assert probe.calls == 1
        assert monitor.high_watermark == 1000

    def test_samples_within_interval_use_cached_high_watermark(self):
        probe = FakeProbe(5000)
        clock = FakeClock()
        monitor = MemoryMonitor(min_interval=0.1, probe=probe, clock=clock)

        monitor.sample()
        probe.value = 100
        clock.advance(0.05)

        assert monitor.sample() == 5000
        assert probe.calls == 1

    def test_sample_after_interval_polls_again(self):
        probe = FakeProbe(5000)
        clock = FakeClock()
        monitor = MemoryMonitor(min_interval=0.1, probe=probe, clock=clock)

        monitor.sample()
        probe.value = 100
        clock.advance(0.2)

        assert monitor.sample() == 100
        assert probe.calls == 2
        # The high-watermark never goes down
        assert monitor.high_watermark == 5000

    def test_high_watermark_rises(self):
        probe = FakeProbe(100)
        clock = FakeClock()
        monitor = MemoryMonitor(min_interval=0.1, probe=probe, clock=clock)

        for value in (100, 300, 200):
            probe.value = value
            monitor.sample()
            clock.advance(1)

        assert monitor.high_watermark == 300
        assert monitor.latest().usage_bytes == 200

    def test_probe_failure_degrades_to_zero(self):
        probe = FakeProbe(MemorySamplingError("no /proc"))
        monitor = MemoryMonitor(min_interval=0.1, probe=probe, clock=FakeClock())

        assert monitor.sample() == 0
        assert monitor.high_watermark == 0

    def test_unexpected_probe_error_never_propagates(self):
        probe = FakeProbe(RuntimeError("boom"))
        monitor = MemoryMonitor(min_interval=0.0, probe=probe)

        assert monitor.sample() == 0

    def test_reset_forgets_state(self):
        probe = FakeProbe(4096)
        clock = FakeClock()
        monitor = MemoryMonitor(min_interval=10, probe=probe, clock=clock)
        monitor.sample()

        monitor.reset()
        probe.value = 10

        assert monitor.latest() is None
        assert monitor.high_watermark == 0
        assert monitor.sample() == 10
        assert probe.calls == 2

    def test_process_rss_reads_real_process(self):
        assert process_rss() > 0

    def test_process_rss_wraps_psutil_errors(self, mocker):
        import psutil
        mocker.patch(
            "boltindex.core.memory.psutil.Process",
            side_effect=psutil.AccessDenied(pid=1),
        )

        with pytest.raises(MemorySamplingError):
            process_rss()
