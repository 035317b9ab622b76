"""
Unit tests for per-line acquisition into the RF buffer.
"""

import logging
import threading
import time

import numpy as np
import pytest

from acquisition import PulseEchoCollector
from bmode_processing import ConfigError, ScanParams, TruncationWarning, plan_scan_lines
from pulse_echo_engine import simulation_session

FS = 100e6


class FakeAperture:
    """Helper aperture recording the center and focus it was given."""

    def __init__(self):
        self.center = None
        self.focus = None

    def copy(self):
        other = FakeAperture()
        other.center = self.center
        other.focus = self.focus
        return other

    def set_center(self, point):
        self.center = tuple(point)

    def set_focus(self, time, point):
        self.focus = tuple(point)


class FakeEngine:
    """
    Helper engine: line i (identified by its focus x) returns a ramp of
    `length` samples, value i * 1000 + sample index, starting at `start_time`.
    """

    def __init__(self, plan, length=100, start_time=0.0, fail_lines=(), sleep=None):
        self.index = {line.lateral_x: i for i, line in enumerate(plan)}
        self.length = length
        self.start_time = start_time
        self.fail_lines = set(fail_lines)
        self.sleep = sleep or {}
        self.calls = []
        self.lock = threading.Lock()

    def calc_scat(self, tx, rx, positions, amplitudes):
        i = self.index[tx.focus[0]]
        assert tx.center == (tx.focus[0], 0.0, 0.0)
        assert rx.focus == tx.focus
        with self.lock:
            self.calls.append(i)
        if i in self.sleep:
            time.sleep(self.sleep[i])
        if i in self.fail_lines:
            raise RuntimeError(f"engine crashed on line {i}")
        return i * 1000.0 + np.arange(self.length), self.start_time


SCATTERER = (np.array([[0.0, 0.0, 0.03]]), np.array([1.0]))


@pytest.fixture
def plan():
    return plan_scan_lines(32, 2e-4, 8, 0.03)


def make_collector(engine, capacity=200, **kwargs):
    return PulseEchoCollector(engine, FakeAperture(), FakeAperture(), capacity, FS, **kwargs)


class TestStore:
    """Tests for writing traces into columns."""

    def test_columns_and_padding(self, plan):
        result = make_collector(FakeEngine(plan)).acquire(plan, *SCATTERER)
        assert result.rf.shape == (200, 8)
        for i in range(8):
            np.testing.assert_array_equal(result.rf[:100, i], i * 1000.0 + np.arange(100))
            assert np.all(result.rf[100:, i] == 0)
        assert not result.missing.any()
        assert result.complete

    def test_start_time_offset(self, plan):
        engine = FakeEngine(plan, length=50, start_time=10 / FS)
        result = make_collector(engine).acquire(plan, *SCATTERER)
        assert np.all(result.rf[:10] == 0)
        np.testing.assert_array_equal(result.rf[10:60, 2], 2000.0 + np.arange(50))
        np.testing.assert_allclose(result.start_times, 10 / FS)

    def test_truncation(self):
        """A trace 50 samples longer than the buffer keeps the first `capacity` samples."""
        num_samples = 200
        single = plan_scan_lines(32, 2e-4, 1, 0.03)
        engine = FakeEngine(single, length=num_samples + 50)
        with pytest.warns(TruncationWarning) as record:
            result = make_collector(engine, capacity=num_samples).acquire(single, *SCATTERER)
        assert len(record) == 1
        assert record[0].message.discarded == 50
        assert record[0].message.line == 0
        np.testing.assert_array_equal(result.rf[:, 0], np.arange(num_samples, dtype=float))
        assert len(result.truncations) == 1
        assert not result.complete

    def test_truncation_with_offset(self, plan):
        engine = FakeEngine(plan, length=100, start_time=150 / FS)
        with pytest.warns(TruncationWarning):
            result = make_collector(engine).acquire(plan, *SCATTERER)
        assert [t.discarded for t in result.truncations] == [50] * 8
        np.testing.assert_array_equal(result.rf[150:, 3], 3000.0 + np.arange(50))

    def test_trace_past_buffer(self, plan):
        engine = FakeEngine(plan, length=30, start_time=500 / FS)
        with pytest.warns(TruncationWarning):
            result = make_collector(engine).acquire(plan, *SCATTERER)
        assert np.all(result.rf == 0)
        assert all(t.discarded == 30 for t in result.truncations)

    def test_negative_start_time(self, plan):
        engine = FakeEngine(plan, length=100, start_time=-5 / FS)
        with pytest.warns(TruncationWarning):
            result = make_collector(engine).acquire(plan, *SCATTERER)
        np.testing.assert_array_equal(result.rf[:95, 1], 1000.0 + np.arange(5, 100))
        assert all(t.discarded == 5 for t in result.truncations)


class TestFailures:
    """Tests for per-line engine failures, timeouts and cancellation."""

    @pytest.mark.parametrize("workers", [1, 3])
    def test_failed_line_reported(self, plan, workers):
        engine = FakeEngine(plan, fail_lines=(2, 5))
        result = make_collector(engine, workers=workers).acquire(plan, *SCATTERER)
        assert sorted(f.line for f in result.failures) == [2, 5]
        assert all(isinstance(f.cause, RuntimeError) for f in result.failures)
        np.testing.assert_array_equal(result.missing, [i in (2, 5) for i in range(8)])
        assert np.isnan(result.start_times[2])
        # Other lines still acquired
        np.testing.assert_array_equal(result.rf[:100, 6], 6000.0 + np.arange(100))
        assert not result.complete

    def test_timeout(self, plan):
        engine = FakeEngine(plan, sleep={1: 1.0})
        result = make_collector(engine, workers=2, timeout=0.1).acquire(plan, *SCATTERER)
        assert [f.line for f in result.failures] == [1]
        assert isinstance(result.failures[0].cause, TimeoutError)
        assert result.missing[1]
        assert not result.missing[0] and not result.missing[7]

    def test_timeout_serial(self, plan):
        """A single worker still bounds each line's wait, and later lines still run."""
        engine = FakeEngine(plan, sleep={1: 0.5})
        start = time.perf_counter()
        result = make_collector(engine, workers=1, timeout=0.1).acquire(plan, *SCATTERER)
        assert time.perf_counter() - start < 0.45
        assert [f.line for f in result.failures] == [1]
        assert isinstance(result.failures[0].cause, TimeoutError)
        np.testing.assert_array_equal(result.missing, [i == 1 for i in range(8)])
        np.testing.assert_array_equal(result.rf[:100, 2], 2000.0 + np.arange(100))

    def test_cancel(self, plan):
        engine = FakeEngine(plan)
        collector = make_collector(engine)
        original = engine.calc_scat

        def calc_and_cancel(tx, rx, positions, amplitudes):
            out = original(tx, rx, positions, amplitudes)
            if len(engine.calls) == 4:
                collector.cancel()
            return out

        engine.calc_scat = calc_and_cancel
        result = collector.acquire(plan, *SCATTERER)
        np.testing.assert_array_equal(result.missing, [False] * 4 + [True] * 4)
        assert not result.failures
        np.testing.assert_array_equal(result.rf[:100, 3], 3000.0 + np.arange(100))
        assert np.all(result.rf[:, 4:] == 0)

    def test_bad_scatterers(self, plan):
        with pytest.raises(ConfigError):
            make_collector(FakeEngine(plan)).acquire(plan, np.zeros((2, 3)), np.ones(3))

    def test_bad_capacity(self, plan):
        with pytest.raises(ConfigError):
            make_collector(FakeEngine(plan), capacity=0)


class TestWithEngine:
    """Acquisition against the pulse-echo engine."""

    @pytest.fixture
    def params(self):
        return ScanParams(num_elements=32, num_scan_lines=12, depth_range=(0.02, 0.04),
                          scatterer_positions=((0.0, 0.0, 0.03),), focus_depth=0.03)

    def test_threaded_matches_serial(self, params):
        geometry = params.geometry
        plan = plan_scan_lines(geometry.num_elements, geometry.pitch, params.num_scan_lines, params.focus_depth)
        positions, amplitudes = params.scatterers()
        results = []
        for workers in (1, 4):
            with simulation_session(params) as session:
                collector = PulseEchoCollector(
                    session.engine, session.tx, session.rx, params.buffer_capacity(), FS, workers=workers
                )
                results.append(collector.acquire(plan, positions, amplitudes))
        np.testing.assert_array_equal(results[0].rf, results[1].rf)
        assert results[0].complete

    def test_templates_untouched(self, params):
        geometry = params.geometry
        plan = plan_scan_lines(geometry.num_elements, geometry.pitch, params.num_scan_lines, params.focus_depth)
        with simulation_session(params) as session:
            PulseEchoCollector(
                session.engine, session.tx, session.rx, params.buffer_capacity(), FS
            ).acquire(plan, *params.scatterers())
            assert session.tx.focus is None
            np.testing.assert_array_equal(session.tx.center, np.zeros(3))

    def test_progress_logged(self, params, caplog):
        geometry = params.geometry
        plan = plan_scan_lines(geometry.num_elements, geometry.pitch, 25, params.focus_depth)
        with caplog.at_level(logging.INFO, logger="acquisition"):
            with simulation_session(params) as session:
                PulseEchoCollector(
                    session.engine, session.tx, session.rx, params.buffer_capacity(), FS
                ).acquire(plan, *params.scatterers())
        messages = [r.getMessage() for r in caplog.records]
        assert "Completed 20/25 lines" in messages
        assert "Completed 25/25 lines" in messages
