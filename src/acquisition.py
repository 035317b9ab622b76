"""
Per-scan-line pulse-echo acquisition into a preallocated RF buffer.
"""

import logging
import threading
import warnings
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
from tqdm import tqdm

from bmode_processing import ConfigError, EngineCallFailure, ScanLinePlan, TruncationWarning

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 20


@dataclass
class AcquisitionResult:
    """
    RF data plus everything that went wrong on individual lines.

    rf : ndarray (capacity, scan_lines)
        One RF trace per column, zero-padded
    start_times : ndarray (scan_lines,)
        Start time reported by the engine per line, NaN where missing
    missing : ndarray (scan_lines,) of bool
        Lines with no data: engine failure, timeout or cancellation
    """

    rf: np.ndarray
    start_times: np.ndarray
    missing: np.ndarray
    truncations: List[TruncationWarning] = field(default_factory=list)
    failures: List[EngineCallFailure] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing.any() and not self.truncations


class PulseEchoCollector:
    """
    Runs the engine once per scan line and writes each trace into its own
    column of the RF buffer.

    Parameters:
    -----------
    engine : object with calc_scat(tx, rx, positions, amplitudes) -> (trace, start_time)
    tx, rx : apertures with copy(), set_center(point), set_focus(time, point)
        Templates; every line works on its own copies
    capacity : int
        Samples per column
    sampling_frequency : float
        Converts the engine's start time to a sample offset
    workers : int
        1 runs lines serially; more uses a thread pool of that size
    timeout : float or None
        Seconds to wait for one line's engine call. With workers=1 each
        line runs on its own helper thread so the wait can be bounded
    show_pbar : bool
        Show a tqdm progress bar
    """

    def __init__(
        self,
        engine,
        tx,
        rx,
        capacity: int,
        sampling_frequency: float,
        workers: int = 1,
        timeout: Optional[float] = None,
        show_pbar: bool = False,
    ):
        if capacity < 1:
            raise ConfigError(f"capacity must be >= 1, got {capacity!r}")
        if workers < 1:
            raise ConfigError(f"workers must be >= 1, got {workers!r}")
        self.engine = engine
        self.tx = tx
        self.rx = rx
        self.capacity = int(capacity)
        self.fs = sampling_frequency
        self.workers = workers
        self.timeout = timeout
        self.show_pbar = show_pbar
        self._cancel = threading.Event()

    def cancel(self):
        """Stop starting new lines. Columns already written stay valid."""
        self._cancel.set()

    def _acquire_line(self, line, positions, amplitudes) -> Tuple[np.ndarray, float]:
        tx = self.tx.copy()
        rx = self.rx.copy()
        center = (line.lateral_x, 0.0, 0.0)
        tx.set_center(center)
        tx.set_focus(0.0, line.focus_point)
        rx.set_center(center)
        rx.set_focus(0.0, line.focus_point)
        trace, start_time = self.engine.calc_scat(tx, rx, positions, amplitudes)
        return np.asarray(trace, dtype=np.float64).reshape(-1), float(start_time or 0.0)

    def _acquire_line_bounded(self, line, positions, amplitudes) -> Tuple[np.ndarray, float]:
        if self.timeout is None:
            return self._acquire_line(line, positions, amplitudes)
        # A hung call keeps its thread, so every line gets a fresh one
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(self._acquire_line, line, positions, amplitudes)
            return future.result(timeout=self.timeout)
        finally:
            executor.shutdown(wait=False)

    def store(self, rf: np.ndarray, i: int, trace: np.ndarray, start_time: float) -> Optional[TruncationWarning]:
        """
        Write one trace into column i at the sample offset of its start time.
        Returns a TruncationWarning if samples had to be discarded.
        """
        offset = int(round(start_time * self.fs))
        discarded = 0
        if offset < 0:
            # Samples before t=0 have no place on the depth axis
            discarded += min(-offset, trace.size)
            trace = trace[-offset:]
            offset = 0
        n = max(min(trace.size, self.capacity - offset), 0)
        discarded += trace.size - n
        rf[offset:offset + n, i] = trace[:n]
        if discarded:
            return TruncationWarning(i, discarded)
        return None

    def acquire(self, plan: ScanLinePlan, positions, amplitudes) -> AcquisitionResult:
        """
        Acquire every line of the plan.

        Per-line problems (truncation, engine failure, timeout) are collected
        and reported once at the end; they never abort the run.
        """
        positions = np.asarray(positions, dtype=np.float64)
        amplitudes = np.asarray(amplitudes, dtype=np.float64)
        if positions.ndim != 2 or positions.shape[1] != 3:
            raise ConfigError(f"scatterer positions must be (K, 3), got {positions.shape}")
        if amplitudes.shape != (positions.shape[0],):
            raise ConfigError(
                f"got {positions.shape[0]} scatterer positions but {amplitudes.size} amplitudes"
            )

        n_lines = len(plan)
        result = AcquisitionResult(
            rf=np.zeros((self.capacity, n_lines), dtype=np.float64),
            start_times=np.full(n_lines, np.nan),
            missing=np.ones(n_lines, dtype=bool),
        )

        logger.info("Simulating %d scan lines...", n_lines)
        pbar = tqdm(total=n_lines) if self.show_pbar else None
        done = 0

        def finish(i, trace, start_time):
            nonlocal done
            truncation = self.store(result.rf, i, trace, start_time)
            if truncation is not None:
                result.truncations.append(truncation)
            result.start_times[i] = start_time
            result.missing[i] = False
            done += 1
            if pbar is not None:
                pbar.update(1)
            if done % PROGRESS_EVERY == 0 or done == n_lines:
                logger.info("Completed %d/%d lines", done, n_lines)

        def fail(i, exc):
            failure = EngineCallFailure(i, exc)
            result.failures.append(failure)
            logger.error("%s", failure)

        try:
            if self.workers == 1:
                for i, line in enumerate(plan):
                    if self._cancel.is_set():
                        break
                    try:
                        trace, start_time = self._acquire_line_bounded(line, positions, amplitudes)
                    except FutureTimeoutError:
                        fail(i, TimeoutError(f"no result after {self.timeout} s"))
                        continue
                    except Exception as exc:
                        fail(i, exc)
                        continue
                    finish(i, trace, start_time)
            else:
                executor = ThreadPoolExecutor(max_workers=self.workers)
                try:
                    futures = {}
                    for i, line in enumerate(plan):
                        if self._cancel.is_set():
                            break
                        futures[i] = executor.submit(self._acquire_line, line, positions, amplitudes)
                    for i, future in futures.items():
                        if self._cancel.is_set():
                            future.cancel()
                        if future.cancelled():
                            continue
                        try:
                            trace, start_time = future.result(timeout=self.timeout)
                        except FutureTimeoutError:
                            fail(i, TimeoutError(f"no result after {self.timeout} s"))
                            continue
                        except Exception as exc:
                            fail(i, exc)
                            continue
                        finish(i, trace, start_time)
                finally:
                    executor.shutdown(wait=False, cancel_futures=True)
        finally:
            if pbar is not None:
                pbar.close()

        skipped = int(result.missing.sum()) - len(result.failures)
        if skipped:
            logger.warning("Acquisition cancelled, %d lines not acquired", skipped)
        for truncation in result.truncations:
            logger.warning("%s", truncation)
            warnings.warn(truncation, stacklevel=2)
        return result
