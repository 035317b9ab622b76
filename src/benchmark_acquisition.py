"""
Performance benchmarks for scan line acquisition: numpy vs numba spike-train
kernels, and serial vs threaded line scheduling.
"""

import time
from dataclasses import replace

import numpy as np

from acquisition import PulseEchoCollector
from bmode_processing import ScanParams, plan_scan_lines, required_capacity
from pulse_echo_engine import simulation_session


def sample_scatterers(P: ScanParams, n_scatterers=10, seed=42):
    """Helper function to sample random scatterers inside the depth window."""
    rng = np.random.default_rng(seed)
    half = P.geometry.half_aperture
    xs = rng.uniform(-half, half, n_scatterers)
    zs = rng.uniform(P.depth_range[0], P.depth_range[1], n_scatterers)
    positions = np.column_stack([xs, np.zeros(n_scatterers), zs])
    amplitudes = np.ones(n_scatterers, dtype=np.float64)
    return positions, amplitudes


def with_covering_buffer(P: ScanParams, positions) -> ScanParams:
    """
    Size the RF buffer so no echo from `positions` is truncated on any line.

    A focused line's one-way arrival is bounded by |center - focus| + |focus - scatterer|,
    and the outermost lines give the largest focus-to-scatterer distance.
    """
    half = P.geometry.half_aperture
    reach = 0.0
    for line_x in (-half, half):
        focus = np.array([line_x, 0.0, P.focus_depth])
        reach = max(reach, np.max(np.linalg.norm(positions - focus, axis=1)))
    capacity = required_capacity(P.focus_depth + reach, P.sampling_frequency, P.speed_of_sound)
    return replace(P, rf_buffer_capacity=capacity + 3 * P.pulse_samples + 2)


def time_acquisition(P: ScanParams, positions, amplitudes, use_numba: bool, n_runs: int):
    geometry = P.geometry
    plan = plan_scan_lines(geometry.num_elements, geometry.pitch, P.num_scan_lines, P.focus_depth)
    times = []
    with simulation_session(P, use_numba=use_numba) as session:
        collector = PulseEchoCollector(
            session.engine,
            session.tx,
            session.rx,
            P.buffer_capacity(),
            P.sampling_frequency,
            workers=P.workers,
        )
        # Warm up (numba compilation)
        warmup = plan_scan_lines(geometry.num_elements, geometry.pitch, 1, P.focus_depth)
        collector.acquire(warmup, positions, amplitudes)
        for _ in range(n_runs):
            t0 = time.perf_counter()
            result = collector.acquire(plan, positions, amplitudes)
            times.append(time.perf_counter() - t0)
    return np.mean(times), np.std(times), result


def benchmark_kernels(n_runs=3):
    """Benchmark the numpy and numba spike-train kernels."""
    print("=" * 70)
    print("SPIKE-TRAIN KERNEL BENCHMARK")
    print("=" * 70)

    P = ScanParams()
    positions, amplitudes = sample_scatterers(P, n_scatterers=20)
    P = with_covering_buffer(P, positions)
    print(f"\nScan lines: {P.num_scan_lines}, elements: {P.num_elements}, scatterers: {len(amplitudes)}")

    print(f"\nRunning numpy kernel ({n_runs} runs)...")
    mean_ref, std_ref, res_ref = time_acquisition(P, positions, amplitudes, False, n_runs)
    print(f"  Mean time: {mean_ref:.4f} ± {std_ref:.4f} s")

    print(f"\nRunning numba kernel ({n_runs} runs)...")
    mean_vec, std_vec, res_vec = time_acquisition(P, positions, amplitudes, True, n_runs)
    print(f"  Mean time: {mean_vec:.4f} ± {std_vec:.4f} s")

    max_diff = np.max(np.abs(res_ref.rf - res_vec.rf))
    speedup = mean_ref / mean_vec
    print(f"\nMax difference: {max_diff:.2e}")
    print(f"Speedup:     {speedup:.2f}x")
    print("=" * 70)

    return mean_ref, mean_vec, speedup


def benchmark_workers(n_runs=3, worker_counts=(1, 2, 4, 8)):
    """Benchmark serial vs threaded scan line scheduling."""
    print("\n" + "=" * 70)
    print("WORKER POOL BENCHMARK")
    print("=" * 70)

    P = ScanParams()
    positions, amplitudes = sample_scatterers(P, n_scatterers=20)
    P = with_covering_buffer(P, positions)

    results = {}
    for workers in worker_counts:
        mean_t, std_t, _ = time_acquisition(replace(P, workers=workers), positions, amplitudes, True, n_runs)
        results[workers] = mean_t
        print(f"  workers={workers:<2d} {mean_t:.4f} ± {std_t:.4f} s")

    base = results[worker_counts[0]]
    for workers, mean_t in results.items():
        print(f"  workers={workers:<2d} speedup {base / mean_t:.2f}x")
    print("=" * 70)

    return results


def main():
    """Run all benchmarks."""
    print("\n" + "=" * 70)
    print("SCAN LINE ACQUISITION PERFORMANCE BENCHMARKS")
    print("=" * 70)

    kernel_ref, kernel_vec, kernel_speedup = benchmark_kernels(n_runs=3)
    worker_results = benchmark_workers(n_runs=3)

    # Summary
    print("\n" + "=" * 70)
    print("SUMMARY")
    print("=" * 70)
    print(f"Spike-train kernel speedup:  {kernel_speedup:.2f}x")
    best = min(worker_results, key=worker_results.get)
    print(f"Fastest worker count:        {best}")
    print("=" * 70)
    print()


if __name__ == "__main__":
    main()
