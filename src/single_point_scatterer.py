"""
B-mode image and point spread function of a single point scatterer.

Scans a focused linear array across the phantom line by line, forms the
log-compressed image and measures the -3 dB widths of the PSF through the
scatterer.

Usage:
    python single_point_scatterer.py
    python single_point_scatterer.py --config run.json --workers 4 --save psf.png
    python single_point_scatterer.py --capacity 4000 --no-plot
"""

import argparse
import logging
import sys
import warnings
from dataclasses import dataclass, replace
from typing import List, Optional

import numpy as np

from acquisition import AcquisitionResult, PulseEchoCollector
from bmode_processing import (
    AxisVectors,
    ConfigError,
    MissingLineWarning,
    PSFResult,
    ScanLinePlan,
    ScanParams,
    analyze_psf,
    check_buffer_coverage,
    form_image,
    map_axes,
    plan_scan_lines,
)
from logging_config import setup_logging
from pulse_echo_engine import simulation_session

logger = logging.getLogger("single_point_scatterer")

MM = 1e3


@dataclass
class SimulationResult:
    params: ScanParams
    plan: ScanLinePlan
    acquisition: AcquisitionResult
    envelope: np.ndarray
    log_image: np.ndarray
    axes: AxisVectors  # millimetres
    psfs: List[PSFResult]  # one per scatterer


def run_simulation(P: ScanParams, use_numba: bool = True, show_pbar: bool = False) -> SimulationResult:
    """Configure, acquire, form the image and analyze the PSF at every scatterer."""
    P.validate()
    geometry = P.geometry
    plan = plan_scan_lines(geometry.num_elements, geometry.pitch, P.num_scan_lines, P.focus_depth)
    check_buffer_coverage(P)
    positions, amplitudes = P.scatterers()
    capacity = P.buffer_capacity()

    for x, y, z in positions:
        logger.info("Point scatterer at: x=%.1fmm, y=%.1fmm, z=%.1fmm", x * MM, y * MM, z * MM)

    with simulation_session(P, use_numba=use_numba) as session:
        collector = PulseEchoCollector(
            session.engine,
            session.tx,
            session.rx,
            capacity,
            P.sampling_frequency,
            workers=P.workers,
            timeout=P.timeout,
            show_pbar=show_pbar,
        )
        acquisition = collector.acquire(plan, positions, amplitudes)

    envelope, log_image = form_image(acquisition.rf, P.dynamic_range_db)
    axes = map_axes(
        capacity, P.sampling_frequency, P.speed_of_sound, plan.lateral_positions, unit_scale=MM
    )
    psfs = [analyze_psf(log_image, axes, (x * MM, z * MM)) for x, _, z in positions]
    missing = np.flatnonzero(acquisition.missing).tolist()
    if missing:
        for psf in psfs:
            warning = MissingLineWarning(missing, bool(acquisition.missing[psf.lateral_idx]))
            logger.warning("%s", warning)
            warnings.warn(warning, stacklevel=2)

    return SimulationResult(P, plan, acquisition, envelope, log_image, axes, psfs)


def report_summary(result: SimulationResult):
    acq = result.acquisition
    if acq.truncations:
        logger.warning(
            "%d lines truncated (%d samples discarded in total)",
            len(acq.truncations),
            sum(t.discarded for t in acq.truncations),
        )
    if acq.failures:
        logger.error(
            "%d lines failed: %s", len(acq.failures), ", ".join(str(f.line) for f in acq.failures)
        )
    if acq.missing.any():
        logger.warning(
            "Lines with no data: %s", ", ".join(str(i) for i in np.flatnonzero(acq.missing))
        )

    for psf in result.psfs:
        if psf.fwhm_lateral is None:
            logger.warning("Lateral FWHM: undefined")
        else:
            logger.info("Lateral FWHM: %.2f mm", psf.fwhm_lateral)
        if psf.fwhm_axial is None:
            logger.warning("Axial FWHM: undefined")
        else:
            logger.info("Axial FWHM: %.2f mm", psf.fwhm_axial)


def plot_results(result: SimulationResult, save: Optional[str] = None, show: bool = True):
    """RF, envelope, B-mode and PSF profile panels."""
    import matplotlib.pyplot as plt

    P = result.params
    depth, lateral = result.axes
    z0, z1 = P.depth_range[0] * MM, P.depth_range[1] * MM
    extent = [lateral[0], lateral[-1], depth[-1], depth[0]]
    positions, _ = P.scatterers()
    px, pz = positions[0, 0] * MM, positions[0, 2] * MM

    fig, axs = plt.subplots(1, 4, figsize=(14, 5))
    panels = [
        (result.acquisition.rf, "RF Data"),
        (result.envelope, "Envelope Detected"),
        (result.log_image, f"B-mode Image ({P.dynamic_range_db:g} dB)"),
    ]
    for ax, (data, title) in zip(axs, panels):
        im = ax.imshow(data, extent=extent, cmap="gray", aspect="equal")
        ax.set_xlabel("Lateral Position [mm]")
        ax.set_ylabel("Depth [mm]")
        ax.set_title(title)
        ax.set_ylim(z1, z0)
        ax.plot(px, pz, "r+", markersize=15, markeredgewidth=2, label="Point Target")
    axs[0].legend()
    im.set_clim(-P.dynamic_range_db, 0)
    fig.colorbar(im, ax=axs[2])

    psf = result.psfs[0]
    ax = axs[3]
    ax.plot(lateral, psf.lateral_profile, "b-", linewidth=2, label="Lateral Profile")
    # Axial profile scaled for visualization
    ax.plot(psf.axial_profile * 0.5, depth, "r-", linewidth=2, label="Axial Profile")
    ax.set_xlabel("Lateral Position [mm] / Amplitude")
    ax.set_ylabel("Depth [mm]")
    ax.set_title("Point Spread Function")
    ax.legend()
    ax.grid(True)

    fig.tight_layout()
    if save:
        fig.savefig(save, dpi=150)
        logger.info("Figure saved to %s", save)
    if show:
        plt.show()
    return fig


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Point scatterer B-mode simulation and PSF analysis")
    ap.add_argument("--config", help="JSON file with ScanParams overrides")
    ap.add_argument("--workers", type=int, help="threads used for scan line acquisition")
    ap.add_argument("--capacity", type=int, help="RF buffer capacity in samples")
    ap.add_argument("--lines", type=int, help="number of scan lines")
    ap.add_argument("--timeout", type=float, help="per-line engine timeout in seconds")
    ap.add_argument("--no-numba", action="store_true", help="use the numpy spike-train kernel")
    ap.add_argument("--pbar", action="store_true", help="show a progress bar")
    ap.add_argument("--no-plot", action="store_true", help="skip the figure")
    ap.add_argument("--save", help="save the figure to this path")
    ap.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    ap.add_argument("--log-file", help="also write the log to this file")
    return ap.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(getattr(logging, args.log_level), args.log_file)

    try:
        P = ScanParams.from_json(args.config) if args.config else ScanParams()
        overrides = {
            "workers": args.workers,
            "rf_buffer_capacity": args.capacity,
            "num_scan_lines": args.lines,
            "timeout": args.timeout,
        }
        P = replace(P, **{k: v for k, v in overrides.items() if v is not None})
        result = run_simulation(P, use_numba=not args.no_numba, show_pbar=args.pbar)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    report_summary(result)
    if not args.no_plot or args.save:
        plot_results(result, save=args.save, show=not args.no_plot)

    logger.info("Simulation completed successfully!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
