"""
End-to-end tests: configure -> acquire -> form image -> analyze -> report.
"""

import json
import logging

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest

from bmode_processing import BufferCoverageWarning, MissingLineWarning, ScanParams
from logging_config import LOGGER_NAMES
from pulse_echo_engine import PulseEchoEngine
from single_point_scatterer import main, plot_results, report_summary, run_simulation


@pytest.fixture(scope="module")
def small_run():
    """Smaller array and fewer lines than the default run, same physics."""
    P = ScanParams(
        num_elements=32,
        num_scan_lines=16,
        depth_range=(30e-3, 50e-3),
        workers=2,
    )
    return run_simulation(P)


@pytest.fixture(scope="module")
def default_run():
    """The full 128 element, 128 line configuration on a thread pool."""
    return run_simulation(ScanParams(workers=4))


class TestEndToEnd:
    """End-to-end tests on a single scatterer at 40 mm."""

    def test_image_properties(self, small_run):
        img = small_run.log_image
        assert img.shape == small_run.acquisition.rf.shape
        assert img.max() == 0.0
        assert img.min() >= -small_run.params.dynamic_range_db
        assert small_run.acquisition.complete

    def test_peak_at_scatterer(self, small_run):
        """The brightest pixel lies within a millimetre of the scatterer (axes in mm)."""
        depth, lateral = small_run.axes
        iz, ix = np.unravel_index(np.argmax(small_run.log_image), small_run.log_image.shape)
        spacing = lateral[1] - lateral[0]
        assert abs(depth[iz] - 40.0) < 1.0
        assert abs(lateral[ix]) <= spacing

    def test_psf(self, small_run):
        (psf,) = small_run.psfs
        depth, _ = small_run.axes
        assert abs(depth[psf.depth_idx] - 40.0) <= depth[1]
        assert len(psf.lateral_profile) == 16
        assert len(psf.axial_profile) == len(depth)
        assert psf.fwhm_axial is not None and 0 < psf.fwhm_axial < 2.0
        assert abs(depth[np.argmax(psf.axial_profile)] - 40.0) < 1.0

    def test_default_configuration_psf(self, default_run):
        """Full array: defined lateral width of the order of lambda times the F-number."""
        P = default_run.params
        (psf,) = default_run.psfs
        depth, lateral = default_run.axes
        assert default_run.acquisition.complete
        assert len(psf.lateral_profile) == 128
        assert abs(lateral[psf.lateral_idx]) <= lateral[1] - lateral[0]
        assert abs(int(np.argmax(psf.lateral_profile)) - psf.lateral_idx) <= 1
        assert abs(depth[np.argmax(psf.axial_profile)] - 40.0) < 1.0

        f_number = P.focus_depth / (2 * P.geometry.half_aperture)
        lambda_f = P.wavelength * f_number * 1e3
        assert psf.fwhm_lateral is not None
        assert lambda_f < psf.fwhm_lateral < 8 * lambda_f
        assert psf.fwhm_axial is not None and 0 < psf.fwhm_axial < 2.0

    def test_report(self, small_run, caplog):
        with caplog.at_level(logging.INFO, logger="single_point_scatterer"):
            report_summary(small_run)
        messages = [r.getMessage() for r in caplog.records]
        assert any(m.startswith("Lateral FWHM:") for m in messages)
        assert any(m.startswith("Axial FWHM:") for m in messages)

    def test_plot(self, small_run, tmp_path):
        path = tmp_path / "psf.png"
        fig = plot_results(small_run, save=str(path), show=False)
        assert path.exists()
        assert len(fig.axes) == 5  # four panels and a colorbar

    def test_missing_center_line_flagged(self, monkeypatch, caplog):
        """A failed line through the scatterer is named in a warning and in the report."""
        original = PulseEchoEngine.calc_scat

        def fail_center(self, tx, rx, positions, amplitudes):
            if abs(tx.center[0]) < 1e-9:
                raise RuntimeError("engine crashed")
            return original(self, tx, rx, positions, amplitudes)

        monkeypatch.setattr(PulseEchoEngine, "calc_scat", fail_center)
        P = ScanParams(num_elements=16, num_scan_lines=5, depth_range=(30e-3, 50e-3))
        with pytest.warns(MissingLineWarning) as record:
            result = run_simulation(P)
        (warning,) = [w.message for w in record if isinstance(w.message, MissingLineWarning)]
        assert warning.lines == [2]
        assert warning.through_scatterer
        assert result.psfs[0].lateral_idx == 2
        assert result.acquisition.missing[2]

        with caplog.at_level(logging.INFO, logger="single_point_scatterer"):
            report_summary(result)
        assert "Lines with no data: 2" in [r.getMessage() for r in caplog.records]

    def test_literal_capacity_truncates(self):
        """With the literal 4000 sample buffer the 40 mm echo never fits."""
        P = ScanParams(num_elements=16, num_scan_lines=4, rf_buffer_capacity=4000)
        with pytest.warns(BufferCoverageWarning):
            result = run_simulation(P)
        assert len(result.acquisition.truncations) == 4
        assert np.all(result.acquisition.rf == 0)


class TestMain:
    """Tests for the command line entry point."""

    @pytest.fixture(autouse=True)
    def reset_logging(self):
        yield
        for name in LOGGER_NAMES:
            logging.getLogger(name).handlers.clear()

    def test_main_with_config(self, tmp_path):
        config = tmp_path / "run.json"
        config.write_text(json.dumps({"num_elements": 16, "num_scan_lines": 8, "depth_range": [0.03, 0.05]}))
        assert main(["--config", str(config), "--no-plot", "--log-level", "WARNING"]) == 0

    def test_main_invalid_config(self, tmp_path):
        config = tmp_path / "run.json"
        config.write_text(json.dumps({"num_scan_lines": 0}))
        assert main(["--config", str(config), "--no-plot", "--log-level", "ERROR"]) == 2
