"""
B-mode image formation and point spread function analysis for focused
linear-array scans.

Scan geometry, RF -> envelope -> log image, image axes and the half-maximum
resolution measurement. The pulse-echo physics lives in pulse_echo_engine.py
and the per-line acquisition loop in acquisition.py.
"""

import json
import logging
import math
import warnings
from dataclasses import dataclass, fields
from typing import NamedTuple, Optional, Sequence, Tuple

import numpy as np
from scipy.signal import hilbert

logger = logging.getLogger(__name__)


# ========== Errors and Warnings ==========


class ConfigError(ValueError):
    """Invalid geometry, dynamic range or scan configuration. Raised before acquisition."""


class EngineCallFailure(RuntimeError):
    """The physics engine call for one scan line raised or timed out."""

    def __init__(self, line: int, cause: BaseException):
        super().__init__(f"line {line}: engine call failed ({cause!r})")
        self.line = line
        self.cause = cause


class TruncationWarning(UserWarning):
    """An RF trace did not fit in the preallocated buffer and was cut."""

    def __init__(self, line: int, discarded: int):
        super().__init__(f"line {line}: RF trace truncated, {discarded} samples discarded")
        self.line = line
        self.discarded = discarded


class DegenerateProfileWarning(UserWarning):
    """The half-maximum width of a PSF profile is undefined."""


class MissingLineWarning(UserWarning):
    """Scan lines with no data are part of the image a PSF was measured on."""

    def __init__(self, lines, through_scatterer: bool):
        message = f"scan lines {list(lines)} have no data, PSF profiles contain zero-filled samples"
        if through_scatterer:
            message += " (including the column through the scatterer)"
        super().__init__(message)
        self.lines = list(lines)
        self.through_scatterer = through_scatterer


class BufferCoverageWarning(UserWarning):
    """The RF buffer does not reach the end of the configured depth range."""


# ========== Configuration ==========


@dataclass
class ArrayGeometry:
    """Linear array element layout. Pitch is derived so pitch == width + kerf always holds."""

    num_elements: int = 128
    width: float = 1540.0 / 5e6 / 2
    height: float = 5e-3
    kerf: float = 0.05e-3

    @property
    def pitch(self) -> float:
        return self.width + self.kerf

    @property
    def half_aperture(self) -> float:
        return self.num_elements / 2 * self.pitch


@dataclass
class ScanParams:
    """Run parameters for the single point scatterer simulation."""

    # Transducer / sampling
    center_frequency: float = 5e6
    sampling_frequency: float = 100e6
    speed_of_sound: float = 1540.0

    # Array geometry
    element_width: float = 1540.0 / 5e6 / 2  # lambda / 2
    element_height: float = 5e-3
    kerf: float = 0.05e-3
    num_elements: int = 128

    # Phantom
    scatterer_positions: Tuple[Tuple[float, float, float], ...] = ((0.0, 0.0, 40e-3),)
    scatterer_amplitudes: Tuple[float, ...] = (1.0,)

    # Imaging
    num_scan_lines: int = 128
    focus_depth: float = 40e-3
    depth_range: Tuple[float, float] = (20e-3, 60e-3)
    dynamic_range_db: float = 60.0

    # None sizes the buffer from depth_range; an int is used as-is
    rf_buffer_capacity: Optional[int] = None

    # Acquisition
    workers: int = 1
    timeout: Optional[float] = None

    @property
    def wavelength(self) -> float:
        return self.speed_of_sound / self.center_frequency

    @property
    def geometry(self) -> ArrayGeometry:
        return ArrayGeometry(
            num_elements=self.num_elements,
            width=self.element_width,
            height=self.element_height,
            kerf=self.kerf,
        )

    @property
    def pulse_samples(self) -> int:
        """Length of the two-cycle excitation in samples."""
        return int(math.floor(2 / self.center_frequency * self.sampling_frequency + 1e-9)) + 1

    def scatterers(self) -> Tuple[np.ndarray, np.ndarray]:
        """Return (positions (K, 3), amplitudes (K,)) as float arrays."""
        positions = np.asarray(self.scatterer_positions, dtype=np.float64).reshape(-1, 3)
        amplitudes = np.asarray(self.scatterer_amplitudes, dtype=np.float64).reshape(-1)
        return positions, amplitudes

    def buffer_capacity(self) -> int:
        """Number of RF samples to preallocate per scan line."""
        if self.rf_buffer_capacity is not None:
            return int(self.rf_buffer_capacity)
        # Two-way trip to the far end of the depth window plus the pulse
        # tail (excitation convolved with two impulse responses).
        return required_capacity(
            self.depth_range[1], self.sampling_frequency, self.speed_of_sound
        ) + 3 * self.pulse_samples

    def validate(self):
        """Raise ConfigError on the first invalid parameter."""
        for name in (
            "center_frequency",
            "sampling_frequency",
            "speed_of_sound",
            "element_width",
            "element_height",
            "focus_depth",
            "dynamic_range_db",
        ):
            if not getattr(self, name) > 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)!r}")
        if self.kerf < 0:
            raise ConfigError(f"kerf must be non-negative, got {self.kerf!r}")
        if self.num_elements < 1:
            raise ConfigError(f"num_elements must be >= 1, got {self.num_elements!r}")
        if self.num_scan_lines < 1:
            raise ConfigError(f"num_scan_lines must be >= 1, got {self.num_scan_lines!r}")
        z0, z1 = self.depth_range
        if not 0 <= z0 < z1:
            raise ConfigError(f"depth_range must satisfy 0 <= start < end, got {self.depth_range!r}")
        if self.rf_buffer_capacity is not None and self.rf_buffer_capacity < 1:
            raise ConfigError(f"rf_buffer_capacity must be >= 1, got {self.rf_buffer_capacity!r}")
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got {self.workers!r}")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout!r}")

        try:
            positions = np.asarray(self.scatterer_positions, dtype=np.float64)
            amplitudes = np.asarray(self.scatterer_amplitudes, dtype=np.float64)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"scatterers must be numeric: {exc}") from exc
        if positions.ndim != 2 or positions.shape[1] != 3 or positions.shape[0] < 1:
            raise ConfigError(f"scatterer_positions must be a (K, 3) sequence, got shape {positions.shape}")
        if amplitudes.shape != (positions.shape[0],):
            raise ConfigError(
                f"got {positions.shape[0]} scatterer positions but {amplitudes.size} amplitudes"
            )

    @classmethod
    def from_dict(cls, values: dict) -> "ScanParams":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigError(f"unknown configuration keys: {', '.join(unknown)}")
        values = dict(values)
        # JSON has no tuples
        if "scatterer_positions" in values:
            values["scatterer_positions"] = tuple(tuple(p) for p in values["scatterer_positions"])
        for key in ("scatterer_amplitudes", "depth_range"):
            if key in values:
                values[key] = tuple(values[key])
        return cls(**values)

    @classmethod
    def from_json(cls, path) -> "ScanParams":
        with open(path, "r", encoding="utf-8") as f:
            try:
                values = json.load(f)
            except json.JSONDecodeError as exc:
                raise ConfigError(f"{path}: invalid JSON ({exc})") from exc
        if not isinstance(values, dict):
            raise ConfigError(f"{path}: expected a JSON object")
        return cls.from_dict(values)


# ========== Scan Geometry ==========


@dataclass(frozen=True)
class ScanLine:
    lateral_x: float
    focus_point: Tuple[float, float, float]


@dataclass(frozen=True)
class ScanLinePlan:
    lines: Tuple[ScanLine, ...]

    def __len__(self):
        return len(self.lines)

    def __iter__(self):
        return iter(self.lines)

    def __getitem__(self, i):
        return self.lines[i]

    @property
    def lateral_positions(self) -> np.ndarray:
        return np.array([line.lateral_x for line in self.lines], dtype=np.float64)


def plan_scan_lines(
    num_elements: int, pitch: float, scan_lines: int, focus_depth: float
) -> ScanLinePlan:
    """
    Lay out one focused scan line per lateral position.

    Parameters:
    -----------
    num_elements : int
        Number of array elements N
    pitch : float
        Element pitch in meters
    scan_lines : int
        Number of scan lines
    focus_depth : float
        Transmit/receive focal depth in meters, shared by every line

    Returns:
    --------
    plan : ScanLinePlan
        Lines with lateral_x linearly spaced over [-N/2*pitch, N/2*pitch]
        (endpoints included, not snapped to element centers) and focus
        (lateral_x, 0, focus_depth).
    """
    if scan_lines < 1:
        raise ConfigError(f"scan_lines must be >= 1, got {scan_lines!r}")
    if not focus_depth > 0:
        raise ConfigError(f"focus_depth must be positive, got {focus_depth!r}")
    if num_elements < 1:
        raise ConfigError(f"num_elements must be >= 1, got {num_elements!r}")
    if not pitch > 0:
        raise ConfigError(f"pitch must be positive, got {pitch!r}")

    half = num_elements / 2 * pitch
    xs = np.linspace(-half, half, scan_lines)
    return ScanLinePlan(
        tuple(ScanLine(float(x), (float(x), 0.0, float(focus_depth))) for x in xs)
    )


# ========== Image Formation ==========


def envelope_detect(rf: np.ndarray) -> np.ndarray:
    """Analytic-signal magnitude of each column (fast time along axis 0)."""
    return np.abs(hilbert(rf, axis=0))


def log_compress(envelope: np.ndarray, dynamic_range_db: float) -> np.ndarray:
    """
    20*log10 of the envelope, normalized so the global max is 0 dB and
    hard-floored at -dynamic_range_db.
    """
    if not dynamic_range_db > 0:
        raise ConfigError(f"dynamic_range_db must be positive, got {dynamic_range_db!r}")
    img = 20 * np.log10(envelope + np.finfo(np.float64).eps)
    img = img - img.max()
    img[img < -dynamic_range_db] = -dynamic_range_db
    return img


def form_image(rf: np.ndarray, dynamic_range_db: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Envelope detection and log compression of an RF matrix.

    Parameters:
    -----------
    rf : ndarray (num_samples, scan_lines)
        Real RF data, one scan line per column
    dynamic_range_db : float
        Displayed dynamic range in dB

    Returns:
    --------
    envelope : ndarray (num_samples, scan_lines)
        Non-negative envelope
    log_image : ndarray (num_samples, scan_lines)
        B-mode image in [-dynamic_range_db, 0] dB, global max exactly 0
    """
    if not dynamic_range_db > 0:
        raise ConfigError(f"dynamic_range_db must be positive, got {dynamic_range_db!r}")
    rf = np.asarray(rf, dtype=np.float64)
    if rf.ndim != 2 or rf.size == 0:
        raise ConfigError(f"RF matrix must be a non-empty 2-D array, got shape {rf.shape}")

    envelope = envelope_detect(rf)
    return envelope, log_compress(envelope, dynamic_range_db)


# ========== Image Axes ==========


class AxisVectors(NamedTuple):
    depth: np.ndarray
    lateral: np.ndarray


def map_axes(
    num_samples: int,
    sampling_frequency: float,
    speed_of_sound: float,
    lateral_positions: Sequence[float],
    unit_scale: float = 1.0,
) -> AxisVectors:
    """
    Depth from round-trip time (depth[i] = i / fs * c / 2) and lateral
    positions, both multiplied by unit_scale (1e3 for millimetres).
    """
    if num_samples < 1:
        raise ConfigError(f"num_samples must be >= 1, got {num_samples!r}")
    if not sampling_frequency > 0 or not speed_of_sound > 0:
        raise ConfigError("sampling_frequency and speed_of_sound must be positive")

    time_vector = np.arange(num_samples) / sampling_frequency
    depth = time_vector * speed_of_sound / 2 * unit_scale
    lateral = np.asarray(lateral_positions, dtype=np.float64) * unit_scale
    return AxisVectors(depth, lateral)


def max_depth(num_samples: int, sampling_frequency: float, speed_of_sound: float) -> float:
    """Depth of the last sample of a num_samples buffer, in meters."""
    return (num_samples - 1) / sampling_frequency * speed_of_sound / 2


def required_capacity(depth_end: float, sampling_frequency: float, speed_of_sound: float) -> int:
    """Samples needed for the depth axis to reach depth_end."""
    return int(math.ceil(2 * depth_end / speed_of_sound * sampling_frequency)) + 1


def check_buffer_coverage(P: ScanParams) -> float:
    """
    Warn when the RF buffer stops short of the end of P.depth_range.

    Returns the deepest depth (m) the buffer covers.
    """
    capacity = P.buffer_capacity()
    covered = max_depth(capacity, P.sampling_frequency, P.speed_of_sound)
    needed = required_capacity(P.depth_range[1], P.sampling_frequency, P.speed_of_sound)
    if capacity < needed:
        msg = (
            f"RF buffer of {capacity} samples reaches {covered * 1e3:.2f} mm, "
            f"short of the {P.depth_range[1] * 1e3:.2f} mm depth range end "
            f"(needs {needed} samples)"
        )
        logger.warning(msg)
        warnings.warn(BufferCoverageWarning(msg), stacklevel=2)
    return covered


# ========== Point Spread Function ==========


@dataclass(frozen=True)
class PSFResult:
    lateral_profile: np.ndarray
    axial_profile: np.ndarray
    fwhm_lateral: Optional[float]
    fwhm_axial: Optional[float] = None
    depth_idx: int = 0
    lateral_idx: int = 0


def _nearest_index(axis: np.ndarray, value: float) -> int:
    # argmin returns the first minimum, so ties go to the lower index
    return int(np.argmin(np.abs(axis - value)))


def half_max_width(profile: np.ndarray, axis: np.ndarray, threshold_db: float = 3.0) -> Optional[float]:
    """
    Distance between the first and last samples within threshold_db of the
    profile peak. Disjoint lobes above the threshold are spanned, not split.

    Returns None when the width is undefined: no sample clears the threshold,
    or every sample does (the profile never falls off inside the axis range).
    """
    profile = np.asarray(profile, dtype=np.float64)
    finite = np.isfinite(profile)
    if not finite.any():
        return None
    threshold = profile[finite].max() - threshold_db
    indices = np.flatnonzero(finite & (profile >= threshold))
    if indices.size == 0 or indices.size == profile.size:
        return None
    return float(axis[indices[-1]] - axis[indices[0]])


def analyze_psf(
    log_image: np.ndarray,
    axes: AxisVectors,
    scatterer_xz: Tuple[float, float],
    threshold_db: float = 3.0,
) -> PSFResult:
    """
    Cut lateral and axial profiles through a known scatterer and measure
    their half-maximum widths.

    Parameters:
    -----------
    log_image : ndarray (num_samples, scan_lines)
        Log-compressed image in dB
    axes : AxisVectors
        depth (num_samples,) and lateral (scan_lines,) coordinates
    scatterer_xz : (float, float)
        Scatterer lateral and depth position, in the units of axes
    threshold_db : float
        Drop from the profile's own peak defining the width (3 dB)

    Returns:
    --------
    result : PSFResult
        fwhm_lateral / fwhm_axial are None when undefined; a
        DegenerateProfileWarning is issued for each.
    """
    log_image = np.asarray(log_image)
    x, z = scatterer_xz
    depth_idx = _nearest_index(axes.depth, z)
    lateral_idx = _nearest_index(axes.lateral, x)

    lateral_profile = log_image[depth_idx, :].copy()
    axial_profile = log_image[:, lateral_idx].copy()
    lateral_profile.flags.writeable = False
    axial_profile.flags.writeable = False

    fwhm_lateral = half_max_width(lateral_profile, axes.lateral, threshold_db)
    fwhm_axial = half_max_width(axial_profile, axes.depth, threshold_db)
    if fwhm_lateral is None:
        warnings.warn(
            DegenerateProfileWarning(
                f"lateral half-maximum width undefined at depth index {depth_idx}"
            ),
            stacklevel=2,
        )
    if fwhm_axial is None:
        warnings.warn(
            DegenerateProfileWarning(
                f"axial half-maximum width undefined at lateral index {lateral_idx}"
            ),
            stacklevel=2,
        )

    return PSFResult(
        lateral_profile=lateral_profile,
        axial_profile=axial_profile,
        fwhm_lateral=fwhm_lateral,
        fwhm_axial=fwhm_axial,
        depth_idx=depth_idx,
        lateral_idx=lateral_idx,
    )
