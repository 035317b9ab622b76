"""
Pulse-echo simulation for a focused linear array and a handful of point
scatterers.

Each transmit element's wavefront reaches a scatterer after its focusing delay
plus the travel time; each receive element hears the echo after the travel
time back plus its own focusing delay. Summing over elements gives one spike
train per side, and the two-way response is their convolution, convolved with
the excitation and both impulse responses.

Key insight: the sum over (tx element, rx element) pairs factors into a
convolution of two per-side spike trains, so the cost is O(N) per scatterer,
not O(N^2).
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from numba import njit
from numpy.typing import NDArray
from scipy.signal import fftconvolve

logger = logging.getLogger(__name__)


class EngineError(RuntimeError):
    """Malformed engine inputs or use of a released aperture."""


# ========== Apertures ==========


class LinearArrayAperture:
    """
    Linear array along x at z=0 with a movable center and a single focal point.

    Parameters:
    -----------
    num_elements : int
        Number of elements
    width, height, kerf : float
        Element width, elevation height and gap between elements [m]
    impulse_response : ndarray
        Electro-mechanical impulse response, sampled at the engine rate
    excitation : ndarray or None
        Drive waveform. Required on the transmit side only.
    """

    def __init__(
        self,
        num_elements: int,
        width: float,
        height: float,
        kerf: float,
        impulse_response: NDArray,
        excitation: Optional[NDArray] = None,
    ):
        if num_elements < 1:
            raise EngineError(f"num_elements must be >= 1, got {num_elements!r}")
        self.num_elements = num_elements
        self.width = width
        self.height = height
        self.kerf = kerf
        self.impulse_response = np.asarray(impulse_response, dtype=np.float64)
        self.excitation = None if excitation is None else np.asarray(excitation, dtype=np.float64)

        idx = np.arange(num_elements) - (num_elements - 1) / 2.0
        x = idx * self.pitch
        self.element_positions = np.column_stack([x, np.zeros_like(x), np.zeros_like(x)])

        self.center = np.zeros(3)
        self.focus = None  # None: unfocused
        self.focus_time = 0.0
        self._freed = False

    @property
    def pitch(self) -> float:
        return self.width + self.kerf

    def _check(self):
        if self._freed:
            raise EngineError("aperture has been freed")

    def set_center(self, point):
        """Reference point the focusing delays are measured from."""
        self._check()
        self.center = np.asarray(point, dtype=np.float64).reshape(3)

    def set_focus(self, time: float, point):
        """Focus at point from `time` [s] onwards. Only a zone starting at 0 is supported."""
        self._check()
        if time != 0:
            raise EngineError(f"focal zones must start at time 0, got {time!r}")
        self.focus_time = float(time)
        self.focus = np.asarray(point, dtype=np.float64).reshape(3)

    def delays(self, c: float) -> NDArray:
        """
        Per-element focusing delays [s]. A wavefront leaving element i at
        delays[i] reaches the focus at |center - focus| / c for every i.
        """
        self._check()
        if self.focus is None:
            return np.zeros(self.num_elements)
        to_focus = np.linalg.norm(self.element_positions - self.focus, axis=1)
        ref = np.linalg.norm(self.center - self.focus)
        return (ref - to_focus) / c

    def copy(self) -> "LinearArrayAperture":
        self._check()
        other = LinearArrayAperture(
            self.num_elements,
            self.width,
            self.height,
            self.kerf,
            self.impulse_response.copy(),
            None if self.excitation is None else self.excitation.copy(),
        )
        other.center = self.center.copy()
        other.focus = None if self.focus is None else self.focus.copy()
        other.focus_time = self.focus_time
        return other

    def free(self):
        self._freed = True
        self.element_positions = None
        self.impulse_response = None
        self.excitation = None


# ========== Spike Trains ==========


def _spike_train_reference(delays: NDArray, weights: NDArray, K: int) -> NDArray:
    """
    Fractional-delay spike trains (two-tap linear).

    delays : (S, N) arrival times in samples, weights : (S, N).
    Returns g : (S, K).
    """
    S, N = delays.shape
    g = np.zeros((S, K), dtype=np.float64)
    rows = np.broadcast_to(np.arange(S)[:, None], delays.shape)
    k0 = np.floor(delays).astype(np.int64)
    frac = delays - k0
    # lower
    valid0 = (k0 >= 0) & (k0 < K)
    np.add.at(g, (rows[valid0], k0[valid0]), weights[valid0] * (1.0 - frac[valid0]))
    # upper
    k1 = k0 + 1
    valid1 = (k1 >= 0) & (k1 < K)
    np.add.at(g, (rows[valid1], k1[valid1]), weights[valid1] * frac[valid1])
    return g


@njit(cache=True, nogil=True)
def _spike_train_numba(delays, weights, K):
    """Numba version of _spike_train_reference. Releases the GIL."""
    S, N = delays.shape
    g = np.zeros((S, K), dtype=np.float64)
    for s in range(S):
        for n in range(N):
            kf = delays[s, n]
            k0 = int(np.floor(kf))
            frac = kf - k0
            w = weights[s, n]
            if 0 <= k0 < K:
                g[s, k0] += w * (1.0 - frac)
            k1 = k0 + 1
            if 0 <= k1 < K:
                g[s, k1] += w * frac
    return g


# ========== Engine ==========


class PulseEchoEngine:
    """
    Stateless pulse-echo simulator. Safe to call from several threads at
    once as long as each call gets its own apertures.
    """

    def __init__(
        self,
        sampling_frequency: float,
        speed_of_sound: float,
        center_frequency: float,
        use_numba: bool = True,
    ):
        if not (sampling_frequency > 0 and speed_of_sound > 0 and center_frequency > 0):
            raise EngineError("sampling_frequency, speed_of_sound and center_frequency must be positive")
        self.fs = sampling_frequency
        self.c = speed_of_sound
        self.f0 = center_frequency
        self.use_numba = use_numba

    def _side(self, aperture: LinearArrayAperture, positions: NDArray) -> Tuple[NDArray, NDArray]:
        """Arrival times [s] and amplitudes, both (S, N), for one side of the array."""
        elem = aperture.element_positions  # (N, 3)
        diff = positions[:, None, :] - elem[None, :, :]  # (S, N, 3)
        r = np.sqrt(np.sum(diff * diff, axis=-1))  # (S, N)
        r = np.maximum(r, 1e-9)

        times = aperture.delays(self.c)[None, :] + r / self.c

        # Element directivity along the array axis, 1/r spreading
        k = 2 * np.pi * self.f0 / self.c
        sin_theta = diff[..., 0] / r
        directivity = np.sinc(k * aperture.width / 2 * sin_theta / np.pi)
        amps = aperture.width * aperture.height * directivity / r
        return times, amps

    def _spike_trains(self, times: NDArray, amps: NDArray) -> Tuple[NDArray, int]:
        kf = times * self.fs
        start = int(np.floor(kf.min()))
        rel = np.ascontiguousarray(kf - start)
        K = int(np.floor(rel.max())) + 2
        if self.use_numba:
            g = _spike_train_numba(rel, np.ascontiguousarray(amps), K)
        else:
            g = _spike_train_reference(rel, amps, K)
        return g, start

    def calc_scat(
        self,
        tx: LinearArrayAperture,
        rx: LinearArrayAperture,
        positions: NDArray,
        amplitudes: NDArray,
    ) -> Tuple[NDArray, float]:
        """
        Received RF signal from a collection of point scatterers.

        Parameters:
        -----------
        tx, rx : LinearArrayAperture
            Transmit and receive apertures, already centered and focused
        positions : ndarray (S, 3)
            Scatterer positions [x, y, z] in meters
        amplitudes : ndarray (S,)
            Scatterer reflectivity

        Returns:
        --------
        trace : ndarray
            RF samples at the engine sampling rate
        start_time : float
            Time [s] of trace[0]
        """
        tx._check()
        rx._check()
        if tx.excitation is None:
            raise EngineError("transmit aperture has no excitation")
        positions = np.asarray(positions, dtype=np.float64)
        amplitudes = np.asarray(amplitudes, dtype=np.float64)
        if positions.ndim != 2 or positions.shape[1] != 3:
            raise EngineError(f"positions must be (S, 3), got {positions.shape}")
        if amplitudes.shape != (positions.shape[0],):
            raise EngineError(
                f"got {positions.shape[0]} positions but {amplitudes.size} amplitudes"
            )

        t_tx, a_tx = self._side(tx, positions)
        t_rx, a_rx = self._side(rx, positions)
        g_tx, start_tx = self._spike_trains(t_tx, a_tx)
        g_rx, start_rx = self._spike_trains(t_rx, a_rx)

        # Sum over all (tx, rx) element pairs, per scatterer
        two_way = fftconvolve(g_tx, g_rx, axes=1)  # (S, Ktx + Krx - 1)
        two_way = amplitudes @ two_way

        pulse = fftconvolve(tx.excitation, tx.impulse_response)
        pulse = fftconvolve(pulse, rx.impulse_response)
        trace = fftconvolve(two_way, pulse)

        start_time = (start_tx + start_rx) / self.fs
        return trace, start_time


# ========== Session ==========


def make_excitation(center_frequency: float, sampling_frequency: float) -> NDArray:
    """Two-cycle sine burst, sin(2 pi f0 t) for t = 0 .. 2/f0."""
    n = int(np.floor(2 / center_frequency * sampling_frequency + 1e-9)) + 1
    t = np.arange(n) / sampling_frequency
    return np.sin(2 * np.pi * center_frequency * t)


@dataclass
class EngineSession:
    engine: PulseEchoEngine
    tx: LinearArrayAperture
    rx: LinearArrayAperture


@contextmanager
def simulation_session(P, use_numba: bool = True):
    """
    Build the engine and both apertures for a ScanParams, and free the
    apertures when the block exits, whether it raised or not.
    """
    excitation = make_excitation(P.center_frequency, P.sampling_frequency)
    tx = LinearArrayAperture(
        P.num_elements,
        P.element_width,
        P.element_height,
        P.kerf,
        impulse_response=excitation,
        excitation=excitation,
    )
    rx = LinearArrayAperture(
        P.num_elements,
        P.element_width,
        P.element_height,
        P.kerf,
        impulse_response=excitation,
    )
    engine = PulseEchoEngine(
        P.sampling_frequency, P.speed_of_sound, P.center_frequency, use_numba=use_numba
    )
    logger.debug("Simulation session opened: %d elements, pitch %.3g m", P.num_elements, tx.pitch)
    try:
        yield EngineSession(engine, tx, rx)
    finally:
        tx.free()
        rx.free()
        logger.debug("Simulation session closed")
