"""
Warm-up adaptation: step size, mass matrix, and the windowed schedule.

Warm-up of N iterations is split into

    | init buffer | slow window | slow window x2 | ... | terminal buffer |
       (75)           (25)          (50)                     (50)

Fast buffers only tune the step size. Slow windows additionally accumulate
draws for the mass matrix, which is re-estimated at the end of every window;
the step size adaptation then restarts from a fresh heuristic. If the
defaults do not fit into N, the buffers become 15% / 75% / 10% of N.

Dual averaging (Nesterov 2009, Hoffman & Gelman 2014):

    s_bar_t = (1 - 1/(t + t0)) s_bar_{t-1} + (delta - alpha_t) / (t + t0)
    log eps_t = mu - sqrt(t) / gamma * s_bar_t
    log eps_bar_t = t^-kappa log eps_t + (1 - t^-kappa) log eps_bar_{t-1}
"""

from enum import Enum
import logging
from typing import List, Tuple
import numpy as np
from numpy.typing import NDArray

from nutsengine import defaults

logger = logging.getLogger(__name__)


class ChainPhase(Enum):
    """Per-chain sampler state."""

    WARMUP_STEP_ADAPTATION = "warmup_step_adaptation"
    WARMUP_MASS_MATRIX_ADAPTATION = "warmup_mass_matrix_adaptation"
    SAMPLING = "sampling"
    DONE = "done"


class DualAveraging:
    """
    Dual averaging step-size adaptation.

    Attributes
    ----------
    target_accept : float
        Target mean acceptance statistic (delta).
    gamma, t0, kappa : float
        Shrinkage, stabilisation and iterate-averaging constants.
    """

    def __init__(
        self,
        target_accept: float = defaults.DEFAULT_TARGET_ACCEPT,
        gamma: float = defaults.DEFAULT_DA_GAMMA,
        t0: float = defaults.DEFAULT_DA_T0,
        kappa: float = defaults.DEFAULT_DA_KAPPA,
    ) -> None:
        self.target_accept = target_accept
        self.gamma = gamma
        self.t0 = t0
        self.kappa = kappa
        self.restart(defaults.DEFAULT_INIT_STEP_SIZE)

    def restart(self, step_size: float) -> None:
        """Forget the history and shrink toward ``10 * step_size``."""
        self.mu = np.log(10.0 * step_size)
        self.counter = 0
        self.s_bar = 0.0
        self.x_bar = 0.0

    def update(self, accept_stat: float) -> float:
        """Record an acceptance statistic and return the next step size."""
        self.counter += 1
        accept_stat = min(1.0, accept_stat)

        eta = 1.0 / (self.counter + self.t0)
        self.s_bar = (1.0 - eta) * self.s_bar + eta * (self.target_accept - accept_stat)

        x = self.mu - self.s_bar * np.sqrt(self.counter) / self.gamma
        x_eta = self.counter ** (-self.kappa)
        self.x_bar = (1.0 - x_eta) * self.x_bar + x_eta * x
        return float(np.exp(x))

    @property
    def final_step_size(self) -> float:
        """Averaged iterate, used once adaptation ends."""
        return float(np.exp(self.x_bar))

    def __repr__(self) -> str:
        """String representation."""
        return f"DualAveraging(target_accept={self.target_accept}, counter={self.counter})"


class WelfordEstimator:
    """
    Streaming mean and (co)variance of draws in unconstrained space.

    Parameters
    ----------
    dimension : int
        Length of the draws.
    dense : bool
        Track the full covariance instead of the diagonal. Default False.
    """

    def __init__(self, dimension: int, dense: bool = False) -> None:
        self.dimension = dimension
        self.dense = dense
        self.restart()

    def restart(self) -> None:
        self.n = 0
        self.mean = np.zeros(self.dimension)
        if self.dense:
            self.m2 = np.zeros((self.dimension, self.dimension))
        else:
            self.m2 = np.zeros(self.dimension)

    def add_sample(self, x: NDArray[np.float64]) -> None:
        self.n += 1
        delta = x - self.mean
        self.mean = self.mean + delta / self.n
        if self.dense:
            self.m2 = self.m2 + np.outer(x - self.mean, delta)
        else:
            self.m2 = self.m2 + (x - self.mean) * delta

    def estimate(self) -> NDArray[np.float64]:
        """
        Regularised inverse mass matrix.

        Shrinks the sample (co)variance toward ``1e-3 * I``:

            (n / (n + 5)) * Sigma + 1e-3 * (5 / (n + 5)) * I
        """
        n = self.n
        if n < 2:
            raise ValueError(f"Need at least 2 draws to estimate a covariance. Got {n}")
        covariance = self.m2 / (n - 1.0)
        weight = n / (n + 5.0)
        shrink = 1e-3 * (5.0 / (n + 5.0))
        if self.dense:
            return weight * covariance + shrink * np.eye(self.dimension)
        return weight * covariance + shrink


class WarmupSchedule:
    """
    Windowed warm-up schedule.

    Parameters
    ----------
    warmup : int
        Number of warm-up iterations.
    init_buffer : int
        Initial step-size-only buffer. Default 75.
    term_buffer : int
        Terminal step-size-only buffer. Default 50.
    base_window : int
        First slow window length; later windows double. Default 25.

    Attributes
    ----------
    windows : List[Tuple[int, int]]
        Half-open iteration ranges ``[start, end)`` of the slow windows.
    """

    def __init__(
        self,
        warmup: int,
        init_buffer: int = defaults.DEFAULT_INIT_BUFFER,
        term_buffer: int = defaults.DEFAULT_TERM_BUFFER,
        base_window: int = defaults.DEFAULT_BASE_WINDOW,
    ) -> None:
        if warmup < 0:
            raise ValueError(f"warmup must be >= 0. Got {warmup}")

        self.warmup = warmup
        self.windows: List[Tuple[int, int]] = []

        if warmup < 20:
            # Too short to estimate a metric; adapt the step size only
            self.init_buffer, self.term_buffer, self.base_window = warmup, 0, 0
            return

        if init_buffer + base_window + term_buffer > warmup:
            init_buffer = int(0.15 * warmup)
            term_buffer = int(0.1 * warmup)
            base_window = warmup - (init_buffer + term_buffer)
            logger.debug(
                "Warm-up of %d iterations too short for default windows; using "
                "init_buffer=%d, base_window=%d, term_buffer=%d",
                warmup, init_buffer, base_window, term_buffer,
            )

        self.init_buffer = init_buffer
        self.term_buffer = term_buffer
        self.base_window = base_window

        slow_end = warmup - term_buffer
        start, size = init_buffer, base_window
        while start < slow_end:
            end = start + size
            # Stretch the last window rather than leave one that cannot double
            if end + 2 * size > slow_end:
                end = slow_end
            self.windows.append((start, end))
            start, size = end, 2 * size

    def phase(self, iteration: int) -> ChainPhase:
        """Phase of a 0-based iteration index."""
        if iteration >= self.warmup:
            return ChainPhase.SAMPLING
        for start, end in self.windows:
            if start <= iteration < end:
                return ChainPhase.WARMUP_MASS_MATRIX_ADAPTATION
        return ChainPhase.WARMUP_STEP_ADAPTATION

    def is_window_end(self, iteration: int) -> bool:
        """Whether the metric is re-estimated after this iteration."""
        return any(iteration == end - 1 for _, end in self.windows)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"WarmupSchedule(warmup={self.warmup}, init_buffer={self.init_buffer}, "
            f"term_buffer={self.term_buffer}, windows={self.windows})"
        )
