"""
No-U-Turn Sampler transition kernel.

Hamiltonian H(q, p) = -log p(q) + 0.5 * p^T M^-1 p with momentum p ~ N(0, M).
One transition:
1. Draw a fresh momentum
2. Grow a trajectory by doublings, each in a random direction, with
   leapfrog steps of size eps
3. Stop when the generalised no-U-turn criterion fails on the whole
   trajectory or on any merged subtree (including the two checks across the
   subtree seam), when the energy error of a step exceeds the divergence
   threshold, or at the maximum tree depth
4. Select the next state multinomially: uniform progressive sampling inside
   subtrees, biased progressive sampling between the old trajectory and
   each new subtree

Weights of visited states are exp(H0 - H), so the chain leaves the target
invariant. The acceptance statistic is the mean Metropolis probability
min(1, exp(H0 - H)) over all leapfrog steps of the transition.
"""

import logging
from typing import NamedTuple, Optional, Tuple
import numpy as np
from numpy.typing import NDArray
from scipy.linalg import cholesky, solve_triangular

from nutsengine import defaults
from nutsengine.exceptions import SamplerError
from nutsengine.model.log_density import LogDensity

logger = logging.getLogger(__name__)

_LOG_08 = np.log(0.8)


class Metric:
    """
    Euclidean metric given by the inverse mass matrix.

    Parameters
    ----------
    inv_mass : NDArray[np.float64]
        Vector (diagonal metric) or symmetric positive definite matrix
        (dense metric).
    """

    def __init__(self, inv_mass: NDArray[np.float64]) -> None:
        inv_mass = np.asarray(inv_mass, dtype=np.float64)
        if inv_mass.ndim not in (1, 2):
            raise ValueError(f"inv_mass must be a vector or a matrix. Got shape {inv_mass.shape}")
        self.inv_mass = inv_mass
        self.dense = inv_mass.ndim == 2
        if self.dense:
            self._chol = cholesky(inv_mass, lower=True)
        else:
            if np.any(inv_mass <= 0):
                raise ValueError("Diagonal inverse mass matrix must be positive")
            self._sqrt_mass = np.sqrt(1.0 / inv_mass)

    @classmethod
    def identity(cls, dimension: int, dense: bool = False) -> "Metric":
        return cls(np.eye(dimension) if dense else np.ones(dimension))

    def sample_momentum(self, rng: np.random.Generator) -> NDArray[np.float64]:
        z = rng.standard_normal(self.inv_mass.shape[0])
        if self.dense:
            return solve_triangular(self._chol, z, lower=True, trans="T")
        return z * self._sqrt_mass

    def velocity(self, p: NDArray[np.float64]) -> NDArray[np.float64]:
        """dH/dp = M^-1 p, the "sharp" momentum."""
        if self.dense:
            return self.inv_mass @ p
        return self.inv_mass * p

    def kinetic_energy(self, p: NDArray[np.float64]) -> float:
        return 0.5 * float(p @ self.velocity(p))

    def __repr__(self) -> str:
        """String representation."""
        return f"Metric({'dense' if self.dense else 'diag'}, dimension={self.inv_mass.shape[0]})"


class PhasePoint(NamedTuple):
    """Position, momentum, log density and gradient at one trajectory state."""

    q: NDArray[np.float64]
    p: NDArray[np.float64]
    log_density: float
    grad: NDArray[np.float64]


def leapfrog(
    target: LogDensity,
    metric: Metric,
    point: PhasePoint,
    step_size: float,
) -> PhasePoint:
    """One velocity-Verlet step (negative ``step_size`` integrates backwards)."""
    p = point.p + 0.5 * step_size * point.grad
    q = point.q + step_size * metric.velocity(p)
    log_density, grad = target.log_density_gradient(q)
    p = p + 0.5 * step_size * grad
    return PhasePoint(q, p, log_density, grad)


def hamiltonian(metric: Metric, point: PhasePoint) -> float:
    h = -point.log_density + metric.kinetic_energy(point.p)
    return np.inf if np.isnan(h) else h


class Transition(NamedTuple):
    """Outcome of one NUTS transition."""

    point: PhasePoint
    accept_stat: float
    tree_depth: int
    n_leapfrog: int
    divergent: bool
    energy: float


class _Subtree(NamedTuple):
    end: PhasePoint
    propose: PhasePoint
    p_beg: NDArray[np.float64]
    p_end: NDArray[np.float64]
    sharp_beg: NDArray[np.float64]
    sharp_end: NDArray[np.float64]
    rho: NDArray[np.float64]
    log_sum_weight: float


class _TreeStats:
    __slots__ = ("n_leapfrog", "sum_metro_prob", "divergent")

    def __init__(self) -> None:
        self.n_leapfrog = 0
        self.sum_metro_prob = 0.0
        self.divergent = False


def _no_u_turn(sharp_minus, sharp_plus, rho) -> bool:
    return float(sharp_plus @ rho) > 0 and float(sharp_minus @ rho) > 0


class NUTSKernel:
    """
    Multinomial NUTS kernel with fixed step size and metric.

    Parameters
    ----------
    target : LogDensity
        Log density over the unconstrained space.
    max_treedepth : int
        Maximum number of trajectory doublings. Default 10.
    max_energy_error : float
        Energy error above which a step is divergent. Default 1000.
    """

    def __init__(
        self,
        target: LogDensity,
        max_treedepth: int = defaults.DEFAULT_MAX_TREEDEPTH,
        max_energy_error: float = defaults.DEFAULT_MAX_ENERGY_ERROR,
    ) -> None:
        self.target = target
        self.max_treedepth = max_treedepth
        self.max_energy_error = max_energy_error
        self.metric = Metric.identity(target.dimension)
        self.step_size = defaults.DEFAULT_INIT_STEP_SIZE

    def initial_point(self, q: NDArray[np.float64]) -> PhasePoint:
        log_density, grad = self.target.log_density_gradient(q)
        return PhasePoint(np.asarray(q, dtype=np.float64), np.zeros_like(q), log_density, grad)

    def find_reasonable_step_size(self, point: PhasePoint, rng: np.random.Generator) -> float:
        """
        Double or halve the step size until the one-step acceptance crosses 0.8.

        Raises
        ------
        SamplerError
            If the step size diverges (improper posterior) or collapses to 0.
        """
        step_size = self.step_size
        if not np.isfinite(step_size) or step_size <= 0 or step_size > 1e7:
            raise SamplerError(f"Invalid step size {step_size}")

        def one_step_log_accept(eps: float) -> float:
            start = point._replace(p=self.metric.sample_momentum(rng))
            h0 = hamiltonian(self.metric, start)
            h = hamiltonian(self.metric, leapfrog(self.target, self.metric, start, eps))
            return h0 - h

        direction = 1 if one_step_log_accept(step_size) > _LOG_08 else -1
        while True:
            delta_h = one_step_log_accept(step_size)
            if direction == 1 and not delta_h > _LOG_08:
                break
            if direction == -1 and not delta_h < _LOG_08:
                break
            step_size = step_size * 2.0 if direction == 1 else step_size * 0.5

            if step_size > 1e7:
                raise SamplerError("Step size grew without bound; the posterior may be improper")
            if step_size == 0:
                raise SamplerError(
                    "No acceptably small step size found; the posterior may not be continuous"
                )

        self.step_size = step_size
        return step_size

    def _build_tree(
        self,
        point: PhasePoint,
        depth: int,
        direction: int,
        h0: float,
        stats: _TreeStats,
        rng: np.random.Generator,
    ) -> Optional[_Subtree]:
        """Subtree of 2**depth steps from ``point``; None if it is invalid."""
        if depth == 0:
            new = leapfrog(self.target, self.metric, point, direction * self.step_size)
            stats.n_leapfrog += 1
            h = hamiltonian(self.metric, new)
            if h - h0 > self.max_energy_error:
                stats.divergent = True

            log_weight = h0 - h
            stats.sum_metro_prob += 1.0 if log_weight > 0 else float(np.exp(log_weight))
            if stats.divergent:
                return None

            sharp = self.metric.velocity(new.p)
            return _Subtree(new, new, new.p, new.p, sharp, sharp, new.p.copy(), log_weight)

        init = self._build_tree(point, depth - 1, direction, h0, stats, rng)
        if init is None:
            return None
        final = self._build_tree(init.end, depth - 1, direction, h0, stats, rng)
        if final is None:
            return None

        log_sum_weight = np.logaddexp(init.log_sum_weight, final.log_sum_weight)
        propose = init.propose
        if final.log_sum_weight > log_sum_weight or rng.uniform() < np.exp(final.log_sum_weight - log_sum_weight):
            propose = final.propose

        rho = init.rho + final.rho
        persist = (
            _no_u_turn(init.sharp_beg, final.sharp_end, rho)
            and _no_u_turn(init.sharp_beg, final.sharp_beg, init.rho + final.p_beg)
            and _no_u_turn(init.sharp_end, final.sharp_end, final.rho + init.p_end)
        )
        if not persist:
            return None
        return _Subtree(
            final.end, propose, init.p_beg, final.p_end,
            init.sharp_beg, final.sharp_end, rho, log_sum_weight,
        )

    def transition(self, point: PhasePoint, rng: np.random.Generator) -> Transition:
        """
        One NUTS transition from ``point`` (its momentum is ignored).

        Raises
        ------
        SamplerError
            If the step size is not a positive finite number.
        """
        if not np.isfinite(self.step_size) or self.step_size <= 0:
            raise SamplerError(f"Step size became {self.step_size} during integration")

        metric = self.metric
        start = point._replace(p=metric.sample_momentum(rng))
        h0 = hamiltonian(metric, start)
        sharp = metric.velocity(start.p)

        # Trajectory ends: backward (bck) and forward (fwd)
        z_bck, p_bck, sharp_bck = start, start.p, sharp
        z_fwd, p_fwd, sharp_fwd = start, start.p, sharp
        rho = start.p.copy()
        log_sum_weight = 0.0
        sample = start

        stats = _TreeStats()
        depth = 0
        while depth < self.max_treedepth:
            if rng.uniform() > 0.5:
                subtree = self._build_tree(z_fwd, depth, 1, h0, stats, rng)
                if subtree is None:
                    break
                # Old trajectory is the backward half, new subtree the forward half
                persist = (
                    _no_u_turn(sharp_bck, subtree.sharp_end, rho + subtree.rho)
                    and _no_u_turn(sharp_bck, subtree.sharp_beg, rho + subtree.p_beg)
                    and _no_u_turn(sharp_fwd, subtree.sharp_end, subtree.rho + p_fwd)
                )
                z_fwd, p_fwd, sharp_fwd = subtree.end, subtree.p_end, subtree.sharp_end
            else:
                subtree = self._build_tree(z_bck, depth, -1, h0, stats, rng)
                if subtree is None:
                    break
                persist = (
                    _no_u_turn(subtree.sharp_end, sharp_fwd, rho + subtree.rho)
                    and _no_u_turn(subtree.sharp_end, sharp_bck, subtree.rho + p_bck)
                    and _no_u_turn(subtree.sharp_beg, sharp_fwd, rho + subtree.p_beg)
                )
                z_bck, p_bck, sharp_bck = subtree.end, subtree.p_end, subtree.sharp_end

            depth += 1
            if subtree.log_sum_weight > log_sum_weight:
                sample = subtree.propose
            elif rng.uniform() < np.exp(subtree.log_sum_weight - log_sum_weight):
                sample = subtree.propose
            log_sum_weight = np.logaddexp(log_sum_weight, subtree.log_sum_weight)
            rho = rho + subtree.rho

            if not persist:
                break

        accept_stat = stats.sum_metro_prob / max(stats.n_leapfrog, 1)
        return Transition(
            point=sample,
            accept_stat=float(accept_stat),
            tree_depth=depth,
            n_leapfrog=stats.n_leapfrog,
            divergent=stats.divergent,
            energy=hamiltonian(metric, sample),
        )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"NUTSKernel(step_size={self.step_size:.3g}, metric={self.metric!r}, "
            f"max_treedepth={self.max_treedepth})"
        )
