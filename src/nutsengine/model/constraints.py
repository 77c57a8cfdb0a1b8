"""
Support constraints and their unconstraining transforms.

Sampling happens in unconstrained space R^d. Each constraint maps an
unconstrained block u to the constrained value x and tracks the log
absolute Jacobian determinant so that

    p_u(u) = p_x(c(u)) * |det J_c(u)|

is an exact representation of the constrained density.

Transforms:
    REAL      x = u                                log|J| = 0
    LOWER     x = lb + exp(u)                      log|J| = sum(u)
    UPPER     x = ub - exp(u)                      log|J| = sum(u)
    INTERVAL  x = lb + (ub - lb) * logistic(u)     log|J| = sum(log(ub-lb) + log s + log(1-s))
    SIMPLEX   x = softmax([u, 0])   (K-1 -> K)     log|J| = sum(log x_k)

The simplex map is the additive log-ratio; its Jacobian with respect to the
first K-1 coordinates is diag(x) - x x^T whose determinant is prod_k x_k.
"""

from enum import Enum
from typing import Optional, Tuple
import numpy as np
from numpy.typing import NDArray
from scipy.special import expit, log_expit, logit, logsumexp

from nutsengine.distributions.families import Domain, in_domain
from nutsengine.exceptions import DomainError, ModelSpecError


class ConstraintKind(Enum):
    """Support of a parameter."""

    REAL = "real"
    LOWER = "lower"
    UPPER = "upper"
    INTERVAL = "interval"
    SIMPLEX = "simplex"


class Constraint:
    """
    Support constraint of a parameter.

    Attributes
    ----------
    kind : ConstraintKind
        Constraint type.
    lower : float or None
        Lower bound (LOWER, INTERVAL).
    upper : float or None
        Upper bound (UPPER, INTERVAL).
    """

    def __init__(
        self,
        kind: ConstraintKind,
        lower: Optional[float] = None,
        upper: Optional[float] = None,
    ) -> None:
        """
        Initialize constraint.

        Raises
        ------
        ModelSpecError
            If the bounds required by ``kind`` are missing, not finite, or
            ``lower >= upper``.
        """
        kind = ConstraintKind(kind)
        needs_lower = kind in (ConstraintKind.LOWER, ConstraintKind.INTERVAL)
        needs_upper = kind in (ConstraintKind.UPPER, ConstraintKind.INTERVAL)

        for needed, bound, label in ((needs_lower, lower, "lower"), (needs_upper, upper, "upper")):
            if needed and (bound is None or not np.isfinite(bound)):
                raise ModelSpecError(f"{kind.value} constraint needs a finite {label} bound. Got {bound}")
            if not needed and bound is not None:
                raise ModelSpecError(f"{kind.value} constraint takes no {label} bound")

        if kind is ConstraintKind.INTERVAL and not lower < upper:
            raise ModelSpecError(f"Interval bounds must satisfy lower < upper. Got ({lower}, {upper})")

        self.kind = kind
        self.lower = None if lower is None else float(lower)
        self.upper = None if upper is None else float(upper)

    # ------------------------------------------------------------------
    # Shapes
    # ------------------------------------------------------------------

    def validate_shape(self, shape: Tuple[int, ...]) -> None:
        """Simplex parameters must be vectors with at least two entries."""
        if self.kind is ConstraintKind.SIMPLEX and (len(shape) != 1 or shape[0] < 2):
            raise ModelSpecError(f"A simplex must be a vector of length >= 2. Got shape {shape}")

    def unconstrained_size(self, shape: Tuple[int, ...]) -> int:
        """Number of unconstrained coordinates for a value of ``shape``."""
        self.validate_shape(shape)
        size = int(np.prod(shape, dtype=np.int64))
        if self.kind is ConstraintKind.SIMPLEX:
            return size - 1
        return size

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def constrain(
        self,
        u: NDArray[np.float64],
        shape: Tuple[int, ...],
    ) -> Tuple[NDArray[np.float64], float]:
        """
        Map an unconstrained block to the constrained space.

        Parameters
        ----------
        u : NDArray[np.float64]
            Flat unconstrained block.
        shape : tuple of int
            Constrained shape.

        Returns
        -------
        x : NDArray[np.float64]
            Constrained value of ``shape``.
        log_det : float
            log |det J| of the transform at ``u``.
        """
        u = np.asarray(u, dtype=np.float64)
        kind = self.kind

        if kind is ConstraintKind.REAL:
            return u.reshape(shape), 0.0

        if kind is ConstraintKind.LOWER:
            return (self.lower + np.exp(u)).reshape(shape), float(np.sum(u))

        if kind is ConstraintKind.UPPER:
            return (self.upper - np.exp(u)).reshape(shape), float(np.sum(u))

        if kind is ConstraintKind.INTERVAL:
            width = self.upper - self.lower
            x = self.lower + width * expit(u)
            log_det = np.sum(np.log(width) + log_expit(u) + log_expit(-u))
            return x.reshape(shape), float(log_det)

        # Simplex: softmax of [u, 0]
        y = np.append(u, 0.0)
        log_x = y - logsumexp(y)
        return np.exp(log_x).reshape(shape), float(np.sum(log_x))

    def unconstrain(self, x: NDArray[np.float64]) -> NDArray[np.float64]:
        """
        Map a constrained value back to a flat unconstrained block.

        Raises
        ------
        DomainError
            If ``x`` is outside the support.
        """
        x = np.asarray(x, dtype=np.float64)
        if not self.contains(x):
            raise DomainError(f"Value outside {self!r}: {x}")

        flat = x.ravel()
        kind = self.kind
        if kind is ConstraintKind.REAL:
            return flat.copy()
        if kind is ConstraintKind.LOWER:
            return np.log(flat - self.lower)
        if kind is ConstraintKind.UPPER:
            return np.log(self.upper - flat)
        if kind is ConstraintKind.INTERVAL:
            return logit((flat - self.lower) / (self.upper - self.lower))
        log_x = np.log(flat)
        return log_x[:-1] - log_x[-1]

    def backpropagate(
        self,
        u: NDArray[np.float64],
        x: NDArray[np.float64],
        grad_x: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """
        Gradient with respect to ``u`` of ``f(c(u)) + log|J(u)|``.

        Parameters
        ----------
        u : NDArray[np.float64]
            Flat unconstrained block.
        x : NDArray[np.float64]
            ``constrain(u)``.
        grad_x : NDArray[np.float64]
            Gradient of ``f`` with respect to ``x`` (same shape as ``x``).

        Returns
        -------
        NDArray[np.float64]
            Flat gradient of the same length as ``u``.
        """
        u = np.asarray(u, dtype=np.float64)
        g = np.asarray(grad_x, dtype=np.float64).ravel()
        kind = self.kind

        if kind is ConstraintKind.REAL:
            return g.copy()
        if kind is ConstraintKind.LOWER:
            return g * np.exp(u) + 1.0
        if kind is ConstraintKind.UPPER:
            return -g * np.exp(u) + 1.0
        if kind is ConstraintKind.INTERVAL:
            s = expit(u)
            return g * (self.upper - self.lower) * s * (1.0 - s) + (1.0 - 2.0 * s)

        # Simplex: vector-Jacobian product of softmax plus d/du sum(log x)
        xs = np.asarray(x, dtype=np.float64).ravel()
        head = xs[:-1]
        return head * (g[:-1] - np.dot(g, xs)) + (1.0 - xs.size * head)

    # ------------------------------------------------------------------
    # Support
    # ------------------------------------------------------------------

    def contains(self, x: NDArray[np.float64]) -> bool:
        """Whether every element of ``x`` lies inside the support."""
        x = np.asarray(x, dtype=np.float64)
        if not np.all(np.isfinite(x)):
            return False
        kind = self.kind
        if kind is ConstraintKind.REAL:
            return True
        if kind is ConstraintKind.LOWER:
            return bool(np.all(x > self.lower))
        if kind is ConstraintKind.UPPER:
            return bool(np.all(x < self.upper))
        if kind is ConstraintKind.INTERVAL:
            return bool(np.all((x > self.lower) & (x < self.upper)))
        return bool(np.all(in_domain(x, Domain.SIMPLEX)))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Constraint):
            return NotImplemented
        return (self.kind, self.lower, self.upper) == (other.kind, other.lower, other.upper)

    def __hash__(self) -> int:
        return hash((self.kind, self.lower, self.upper))

    def __repr__(self) -> str:
        """String representation."""
        if self.kind is ConstraintKind.INTERVAL:
            return f"Constraint(interval, lower={self.lower}, upper={self.upper})"
        if self.kind is ConstraintKind.LOWER:
            return f"Constraint(lower, lower={self.lower})"
        if self.kind is ConstraintKind.UPPER:
            return f"Constraint(upper, upper={self.upper})"
        return f"Constraint({self.kind.value})"


def real() -> Constraint:
    """Unconstrained real support."""
    return Constraint(ConstraintKind.REAL)


def positive() -> Constraint:
    """Strictly positive support."""
    return Constraint(ConstraintKind.LOWER, lower=0.0)


def lower_bounded(lower: float) -> Constraint:
    """Support (lower, inf)."""
    return Constraint(ConstraintKind.LOWER, lower=lower)


def upper_bounded(upper: float) -> Constraint:
    """Support (-inf, upper)."""
    return Constraint(ConstraintKind.UPPER, upper=upper)


def interval(lower: float, upper: float) -> Constraint:
    """Support (lower, upper)."""
    return Constraint(ConstraintKind.INTERVAL, lower=lower, upper=upper)


def unit_interval() -> Constraint:
    """Support (0, 1), e.g. probabilities."""
    return Constraint(ConstraintKind.INTERVAL, lower=0.0, upper=1.0)


def simplex() -> Constraint:
    """Vectors of positive entries summing to one."""
    return Constraint(ConstraintKind.SIMPLEX)
