"""
Fixed catalog of distribution families with closed-form gradients.

Each family is a tagged variant selected by ``DistributionKind``. A family
record holds the argument names and their domains together with two
vectorised functions:

    log_prob(x, *args)  -> elementwise log density (log mass if discrete)
    grad(x, *args)      -> (d/dx, d/darg_1, ..., d/darg_n), elementwise

Both broadcast like numpy. Evaluation outside the support, or at invalid
argument values, gives -inf (zero probability) and zero gradient rather than
raising. Families with ``event_ndim == 1`` (Dirichlet) reduce the last axis
of the log density; their gradients keep the full broadcast shape.

Parameterisations:
    normal(loc, scale)          half_normal(scale)
    cauchy(loc, scale)          half_cauchy(scale)
    student_t(df, loc, scale)   exponential(rate)
    gamma(shape, rate)          inv_gamma(shape, scale)
    lognormal(loc, scale)       beta(alpha, beta)
    uniform(lower, upper)       dirichlet(concentration)
    binomial(trials, prob)      binomial_logit(trials, logit)
    bernoulli(prob)             bernoulli_logit(logit)
    poisson(rate)               poisson_log(log_rate)
"""

from enum import Enum
from typing import Callable, Dict, NamedTuple, Tuple
import numpy as np
from numpy.typing import NDArray
from scipy.special import (
    betaln,
    digamma,
    expit,
    gammaln,
    log_expit,
    xlog1py,
    xlogy,
)

LOG_2PI = np.log(2.0 * np.pi)
LOG_PI = np.log(np.pi)
LOG_2 = np.log(2.0)
SIMPLEX_TOL = 1e-8


class DistributionKind(Enum):
    """Enumerated distribution catalog."""

    NORMAL = "normal"
    HALF_NORMAL = "half_normal"
    CAUCHY = "cauchy"
    HALF_CAUCHY = "half_cauchy"
    STUDENT_T = "student_t"
    EXPONENTIAL = "exponential"
    GAMMA = "gamma"
    INV_GAMMA = "inv_gamma"
    LOGNORMAL = "lognormal"
    BETA = "beta"
    UNIFORM = "uniform"
    DIRICHLET = "dirichlet"
    BINOMIAL = "binomial"
    BINOMIAL_LOGIT = "binomial_logit"
    BERNOULLI = "bernoulli"
    BERNOULLI_LOGIT = "bernoulli_logit"
    POISSON = "poisson"
    POISSON_LOG = "poisson_log"


class Domain(Enum):
    """Value domains for variates and distribution arguments."""

    REAL = "a finite real"
    POSITIVE = "positive"
    NONNEGATIVE = "non-negative"
    UNIT = "in the open interval (0, 1)"
    PROBABILITY = "in the closed interval [0, 1]"
    NONNEGATIVE_INT = "a non-negative integer"
    BINARY = "0 or 1"
    SIMPLEX = "a simplex (positive, summing to 1)"

    @property
    def discrete(self) -> bool:
        """Whether values in this domain are integers."""
        return self in (Domain.NONNEGATIVE_INT, Domain.BINARY)


def in_domain(value: NDArray, domain: Domain) -> NDArray[np.bool_]:
    """
    Elementwise membership test.

    For ``Domain.SIMPLEX`` the test reduces the last axis.
    """
    value = np.asarray(value, dtype=np.float64)
    finite = np.isfinite(value)
    with np.errstate(invalid="ignore"):
        if domain is Domain.REAL:
            return finite
        if domain is Domain.POSITIVE:
            return finite & (value > 0)
        if domain is Domain.NONNEGATIVE:
            return finite & (value >= 0)
        if domain is Domain.UNIT:
            return (value > 0) & (value < 1)
        if domain is Domain.PROBABILITY:
            return (value >= 0) & (value <= 1)
        if domain is Domain.NONNEGATIVE_INT:
            return finite & (value >= 0) & (np.floor(value) == value)
        if domain is Domain.BINARY:
            return (value == 0) | (value == 1)
        if domain is Domain.SIMPLEX:
            if value.ndim == 0:
                return np.asarray(False)
            return np.all(value > 0, axis=-1) & (
                np.abs(value.sum(axis=-1) - 1.0) < SIMPLEX_TOL
            )
    raise ValueError(f"Unknown domain {domain}")


class Family(NamedTuple):
    """Catalog entry for one distribution kind."""

    arg_names: Tuple[str, ...]
    arg_domains: Tuple[Domain, ...]
    support: Domain
    log_prob: Callable[..., NDArray]
    grad: Callable[..., Tuple[NDArray, ...]]
    extra_support: Callable[..., NDArray] = None
    event_ndim: int = 0

    @property
    def discrete(self) -> bool:
        """Whether the variate is integer valued."""
        return self.support.discrete


def _xdivy(x: NDArray, y: NDArray) -> NDArray:
    """x / y with 0 / 0 taken as 0."""
    return np.where(x == 0, 0.0, x / np.where(x == 0, 1.0, y))


# ----------------------------------------------------------------------------
# Continuous families
# ----------------------------------------------------------------------------

def _normal_lp(x, loc, scale):
    z = (x - loc) / scale
    return -0.5 * z * z - np.log(scale) - 0.5 * LOG_2PI


def _normal_grad(x, loc, scale):
    z = (x - loc) / scale
    return -z / scale, z / scale, (z * z - 1.0) / scale


def _half_normal_lp(x, scale):
    z = x / scale
    return LOG_2 - 0.5 * LOG_2PI - np.log(scale) - 0.5 * z * z


def _half_normal_grad(x, scale):
    z = x / scale
    return -z / scale, (z * z - 1.0) / scale


def _cauchy_lp(x, loc, scale):
    z = (x - loc) / scale
    return -LOG_PI - np.log(scale) - np.log1p(z * z)


def _cauchy_grad(x, loc, scale):
    z = (x - loc) / scale
    denom = scale * (1.0 + z * z)
    return -2.0 * z / denom, 2.0 * z / denom, (z * z - 1.0) / denom


def _half_cauchy_lp(x, scale):
    z = x / scale
    return LOG_2 - LOG_PI - np.log(scale) - np.log1p(z * z)


def _half_cauchy_grad(x, scale):
    z = x / scale
    denom = scale * (1.0 + z * z)
    return -2.0 * z / denom, (z * z - 1.0) / denom


def _student_t_lp(x, df, loc, scale):
    z = (x - loc) / scale
    return (
        gammaln(0.5 * (df + 1.0))
        - gammaln(0.5 * df)
        - 0.5 * np.log(df * np.pi)
        - np.log(scale)
        - 0.5 * (df + 1.0) * np.log1p(z * z / df)
    )


def _student_t_grad(x, df, loc, scale):
    z = (x - loc) / scale
    z2 = z * z
    d_x = -(df + 1.0) * z / (scale * (df + z2))
    d_scale = (-1.0 + (df + 1.0) * z2 / (df + z2)) / scale
    d_df = 0.5 * (
        digamma(0.5 * (df + 1.0))
        - digamma(0.5 * df)
        - 1.0 / df
        - np.log1p(z2 / df)
        + (df + 1.0) * z2 / (df * (df + z2))
    )
    return d_x, d_df, -d_x, d_scale


def _exponential_lp(x, rate):
    return np.log(rate) - rate * x


def _exponential_grad(x, rate):
    return -rate, 1.0 / rate - x


def _gamma_lp(x, shape, rate):
    return shape * np.log(rate) - gammaln(shape) + xlogy(shape - 1.0, x) - rate * x


def _gamma_grad(x, shape, rate):
    return (
        (shape - 1.0) / x - rate,
        np.log(rate) - digamma(shape) + np.log(x),
        shape / rate - x,
    )


def _inv_gamma_lp(x, shape, scale):
    return shape * np.log(scale) - gammaln(shape) - (shape + 1.0) * np.log(x) - scale / x


def _inv_gamma_grad(x, shape, scale):
    return (
        -(shape + 1.0) / x + scale / (x * x),
        np.log(scale) - digamma(shape) - np.log(x),
        shape / scale - 1.0 / x,
    )


def _lognormal_lp(x, loc, scale):
    log_x = np.log(x)
    z = (log_x - loc) / scale
    return -log_x - np.log(scale) - 0.5 * LOG_2PI - 0.5 * z * z


def _lognormal_grad(x, loc, scale):
    z = (np.log(x) - loc) / scale
    return -(1.0 + z / scale) / x, z / scale, (z * z - 1.0) / scale


def _beta_lp(x, a, b):
    return xlogy(a - 1.0, x) + xlog1py(b - 1.0, -x) - betaln(a, b)


def _beta_grad(x, a, b):
    psi_ab = digamma(a + b)
    return (
        (a - 1.0) / x - (b - 1.0) / (1.0 - x),
        np.log(x) - digamma(a) + psi_ab,
        np.log1p(-x) - digamma(b) + psi_ab,
    )


def _uniform_lp(x, lower, upper):
    return -np.log(upper - lower) + 0.0 * x


def _uniform_grad(x, lower, upper):
    width = upper - lower
    return np.zeros_like(x + width), 1.0 / width, -1.0 / width


def _uniform_support(x, lower, upper):
    return (x >= lower) & (x <= upper) & (upper > lower)


def _dirichlet_lp(x, alpha):
    alpha = np.broadcast_to(alpha, np.broadcast(x, alpha).shape)
    return (
        gammaln(alpha.sum(axis=-1))
        - gammaln(alpha).sum(axis=-1)
        + xlogy(alpha - 1.0, x).sum(axis=-1)
    )


def _dirichlet_grad(x, alpha):
    alpha = np.broadcast_to(alpha, np.broadcast(x, alpha).shape)
    total = digamma(alpha.sum(axis=-1, keepdims=True))
    return (alpha - 1.0) / x, total - digamma(alpha) + np.log(x)


# ----------------------------------------------------------------------------
# Discrete families (gradients with respect to the variate are zero)
# ----------------------------------------------------------------------------

def _log_binomial_coefficient(n, k):
    return gammaln(n + 1.0) - gammaln(k + 1.0) - gammaln(n - k + 1.0)


def _binomial_lp(x, trials, prob):
    return (
        _log_binomial_coefficient(trials, x)
        + xlogy(x, prob)
        + xlog1py(trials - x, -prob)
    )


def _binomial_grad(x, trials, prob):
    return (
        np.zeros_like(x + prob),
        np.zeros_like(trials + prob),
        _xdivy(x, prob) - _xdivy(trials - x, 1.0 - prob),
    )


def _binomial_support(x, trials, *_):
    return x <= trials


def _binomial_logit_lp(x, trials, logit):
    return (
        _log_binomial_coefficient(trials, x)
        + x * log_expit(logit)
        + (trials - x) * log_expit(-logit)
    )


def _binomial_logit_grad(x, trials, logit):
    return (
        np.zeros_like(x + logit),
        np.zeros_like(trials + logit),
        x - trials * expit(logit),
    )


def _bernoulli_lp(x, prob):
    return xlogy(x, prob) + xlog1py(1.0 - x, -prob)


def _bernoulli_grad(x, prob):
    return np.zeros_like(x + prob), _xdivy(x, prob) - _xdivy(1.0 - x, 1.0 - prob)


def _bernoulli_logit_lp(x, logit):
    return x * log_expit(logit) + (1.0 - x) * log_expit(-logit)


def _bernoulli_logit_grad(x, logit):
    return np.zeros_like(x + logit), x - expit(logit)


def _poisson_lp(x, rate):
    return xlogy(x, rate) - rate - gammaln(x + 1.0)


def _poisson_grad(x, rate):
    return np.zeros_like(x + rate), _xdivy(x, rate) - 1.0


def _poisson_log_lp(x, log_rate):
    return x * log_rate - np.exp(log_rate) - gammaln(x + 1.0)


def _poisson_log_grad(x, log_rate):
    return np.zeros_like(x + log_rate), x - np.exp(log_rate)


_R, _P, _NN, _U, _PR = Domain.REAL, Domain.POSITIVE, Domain.NONNEGATIVE, Domain.UNIT, Domain.PROBABILITY

FAMILIES: Dict[DistributionKind, Family] = {
    DistributionKind.NORMAL: Family(("loc", "scale"), (_R, _P), _R, _normal_lp, _normal_grad),
    DistributionKind.HALF_NORMAL: Family(("scale",), (_P,), _NN, _half_normal_lp, _half_normal_grad),
    DistributionKind.CAUCHY: Family(("loc", "scale"), (_R, _P), _R, _cauchy_lp, _cauchy_grad),
    DistributionKind.HALF_CAUCHY: Family(("scale",), (_P,), _NN, _half_cauchy_lp, _half_cauchy_grad),
    DistributionKind.STUDENT_T: Family(
        ("df", "loc", "scale"), (_P, _R, _P), _R, _student_t_lp, _student_t_grad
    ),
    DistributionKind.EXPONENTIAL: Family(("rate",), (_P,), _NN, _exponential_lp, _exponential_grad),
    DistributionKind.GAMMA: Family(("shape", "rate"), (_P, _P), _P, _gamma_lp, _gamma_grad),
    DistributionKind.INV_GAMMA: Family(("shape", "scale"), (_P, _P), _P, _inv_gamma_lp, _inv_gamma_grad),
    DistributionKind.LOGNORMAL: Family(("loc", "scale"), (_R, _P), _P, _lognormal_lp, _lognormal_grad),
    DistributionKind.BETA: Family(("alpha", "beta"), (_P, _P), _U, _beta_lp, _beta_grad),
    DistributionKind.UNIFORM: Family(
        ("lower", "upper"), (_R, _R), _R, _uniform_lp, _uniform_grad, _uniform_support
    ),
    DistributionKind.DIRICHLET: Family(
        ("concentration",), (_P,), Domain.SIMPLEX, _dirichlet_lp, _dirichlet_grad,
        event_ndim=1,
    ),
    DistributionKind.BINOMIAL: Family(
        ("trials", "prob"), (Domain.NONNEGATIVE_INT, _PR), Domain.NONNEGATIVE_INT,
        _binomial_lp, _binomial_grad, _binomial_support,
    ),
    DistributionKind.BINOMIAL_LOGIT: Family(
        ("trials", "logit"), (Domain.NONNEGATIVE_INT, _R), Domain.NONNEGATIVE_INT,
        _binomial_logit_lp, _binomial_logit_grad, _binomial_support,
    ),
    DistributionKind.BERNOULLI: Family(("prob",), (_PR,), Domain.BINARY, _bernoulli_lp, _bernoulli_grad),
    DistributionKind.BERNOULLI_LOGIT: Family(
        ("logit",), (_R,), Domain.BINARY, _bernoulli_logit_lp, _bernoulli_logit_grad
    ),
    DistributionKind.POISSON: Family(("rate",), (_NN,), Domain.NONNEGATIVE_INT, _poisson_lp, _poisson_grad),
    DistributionKind.POISSON_LOG: Family(
        ("log_rate",), (_R,), Domain.NONNEGATIVE_INT, _poisson_log_lp, _poisson_log_grad
    ),
}


def get_family(kind) -> Family:
    """Look up the catalog entry for a kind (enum member or its string value)."""
    return FAMILIES[DistributionKind(kind)]


def _support_mask(family: Family, x: NDArray, args: Tuple[NDArray, ...]) -> NDArray[np.bool_]:
    """Validity of the variate and every argument, shaped like the log density."""
    mask = in_domain(x, family.support)
    for value, domain in zip(args, family.arg_domains):
        ok = in_domain(value, domain)
        if family.event_ndim and np.ndim(ok):
            ok = np.all(ok, axis=-1)
        mask = mask & ok
    if family.extra_support is not None:
        mask = mask & family.extra_support(x, *args)
    return mask


def log_prob(kind, x, *args) -> NDArray[np.float64]:
    """
    Elementwise log density of ``x`` under the family ``kind``.

    Parameters
    ----------
    kind : DistributionKind or str
        Family in the catalog.
    x : array_like
        Variate(s).
    *args : array_like
        Distribution arguments in catalog order, broadcastable with ``x``.

    Returns
    -------
    NDArray[np.float64]
        Log density per element (per event for Dirichlet); -inf where the
        variate is outside the support or an argument is invalid.
    """
    family = get_family(kind)
    x = np.asarray(x, dtype=np.float64)
    args = tuple(np.asarray(a, dtype=np.float64) for a in args)
    with np.errstate(all="ignore"):
        lp = family.log_prob(x, *args)
        mask = _support_mask(family, x, args)
    return np.where(mask, lp, -np.inf)


def log_prob_grad(kind, x, *args) -> Tuple[NDArray[np.float64], ...]:
    """
    Elementwise partial derivatives of the log density.

    Returns a tuple ``(d/dx, d/dargs[0], ...)``, each broadcast to the common
    shape of ``x`` and ``args``. Entries at invalid points are 0.
    """
    family = get_family(kind)
    x = np.asarray(x, dtype=np.float64)
    args = tuple(np.asarray(a, dtype=np.float64) for a in args)
    shape = np.broadcast(x, *args).shape
    with np.errstate(all="ignore"):
        grads = family.grad(x, *args)
        mask = _support_mask(family, x, args)
    if family.event_ndim:
        mask = np.asarray(mask)[..., np.newaxis]
    mask = np.broadcast_to(mask, shape)
    return tuple(
        np.where(mask, np.broadcast_to(np.asarray(g, dtype=np.float64), shape), 0.0)
        for g in grads
    )


def log_prob_and_grad(kind, x, *args) -> Tuple[NDArray[np.float64], Tuple[NDArray[np.float64], ...]]:
    """
    Log density and its partial derivatives in one pass.

    Equivalent to ``(log_prob(kind, x, *args), log_prob_grad(kind, x, *args))``
    but evaluates the support mask once.
    """
    family = get_family(kind)
    x = np.asarray(x, dtype=np.float64)
    args = tuple(np.asarray(a, dtype=np.float64) for a in args)
    shape = np.broadcast(x, *args).shape
    with np.errstate(all="ignore"):
        lp = family.log_prob(x, *args)
        grads = family.grad(x, *args)
        mask = _support_mask(family, x, args)
    lp = np.where(mask, lp, -np.inf)
    if family.event_ndim:
        mask = np.asarray(mask)[..., np.newaxis]
    mask = np.broadcast_to(mask, shape)
    grads = tuple(
        np.where(mask, np.broadcast_to(np.asarray(g, dtype=np.float64), shape), 0.0)
        for g in grads
    )
    return lp, grads
