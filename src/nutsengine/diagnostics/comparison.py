"""
Predictive model comparison from pointwise log-likelihood draws.

WAIC (Watanabe 2010):
    lppd_i    = log( mean_s exp(ll_si) )
    p_waic_i  = var_s(ll_si)    (sample variance)
    elpd_waic = sum_i (lppd_i - p_waic_i)

PSIS-LOO (Vehtari, Gelman & Gabry 2017):
    raw log weights lw_si = -ll_si, right tail smoothed with a fitted
    generalised Pareto distribution (arviz.psislw), then
    elpd_loo_i = log( sum_s w_si exp(ll_si) ) with normalised weights.
    An estimated Pareto shape k > 0.7 makes elpd_loo_i unreliable.

Standard errors use se = sqrt(n * var_i(elpd_i)). The comparison reports
differences to the best model; deciding what counts as a meaningful
difference is left to the caller.
"""

import logging
from typing import Dict, NamedTuple, Optional, Tuple
import warnings
import numpy as np
from numpy.typing import NDArray
from scipy.special import logsumexp
import arviz as az

from nutsengine import defaults
from nutsengine.exceptions import ParetoShapeWarning

logger = logging.getLogger(__name__)


class ELPDResult(NamedTuple):
    """Expected log pointwise predictive density estimate."""

    method: str
    elpd: float
    se: float
    p: float
    pointwise: NDArray[np.float64]
    n_samples: int
    n_observations: int
    pareto_k: Optional[NDArray[np.float64]] = None
    flagged: Tuple[int, ...] = ()
    warning: bool = False


class ComparisonRow(NamedTuple):
    """One model in a comparison, ranked by elpd (0 = best)."""

    rank: int
    elpd: float
    p: float
    se: float
    elpd_diff: float
    dse: float
    warning: bool


def _draws_by_obs(log_lik: NDArray[np.float64]) -> NDArray[np.float64]:
    """(draw, obs) or (chain, draw, obs) -> (samples, obs)."""
    ll = np.asarray(log_lik, dtype=np.float64)
    if ll.ndim == 3:
        ll = ll.reshape(-1, ll.shape[-1])
    if ll.ndim != 2:
        raise ValueError(f"log_lik must have shape (draw, obs) or (chain, draw, obs). Got {ll.shape}")
    n_samples, n_obs = ll.shape
    if n_samples < 2 or n_obs < 1:
        raise ValueError(f"Need at least 2 draws and 1 observation. Got {ll.shape}")
    if not np.all(np.isfinite(ll)):
        raise ValueError("log_lik contains non-finite values")
    return ll


def waic(log_lik: NDArray[np.float64]) -> ELPDResult:
    """
    Widely applicable information criterion.

    Parameters
    ----------
    log_lik : NDArray[np.float64]
        Pointwise log-likelihood, shape (draw, obs) or (chain, draw, obs).

    Returns
    -------
    result : ELPDResult
        ``method="waic"``; ``warning`` set if any p_waic_i exceeds 0.4.
    """
    ll = _draws_by_obs(log_lik)
    n_samples, n_obs = ll.shape

    lppd_i = logsumexp(ll, axis=0, b=1.0 / n_samples)
    p_waic_i = np.var(ll, axis=0, ddof=1)
    elpd_i = lppd_i - p_waic_i

    warn = bool(np.any(p_waic_i > defaults.DEFAULT_WAIC_VARIANCE_THRESH))
    if warn:
        message = (
            "For one or more observations the posterior variance of the log predictive "
            f"density exceeds {defaults.DEFAULT_WAIC_VARIANCE_THRESH}; WAIC may be unreliable, "
            "consider PSIS-LOO"
        )
        logger.warning(message)
        warnings.warn(message, UserWarning, stacklevel=2)

    return ELPDResult(
        method="waic",
        elpd=float(np.sum(elpd_i)),
        se=float(np.sqrt(n_obs * np.var(elpd_i))),
        p=float(np.sum(p_waic_i)),
        pointwise=elpd_i,
        n_samples=n_samples,
        n_observations=n_obs,
        warning=warn,
    )


def psislw(
    log_ratios: NDArray[np.float64],
    r_eff: float = 1.0,
) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Pareto-smoothed importance sampling log weights (``arviz.psislw``).

    Parameters
    ----------
    log_ratios : NDArray[np.float64]
        Raw log importance ratios, shape (samples,) or (samples, obs).
    r_eff : float
        Relative efficiency of the draws (ESS / S). Default 1.

    Returns
    -------
    log_weights : NDArray[np.float64]
        Smoothed, normalised log weights (same shape as the input).
    pareto_k : NDArray[np.float64]
        Estimated Pareto shape per column (inf if the tail is too short).
    """
    if not r_eff > 0:
        raise ValueError(f"r_eff must be positive. Got {r_eff}")
    ratios = np.asarray(log_ratios, dtype=np.float64)
    one_dim = ratios.ndim == 1
    if one_dim:
        ratios = ratios[:, np.newaxis]

    # arviz keeps the samples on the last axis
    log_weights, pareto_k = az.psislw(ratios.T, reff=r_eff)
    log_weights = np.asarray(log_weights).T
    pareto_k = np.atleast_1d(np.asarray(pareto_k, dtype=np.float64))

    if one_dim:
        return log_weights[:, 0], pareto_k
    return log_weights, pareto_k


def loo(
    log_lik: NDArray[np.float64],
    r_eff: float = 1.0,
    pareto_k_threshold: float = defaults.DEFAULT_PARETO_K_THRESH,
) -> ELPDResult:
    """
    Pareto-smoothed importance sampling leave-one-out cross-validation.

    Parameters
    ----------
    log_lik : NDArray[np.float64]
        Pointwise log-likelihood, shape (draw, obs) or (chain, draw, obs).
    r_eff : float
        Relative efficiency of the draws. Default 1.
    pareto_k_threshold : float
        Observations with a larger Pareto shape are flagged. Default 0.7.

    Returns
    -------
    result : ELPDResult
        ``method="loo"`` with per-observation ``pareto_k`` and ``flagged``
        observation indices.
    """
    ll = _draws_by_obs(log_lik)
    n_samples, n_obs = ll.shape

    log_weights, pareto_k = psislw(-ll, r_eff)
    elpd_i = logsumexp(log_weights + ll, axis=0)
    lppd = np.sum(logsumexp(ll, axis=0, b=1.0 / n_samples))
    elpd = float(np.sum(elpd_i))

    flagged = tuple(int(i) for i in np.flatnonzero(pareto_k > pareto_k_threshold))
    if flagged:
        message = (
            f"Estimated Pareto k exceeds {pareto_k_threshold} for {len(flagged)} of {n_obs} "
            f"observations {list(flagged)}; PSIS-LOO is unreliable for them"
        )
        logger.warning(message)
        warnings.warn(message, ParetoShapeWarning, stacklevel=2)

    return ELPDResult(
        method="loo",
        elpd=elpd,
        se=float(np.sqrt(n_obs * np.var(elpd_i))),
        p=float(lppd - elpd),
        pointwise=elpd_i,
        n_samples=n_samples,
        n_observations=n_obs,
        pareto_k=pareto_k,
        flagged=flagged,
        warning=bool(flagged),
    )


def compare(results: Dict[str, ELPDResult]) -> Dict[str, ComparisonRow]:
    """
    Rank models by elpd.

    Parameters
    ----------
    results : Dict[str, ELPDResult]
        WAIC or LOO results (all of the same method and on the same
        observations), keyed by model name.

    Returns
    -------
    table : Dict[str, ComparisonRow]
        Ordered best first. ``elpd_diff`` is the difference to the best
        model and ``dse`` the standard error of that difference,
        sqrt(n * var_i(elpd_best_i - elpd_i)).
    """
    if len(results) < 2:
        raise ValueError(f"Need at least 2 models to compare. Got {len(results)}")
    methods = {result.method for result in results.values()}
    if len(methods) > 1:
        raise ValueError(f"All results must use the same method. Got {sorted(methods)}")
    n_obs = {result.n_observations for result in results.values()}
    if len(n_obs) > 1:
        raise ValueError(f"All models must be evaluated on the same observations. Got {sorted(n_obs)}")
    n = n_obs.pop()

    ranked = sorted(results.items(), key=lambda item: item[1].elpd, reverse=True)
    best = ranked[0][1]
    table: Dict[str, ComparisonRow] = {}
    for rank, (name, result) in enumerate(ranked):
        diff_i = best.pointwise - result.pointwise
        table[name] = ComparisonRow(
            rank=rank,
            elpd=result.elpd,
            p=result.p,
            se=result.se,
            elpd_diff=float(best.elpd - result.elpd),
            dse=float(np.sqrt(n * np.var(diff_i))),
            warning=result.warning,
        )
    return table
