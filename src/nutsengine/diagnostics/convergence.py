"""
Convergence diagnostics for multi-chain MCMC output.

Key diagnostics:
- Rhat (potential scale reduction): <1.01 indicates convergence
- Bulk ESS (effective sample size of rank-normalised draws): >400 recommended
- Tail ESS (minimum ESS of the 5% and 95% quantile indicators): >400 recommended
- Divergences: any post-warm-up divergence deserves attention

Rhat works on split chains: every chain is cut into a first and a second
half which are treated as separate chains, so that within-chain drift
inflates it. ESS and MCSE come from arviz, which splits chains the same way.
"""

import logging
from typing import Dict, NamedTuple
import warnings
import numpy as np
from numpy.typing import NDArray
from scipy import stats
import arviz as az

from nutsengine import defaults
from nutsengine.exceptions import ConvergenceWarning
from nutsengine.model.log_density import flat_names

logger = logging.getLogger(__name__)


def _as_chains(samples: NDArray[np.float64]) -> NDArray[np.float64]:
    """Coerce to (chains, draws); a 1-D array is a single chain."""
    ary = np.asarray(samples, dtype=np.float64)
    if ary.ndim == 1:
        ary = ary[np.newaxis, :]
    if ary.ndim != 2:
        raise ValueError(f"Expected samples of shape (chains, draws). Got {ary.shape}")
    if ary.shape[1] < 4:
        raise ValueError(f"Need at least 4 draws per chain. Got {ary.shape[1]}")
    return ary


def split_chains(ary: NDArray[np.float64]) -> NDArray[np.float64]:
    """Halve every chain; with an odd length the middle draw is dropped."""
    half = ary.shape[1] // 2
    return np.concatenate((ary[:, :half], ary[:, -half:]), axis=0)


def rank_normalize(ary: NDArray[np.float64]) -> NDArray[np.float64]:
    """Normal scores of the pooled ranks (average ties, Blom offset 3/8)."""
    ary = np.asarray(ary, dtype=np.float64)
    rank = stats.rankdata(ary, method="average").reshape(ary.shape)
    return stats.norm.ppf((rank - 3.0 / 8.0) / (ary.size + 0.25))


def _rhat(ary: NDArray[np.float64]) -> float:
    """Gelman-Rubin statistic of (chains, draws) without splitting."""
    n_draws = ary.shape[1]
    chain_means = np.mean(ary, axis=1)
    B = n_draws * np.var(chain_means, ddof=1)
    W = np.mean(np.var(ary, axis=1, ddof=1))

    if W == 0:
        return 1.0 if B == 0 else np.inf

    var_hat = ((n_draws - 1) / n_draws) * W + (1 / n_draws) * B
    return float(np.sqrt(var_hat / W))


class ConvergenceReport(NamedTuple):
    """Convergence verdict for one parameter element."""

    parameter: str
    rhat: float
    ess_bulk: float
    ess_tail: float
    converged: bool


class DiagnosticsComputer:
    """
    Compute convergence diagnostics from posterior samples.

    Includes: Rhat, ESS, MCSE, divergence rates.
    """

    @staticmethod
    def rhat(posterior_samples: NDArray[np.float64], method: str = "rank") -> float:
        """
        Compute Rhat (potential scale reduction factor).

        Rhat measures whether multiple chains have converged to the same
        posterior distribution. Rhat < 1.01 indicates convergence.

        Parameters
        ----------
        posterior_samples : NDArray[np.float64]
            Posterior samples, shape (chains, draws).
        method : str
            ``"rank"`` (default): maximum of the split Rhat of rank-normalised
            draws and of rank-normalised draws folded around the median.
            ``"split"``: classic split Rhat on the raw draws.

        Returns
        -------
        rhat : float
            Potential scale reduction factor. 1.0 for constant draws, inf for
            chains constant at different values.
        """
        ary = split_chains(_as_chains(posterior_samples))

        if method == "split":
            return _rhat(ary)
        if method == "rank":
            rhat_bulk = _rhat(rank_normalize(ary))
            folded = np.abs(ary - np.median(ary))
            rhat_tail = _rhat(rank_normalize(folded))
            return float(max(rhat_bulk, rhat_tail))
        raise ValueError(f"method must be 'rank' or 'split'. Got {method}")

    @staticmethod
    def ess(posterior_samples: NDArray[np.float64], method: str = "bulk") -> float:
        """
        Compute effective sample size (ESS) with ``arviz.ess``.

        ESS accounts for autocorrelation in MCMC samples, estimated from
        autocovariances of split chains truncated by Geyer's initial
        positive and monotone sequences.

        Parameters
        ----------
        posterior_samples : NDArray[np.float64]
            Posterior samples, shape (chains, draws) or (draws,).
        method : str
            ``"bulk"`` (rank-normalised, default), ``"tail"`` (minimum over
            the 5% and 95% quantile indicators) or ``"mean"`` (raw draws).

        Returns
        -------
        ess : float
            Effective sample size (total over chains).
        """
        if method not in ("bulk", "tail", "mean"):
            raise ValueError(f"method must be 'bulk', 'tail' or 'mean'. Got {method}")
        ary = _as_chains(posterior_samples)
        return float(az.ess(ary, method=method))

    @staticmethod
    def ess_bulk(posterior_samples: NDArray[np.float64]) -> float:
        return DiagnosticsComputer.ess(posterior_samples, method="bulk")

    @staticmethod
    def ess_tail(posterior_samples: NDArray[np.float64]) -> float:
        return DiagnosticsComputer.ess(posterior_samples, method="tail")

    @staticmethod
    def mcse_mean(posterior_samples: NDArray[np.float64]) -> float:
        """Monte Carlo standard error of the posterior mean: sd / sqrt(ESS mean)."""
        ary = _as_chains(posterior_samples)
        return float(az.mcse(ary, method="mean"))

    @staticmethod
    def divergence_rate(summary) -> float:
        """
        Compute divergence rate from an InferenceSummary.

        Divergences indicate areas of high curvature in parameter space
        where NUTS struggles. Any divergence deserves a look.

        Returns
        -------
        div_rate : float
            Fraction of post-warm-up transitions that diverged [0, 1].
        """
        n_total = (summary.config.iterations - summary.config.warmup) * len(summary.chains)
        return float(summary.divergences / n_total) if n_total else 0.0

    @staticmethod
    def check_convergence(
        summary,
        rhat_threshold: float = defaults.DEFAULT_RHAT_THRESH,
        ess_threshold: float = defaults.DEFAULT_ESS_THRESH,
    ) -> Dict[str, ConvergenceReport]:
        """
        Flag parameter elements that have not converged.

        A parameter is NOT CONVERGED when its Rhat exceeds ``rhat_threshold``
        or its bulk or tail ESS falls below ``ess_threshold``. This is a
        warning (``ConvergenceWarning``), never an error.

        Parameters
        ----------
        summary : InferenceSummary or Dict[str, NDArray]
            Sampler output, or posterior arrays of shape (chain, draw, *shape).
        rhat_threshold : float
            Default 1.01.
        ess_threshold : float
            Default 400.

        Returns
        -------
        reports : Dict[str, ConvergenceReport]
            Keyed by element name (``mu``, ``a[1]``, ...).
        """
        if rhat_threshold <= 1.0:
            raise ValueError(f"rhat_threshold must be > 1. Got {rhat_threshold}")
        if ess_threshold <= 0:
            raise ValueError(f"ess_threshold must be positive. Got {ess_threshold}")

        reports: Dict[str, ConvergenceReport] = {}
        for name, element in iter_elements(posterior_of(summary)):
            rhat = DiagnosticsComputer.rhat(element)
            ess_bulk = DiagnosticsComputer.ess_bulk(element)
            ess_tail = DiagnosticsComputer.ess_tail(element)
            converged = bool(
                rhat <= rhat_threshold and ess_bulk >= ess_threshold and ess_tail >= ess_threshold
            )
            reports[name] = ConvergenceReport(name, rhat, ess_bulk, ess_tail, converged)

        flagged = [name for name, report in reports.items() if not report.converged]
        if flagged:
            message = (
                f"{len(flagged)} parameter(s) NOT CONVERGED (rhat > {rhat_threshold} or "
                f"ESS < {ess_threshold}): {', '.join(flagged)}"
            )
            logger.warning(message)
            warnings.warn(message, ConvergenceWarning, stacklevel=2)
        return reports


def posterior_of(summary) -> Dict[str, NDArray[np.float64]]:
    """Posterior arrays of an InferenceSummary, or the dict itself."""
    if isinstance(summary, dict):
        return summary
    return summary.posterior


def iter_elements(posterior: Dict[str, NDArray[np.float64]]):
    """Yield ``(element name, (chain, draw) array)`` for every scalar element."""
    for name, values in posterior.items():
        values = np.asarray(values)
        shape = values.shape[2:]
        flat = values.reshape(values.shape[0], values.shape[1], -1)
        for j, element_name in enumerate(flat_names(name, shape)):
            yield element_name, flat[:, :, j]
