"""
Posterior summaries from pooled post-warm-up draws.

Point estimates (mean, median, sd), quantiles at arbitrary probabilities and
credible intervals:
- equal-tailed: [(1 - p)/2, (1 + p)/2] quantiles
- HDI: narrowest interval holding a fraction p of the sorted draws
"""

from typing import Dict, Optional, Sequence, Tuple
import numpy as np
from numpy.typing import NDArray
import arviz as az

from nutsengine import defaults
from nutsengine.diagnostics.convergence import DiagnosticsComputer, iter_elements, posterior_of


class PosteriorSummarizer:
    """
    Posterior summary statistics.

    Chains are pooled; ordering inside chains only matters for the
    convergence columns.
    """

    @staticmethod
    def _pooled(samples: NDArray[np.float64]) -> NDArray[np.float64]:
        pooled = np.asarray(samples, dtype=np.float64).ravel()
        if pooled.size == 0:
            raise ValueError("Cannot summarize an empty sample")
        return pooled

    @staticmethod
    def quantile(samples: NDArray[np.float64], probs) -> NDArray[np.float64]:
        """Quantiles of the pooled draws at ``probs`` (linear interpolation)."""
        probs = np.asarray(probs, dtype=np.float64)
        if np.any((probs < 0) | (probs > 1)):
            raise ValueError(f"Quantile probabilities must be in [0, 1]. Got {probs}")
        return np.quantile(PosteriorSummarizer._pooled(samples), probs)

    @staticmethod
    def hdi(samples: NDArray[np.float64], prob: float) -> Tuple[float, float]:
        """Narrowest interval containing ``prob`` of the pooled draws (``arviz.hdi``)."""
        pooled = PosteriorSummarizer._pooled(samples)
        n = pooled.size
        # arviz returns a degenerate interval instead of failing
        width = int(np.floor(prob * n))
        if width == 0 or width >= n:
            raise ValueError(f"Too few draws ({n}) for a {prob:.0%} HDI")
        low, high = az.hdi(pooled, hdi_prob=prob)
        return float(low), float(high)

    @staticmethod
    def credible_interval(
        samples: NDArray[np.float64],
        prob: float = defaults.DEFAULT_CI_PROB,
        method: str = "equal_tailed",
    ) -> Tuple[float, float]:
        """
        Two-sided credible interval.

        Parameters
        ----------
        samples : NDArray[np.float64]
            Draws of one scalar quantity (any shape; pooled).
        prob : float
            Interval probability in (0, 1). Default 0.94.
        method : str
            ``"equal_tailed"`` (default) or ``"hdi"``.

        Returns
        -------
        (low, high) : Tuple[float, float]
        """
        if not (0.0 < prob < 1.0):
            raise ValueError(f"prob must be in (0, 1). Got {prob}")
        if method == "equal_tailed":
            low, high = PosteriorSummarizer.quantile(samples, [(1 - prob) / 2, (1 + prob) / 2])
            return float(low), float(high)
        if method == "hdi":
            return PosteriorSummarizer.hdi(samples, prob)
        raise ValueError(f"method must be 'equal_tailed' or 'hdi'. Got {method}")

    @staticmethod
    def summarize(
        summary,
        prob: float = defaults.DEFAULT_CI_PROB,
        method: str = "equal_tailed",
        quantiles: Optional[Sequence[float]] = None,
    ) -> Dict[str, Dict[str, float]]:
        """
        Compute posterior summary statistics.

        Parameters
        ----------
        summary : InferenceSummary or Dict[str, NDArray]
            Sampler output, or posterior arrays of shape (chain, draw, *shape).
        prob : float
            Credible interval probability. Default 0.94.
        method : str
            ``"equal_tailed"`` or ``"hdi"``.
        quantiles : sequence of float, optional
            Extra quantiles, reported as ``q5%``, ``q50%``, ...

        Returns
        -------
        stats : Dict[str, Dict[str, float]]
            Per element (``beta``, ``a[2]``, ...): mean, sd, median, ci_low,
            ci_high, requested quantiles, rhat, ess_bulk, ess_tail, mcse_mean.
        """
        quantiles = list(quantiles or [])
        stats: Dict[str, Dict[str, float]] = {}
        for name, element in iter_elements(posterior_of(summary)):
            pooled = PosteriorSummarizer._pooled(element)
            low, high = PosteriorSummarizer.credible_interval(element, prob, method)
            row = {
                "mean": float(np.mean(pooled)),
                "sd": float(np.std(pooled, ddof=1)) if pooled.size > 1 else 0.0,
                "median": float(np.median(pooled)),
                "ci_low": low,
                "ci_high": high,
            }
            if quantiles:
                for q, value in zip(quantiles, PosteriorSummarizer.quantile(pooled, quantiles)):
                    row[f"q{100 * q:g}%"] = float(value)

            row["rhat"] = DiagnosticsComputer.rhat(element)
            row["ess_bulk"] = DiagnosticsComputer.ess_bulk(element)
            row["ess_tail"] = DiagnosticsComputer.ess_tail(element)
            row["mcse_mean"] = DiagnosticsComputer.mcse_mean(element)
            stats[name] = row
        return stats
