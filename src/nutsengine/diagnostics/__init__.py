"""
Diagnostics module: convergence checks, posterior summaries, model comparison.

**Convergence (convergence.py):**
- Rank-normalised split R-hat, bulk/tail ESS, MCSE, divergence rate
- check_convergence: per-parameter NOT CONVERGED flags (warning only)

**Summaries (summary.py):**
- Mean, median, sd, quantiles, equal-tailed or HDI credible intervals

**Comparison (comparison.py):**
- WAIC, PSIS-LOO with Pareto k flags, elpd differences between models
"""

from nutsengine.diagnostics.convergence import ConvergenceReport, DiagnosticsComputer
from nutsengine.diagnostics.summary import PosteriorSummarizer
from nutsengine.diagnostics.comparison import (
    ComparisonRow,
    ELPDResult,
    compare,
    loo,
    psislw,
    waic,
)

__all__ = [
    "ConvergenceReport",
    "DiagnosticsComputer",
    "PosteriorSummarizer",
    "ComparisonRow",
    "ELPDResult",
    "compare",
    "loo",
    "psislw",
    "waic",
]
