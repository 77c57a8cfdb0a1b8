"""
nutsengine: Bayesian inference with the No-U-Turn Sampler.

Build a model, sample it, check convergence, summarise and compare:

    model = ModelBuilder()...build()
    summary = NUTSSampler().sample(model, random_seed=1)
    DiagnosticsComputer.check_convergence(summary)
    PosteriorSummarizer.summarize(summary)
    loo(summary.log_likelihood)
"""

from nutsengine.exceptions import (
    ConvergenceWarning,
    DivergenceWarning,
    DomainError,
    ModelSpecError,
    NutsEngineError,
    ParetoShapeWarning,
    SamplerError,
)
from nutsengine.distributions import Distribution, DistributionKind
from nutsengine.model import (
    FunctionLogDensity,
    LinearPredictor,
    LogDensity,
    Model,
    ModelBuilder,
    interval,
    lower_bounded,
    positive,
    real,
    simplex,
    unit_interval,
    upper_bounded,
)
from nutsengine.inference import ChainPhase, ChainProgress, InferenceSummary, NUTSSampler
from nutsengine.diagnostics import (
    DiagnosticsComputer,
    PosteriorSummarizer,
    compare,
    loo,
    waic,
)

__version__ = "0.1.0"

__all__ = [
    "ConvergenceWarning",
    "DivergenceWarning",
    "DomainError",
    "ModelSpecError",
    "NutsEngineError",
    "ParetoShapeWarning",
    "SamplerError",
    "Distribution",
    "DistributionKind",
    "FunctionLogDensity",
    "LinearPredictor",
    "LogDensity",
    "Model",
    "ModelBuilder",
    "interval",
    "lower_bounded",
    "positive",
    "real",
    "simplex",
    "unit_interval",
    "upper_bounded",
    "ChainPhase",
    "ChainProgress",
    "InferenceSummary",
    "NUTSSampler",
    "DiagnosticsComputer",
    "PosteriorSummarizer",
    "compare",
    "loo",
    "waic",
]
