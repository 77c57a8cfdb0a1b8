"""
Inference module: No-U-Turn sampling with warm-up adaptation.

**Kernel (nuts.py):**
- Leapfrog integration, diagonal/dense Euclidean metric
- Multinomial NUTS transition with divergence detection

**Adaptation (adaptation.py):**
- Dual averaging step size, Welford mass matrix, windowed schedule

**Chains (chain.py):**
- Per-chain state machine, draws, progress messages, failures

**Sampler (sampler.py):**
- NUTSSampler: sequential or process-parallel chains
- InferenceSummary: read-only posterior, log-likelihood, sampler statistics
"""

from nutsengine.inference.adaptation import (
    ChainPhase,
    DualAveraging,
    WarmupSchedule,
    WelfordEstimator,
)
from nutsengine.inference.chain import (
    Chain,
    ChainFailure,
    ChainProgress,
    Draw,
    SamplerConfig,
    run_chain,
)
from nutsengine.inference.nuts import Metric, NUTSKernel, PhasePoint, leapfrog
from nutsengine.inference.sampler import InferenceSummary, NUTSSampler

__all__ = [
    "ChainPhase",
    "DualAveraging",
    "WarmupSchedule",
    "WelfordEstimator",
    "Chain",
    "ChainFailure",
    "ChainProgress",
    "Draw",
    "SamplerConfig",
    "run_chain",
    "Metric",
    "NUTSKernel",
    "PhasePoint",
    "leapfrog",
    "InferenceSummary",
    "NUTSSampler",
]
