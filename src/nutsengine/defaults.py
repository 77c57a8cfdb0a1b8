"""Default configuration values for nutsengine components.

Values are grouped into:
    - NUTS transition settings
    - Warm-up (adaptation) schedule and dual-averaging constants
    - Initialisation
    - Diagnostic thresholds

Defaults are not meant to be altered programmatically; every one of them can
be overridden through the corresponding constructor or method argument.
"""

# NUTS transition
DEFAULT_TARGET_ACCEPT: float = 0.8
"""Target mean acceptance statistic for step-size adaptation."""

DEFAULT_MAX_TREEDEPTH: int = 10
"""Maximum tree depth (at most 2**depth leapfrog steps per iteration)."""

DEFAULT_MAX_ENERGY_ERROR: float = 1000.0
"""Energy error above which a leapfrog step is flagged as divergent."""

DEFAULT_METRIC: str = "diag"
"""Mass-matrix structure: ``"diag"`` or ``"dense"``."""

# Sampling schedule
DEFAULT_ITERATIONS: int = 2000
"""Total iterations per chain, warm-up included."""

DEFAULT_WARMUP: int = 1000
"""Warm-up iterations per chain."""

DEFAULT_CHAINS: int = 4
"""Number of independent chains."""

# Warm-up windows
DEFAULT_INIT_BUFFER: int = 75
"""Fast adaptation (step size only) iterations at the start of warm-up."""

DEFAULT_TERM_BUFFER: int = 50
"""Fast adaptation iterations at the end of warm-up."""

DEFAULT_BASE_WINDOW: int = 25
"""Length of the first slow (mass-matrix) window; later windows double."""

# Dual averaging
DEFAULT_DA_GAMMA: float = 0.05
DEFAULT_DA_T0: float = 10.0
DEFAULT_DA_KAPPA: float = 0.75

DEFAULT_INIT_STEP_SIZE: float = 1.0
"""Step size the initial heuristic search starts from."""

# Initialisation
DEFAULT_INIT_RADIUS: float = 2.0
"""Random inits are drawn uniformly from (-radius, radius) in unconstrained space."""

DEFAULT_MAX_INIT_ATTEMPTS: int = 100
"""Attempts at finding a finite initial log density before giving up."""

# Diagnostics
DEFAULT_RHAT_THRESH: float = 1.01
"""R-hat above this value flags a parameter as not converged."""

DEFAULT_ESS_THRESH: int = 400
"""Total (all chains) effective sample size below this flags a parameter."""

DEFAULT_PARETO_K_THRESH: float = 0.7
"""PSIS-LOO observations with Pareto k above this are unreliable."""

DEFAULT_WAIC_VARIANCE_THRESH: float = 0.4
"""Pointwise WAIC penalty above this suggests WAIC is unreliable."""

DEFAULT_CI_PROB: float = 0.94
"""Default credible-interval probability used by the summarizer."""
