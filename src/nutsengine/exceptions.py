"""
Exceptions and warnings raised by the inference engine.

Errors are fatal at the stage they occur:
- ModelSpecError / DomainError: while building a model
- SamplerError: for the chain that hit it (other chains keep running)

Warnings are never fatal. They are always emitted so that the caller can
decide whether a run is trustworthy:
- DivergenceWarning: post-warm-up transitions with excessive energy error
- ConvergenceWarning: R-hat or effective sample size outside thresholds
- ParetoShapeWarning: PSIS-LOO observations with unreliable Pareto k
"""


class NutsEngineError(Exception):
    """Base class for all errors raised by nutsengine."""


class ModelSpecError(NutsEngineError):
    """
    Malformed model specification.

    Raised at build time for cyclic prior graphs, references to undeclared
    parameters or data, duplicate declarations, shape mismatches between
    declared and supplied data, and observed data outside the support of
    the likelihood.
    """


class DomainError(NutsEngineError):
    """
    A fixed distribution argument violates its own constraint.

    Example: a literal negative scale, or a non-integer number of trials
    bound from data.
    """


class SamplerError(NutsEngineError):
    """
    Unrecoverable numerical failure inside one chain.

    Raised when no finite initial point is found within the allowed number
    of attempts, or when step-size adaptation collapses.
    """


class DivergenceWarning(UserWarning):
    """Post-warm-up transitions diverged."""


class ConvergenceWarning(UserWarning):
    """A parameter failed the R-hat or effective-sample-size check."""


class ParetoShapeWarning(UserWarning):
    """Pareto-smoothed importance sampling is unreliable for some observations."""
