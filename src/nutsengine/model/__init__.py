"""
Model layer: parameter constraints, compiled log density, model builder.

**Constraints (constraints.py):**
- Unconstraining transforms with log-Jacobian terms and their gradients

**Log density (log_density.py):**
- LogDensity: interface consumed by the sampler
- Model: compiled posterior with exact gradient and pointwise log-likelihood
- FunctionLogDensity: wraps an arbitrary differentiable function

**Builder (model_builder.py):**
- ModelBuilder: data, groupings, parameters, priors, likelihood -> Model
- LinearPredictor: regression/group-effect argument
"""

from nutsengine.model.constraints import (
    Constraint,
    ConstraintKind,
    interval,
    lower_bounded,
    positive,
    real,
    simplex,
    unit_interval,
    upper_bounded,
)
from nutsengine.model.log_density import FunctionLogDensity, LogDensity, Model
from nutsengine.model.model_builder import LinearPredictor, ModelBuilder

__all__ = [
    "Constraint",
    "ConstraintKind",
    "interval",
    "lower_bounded",
    "positive",
    "real",
    "simplex",
    "unit_interval",
    "upper_bounded",
    "FunctionLogDensity",
    "LogDensity",
    "Model",
    "LinearPredictor",
    "ModelBuilder",
]
