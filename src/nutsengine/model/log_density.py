"""
Log-density evaluation in unconstrained space.

``LogDensity`` is the only interface the sampler depends on: a pure function
of the unconstrained vector returning the log density and its gradient. The
sampler does not care whether gradients come from hand-derived closed forms
(``Model``) or from any other differentiation mechanism wrapped in
``FunctionLogDensity``.

``Model`` is produced by ``ModelBuilder.build()``. It holds a flat,
topologically ordered list of terms (priors first, hyperparameters before
the parameters that depend on them, likelihood last). The log posterior is

    log p(u) = sum_params log|J(u)| + sum_priors log p(x | hyper) + log p(y | x)

and the gradient is propagated exactly: family partial derivatives are
reduced over broadcast axes, routed through linear predictors, and finally
through each parameter's constraining transform.
"""

from abc import ABC, abstractmethod
import itertools
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple
import numpy as np
from numpy.typing import NDArray

from nutsengine.distributions.families import (
    DistributionKind,
    get_family,
    log_prob,
    log_prob_and_grad,
)
from nutsengine.exceptions import ModelSpecError
from nutsengine.model.constraints import Constraint


def sum_to_shape(grad: NDArray[np.float64], shape: Tuple[int, ...]) -> NDArray[np.float64]:
    """Reduce a broadcast gradient back to the shape of its operand."""
    grad = np.asarray(grad, dtype=np.float64)
    shape = tuple(shape)
    if grad.shape == shape:
        return grad
    extra = grad.ndim - len(shape)
    if extra > 0:
        grad = grad.sum(axis=tuple(range(extra)))
    axes = tuple(i for i, n in enumerate(shape) if n == 1 and grad.shape[i] != 1)
    if axes:
        grad = grad.sum(axis=axes, keepdims=True)
    return grad.reshape(shape)


def flat_names(name: str, shape: Tuple[int, ...]) -> List[str]:
    """Element names with 1-based indices, e.g. ``a[1]``, ``L[2,1]``."""
    if not shape:
        return [name]
    return [
        f"{name}[{','.join(str(i + 1) for i in index)}]"
        for index in itertools.product(*(range(n) for n in shape))
    ]


class LogDensity(ABC):
    """
    Target density over an unconstrained vector.

    Subclasses implement ``dimension``, ``log_density_gradient`` and the
    parameter bookkeeping used to present draws on the constrained scale.
    """

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Length of the unconstrained vector."""

    @abstractmethod
    def log_density_gradient(self, u: NDArray[np.float64]) -> Tuple[float, NDArray[np.float64]]:
        """Log density (up to a constant) and its exact gradient at ``u``."""

    @property
    @abstractmethod
    def parameter_shapes(self) -> Dict[str, Tuple[int, ...]]:
        """Constrained shape of every parameter, in declaration order."""

    @abstractmethod
    def constrain(self, u: NDArray[np.float64]) -> Dict[str, NDArray[np.float64]]:
        """Constrained parameter values at ``u``."""

    @abstractmethod
    def unconstrain_partial(
        self,
        values: Dict[str, NDArray[np.float64]],
        u: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """Overwrite the blocks of ``u`` named in ``values`` with their unconstrained values."""

    def log_density(self, u: NDArray[np.float64]) -> float:
        """Log density without the gradient."""
        return self.log_density_gradient(u)[0]

    @property
    def parameter_names(self) -> List[str]:
        return list(self.parameter_shapes)

    @property
    def flat_parameter_names(self) -> List[str]:
        """Names of every scalar element of the constrained parameters."""
        names: List[str] = []
        for name, shape in self.parameter_shapes.items():
            names.extend(flat_names(name, shape))
        return names

    @property
    def n_observations(self) -> int:
        """Number of observations with a pointwise log-likelihood."""
        return 0

    @property
    def observed_name(self) -> str:
        return "y"

    def pointwise_log_likelihood(self, u: NDArray[np.float64]) -> NDArray[np.float64]:
        """Log-likelihood of each observation at ``u``."""
        return np.empty(0)

    def constrained_vector(self, u: NDArray[np.float64]) -> NDArray[np.float64]:
        """All constrained parameter values concatenated (C order)."""
        values = self.constrain(u)
        if not values:
            return np.empty(0)
        return np.concatenate([np.ravel(values[name]) for name in self.parameter_shapes])

    def unconstrain(self, values: Dict[str, NDArray[np.float64]]) -> NDArray[np.float64]:
        """
        Unconstrained vector for a complete set of constrained values.

        Raises
        ------
        ModelSpecError
            If a parameter is missing or unknown.
        """
        missing = [name for name in self.parameter_shapes if name not in values]
        if missing:
            raise ModelSpecError(f"Missing values for parameters {missing}")
        return self.unconstrain_partial(values, np.zeros(self.dimension))

    def initial_point(
        self,
        rng: np.random.Generator,
        radius: float,
        init: Optional[Dict[str, NDArray[np.float64]]] = None,
    ) -> NDArray[np.float64]:
        """
        Random initial point, uniform in (-radius, radius) per coordinate.

        Parameters named in ``init`` are set to the given constrained values.
        """
        u = rng.uniform(-radius, radius, size=self.dimension) if radius > 0 else np.zeros(self.dimension)
        if init:
            u = self.unconstrain_partial(init, u)
        return u


# ----------------------------------------------------------------------------
# Compiled model
# ----------------------------------------------------------------------------

class ParameterBlock(NamedTuple):
    """Location of one parameter inside the unconstrained vector."""

    name: str
    shape: Tuple[int, ...]
    constraint: Constraint
    start: int
    stop: int


class ConstantArgument:
    """Literal or data-bound distribution argument."""

    parameters: Tuple[str, ...] = ()

    def __init__(self, value: NDArray[np.float64]) -> None:
        self.value = np.asarray(value, dtype=np.float64)
        self.shape = self.value.shape

    def evaluate(self, values: Dict[str, NDArray[np.float64]]) -> NDArray[np.float64]:
        return self.value

    def accumulate(self, grad, values, grads) -> None:
        pass


class ParameterArgument:
    """Distribution argument bound to a (hyper)parameter."""

    def __init__(self, name: str, shape: Tuple[int, ...]) -> None:
        self.name = name
        self.shape = shape
        self.parameters = (name,)

    def evaluate(self, values: Dict[str, NDArray[np.float64]]) -> NDArray[np.float64]:
        return values[self.name]

    def accumulate(self, grad, values, grads) -> None:
        grads[self.name] += sum_to_shape(grad, self.shape)


class LinearArgument:
    """
    Compiled linear predictor.

    eta = offset + intercept + sum_k coef_k * covariate_k + sum_g effect_g[index_g]
    """

    def __init__(
        self,
        size: int,
        intercept: Optional[str],
        coefficients: Sequence[Tuple[str, NDArray[np.float64]]],
        group_effects: Sequence[Tuple[str, NDArray[np.int64], int]],
        offset: Optional[NDArray[np.float64]],
    ) -> None:
        self.size = size
        self.shape = (size,)
        self.intercept = intercept
        self.coefficients = list(coefficients)
        self.group_effects = list(group_effects)
        self.offset = offset
        names = [] if intercept is None else [intercept]
        names += [name for name, _ in self.coefficients]
        names += [name for name, _, _ in self.group_effects]
        self.parameters = tuple(names)

    def evaluate(self, values: Dict[str, NDArray[np.float64]]) -> NDArray[np.float64]:
        eta = np.zeros(self.size) if self.offset is None else self.offset.copy()
        if self.intercept is not None:
            eta += values[self.intercept]
        for name, covariate in self.coefficients:
            coef = values[name]
            if covariate.ndim == 1:
                eta += coef * covariate
            else:
                eta += covariate @ coef
        for name, index, _ in self.group_effects:
            eta += values[name][index]
        return eta

    def accumulate(self, grad, values, grads) -> None:
        g = sum_to_shape(grad, self.shape)
        if self.intercept is not None:
            grads[self.intercept] += g.sum()
        for name, covariate in self.coefficients:
            if covariate.ndim == 1:
                grads[name] += g @ covariate
            else:
                grads[name] += covariate.T @ g
        for name, index, n_groups in self.group_effects:
            grads[name] += np.bincount(index, weights=g, minlength=n_groups)


class Term:
    """One ``target ~ distribution(arguments)`` statement of the model."""

    def __init__(
        self,
        kind: DistributionKind,
        target: str,
        arguments: Sequence,
        observed: Optional[NDArray[np.float64]] = None,
        target_shape: Tuple[int, ...] = (),
    ) -> None:
        self.kind = kind
        self.target = target
        self.arguments = tuple(arguments)
        self.observed = observed
        self.target_shape = target_shape

    @property
    def is_likelihood(self) -> bool:
        return self.observed is not None

    @property
    def n_elements(self) -> int:
        """Number of log-density elements (observations for the likelihood)."""
        shape = self.observed.shape if self.is_likelihood else self.target_shape
        batch = shape[:len(shape) - get_family(self.kind).event_ndim]
        return int(np.prod(batch, dtype=np.int64))

    @property
    def dependencies(self) -> Tuple[str, ...]:
        """Parameters appearing in the arguments."""
        deps: List[str] = []
        for argument in self.arguments:
            deps.extend(argument.parameters)
        return tuple(dict.fromkeys(deps))

    def variate(self, values: Dict[str, NDArray[np.float64]]) -> NDArray[np.float64]:
        return self.observed if self.is_likelihood else values[self.target]

    def elementwise(self, values: Dict[str, NDArray[np.float64]]) -> NDArray[np.float64]:
        """Log density per element (per event for vector families)."""
        args = [argument.evaluate(values) for argument in self.arguments]
        return log_prob(self.kind, self.variate(values), *args)

    def evaluate(
        self,
        values: Dict[str, NDArray[np.float64]],
        grads: Dict[str, NDArray[np.float64]],
    ) -> float:
        """Add this term's gradient into ``grads`` and return its log density."""
        args = [argument.evaluate(values) for argument in self.arguments]
        lp, partials = log_prob_and_grad(self.kind, self.variate(values), *args)
        total = float(np.sum(lp))
        if not np.isfinite(total):
            return total
        if not self.is_likelihood:
            grads[self.target] += sum_to_shape(partials[0], self.target_shape)
        for argument, partial in zip(self.arguments, partials[1:]):
            argument.accumulate(partial, values, grads)
        return total

    def __repr__(self) -> str:
        """String representation."""
        return f"Term({self.target} ~ {self.kind.value}{self.dependencies})"


class Model(LogDensity):
    """
    Compiled Bayesian model.

    Built by ``ModelBuilder``; immutable afterwards. Picklable, so chains can
    run in worker processes.

    Attributes
    ----------
    blocks : List[ParameterBlock]
        Parameters in declaration order with their unconstrained slices.
    terms : List[Term]
        Prior terms in topological order followed by the likelihood term.
    data : Dict[str, NDArray]
        Bound data (groupings 1-based, as supplied).
    dims : Dict[str, int]
        Resolved named dimensions.
    """

    def __init__(
        self,
        blocks: Sequence[ParameterBlock],
        terms: Sequence[Term],
        data: Dict[str, NDArray],
        dims: Dict[str, int],
    ) -> None:
        self.blocks = list(blocks)
        self.terms = list(terms)
        self.data = dict(data)
        self.dims = dict(dims)
        self._dimension = self.blocks[-1].stop if self.blocks else 0
        self._shapes = {block.name: block.shape for block in self.blocks}
        self._likelihood = next(term for term in self.terms if term.is_likelihood)

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def parameter_shapes(self) -> Dict[str, Tuple[int, ...]]:
        return dict(self._shapes)

    @property
    def likelihood(self) -> Term:
        return self._likelihood

    @property
    def n_observations(self) -> int:
        return self._likelihood.n_elements

    @property
    def observed_name(self) -> str:
        return self._likelihood.target

    def _constrain_all(self, u: NDArray[np.float64]) -> Tuple[Dict[str, NDArray[np.float64]], float]:
        values: Dict[str, NDArray[np.float64]] = {}
        log_det = 0.0
        for block in self.blocks:
            x, block_log_det = block.constraint.constrain(u[block.start:block.stop], block.shape)
            values[block.name] = x
            log_det += block_log_det
        return values, log_det

    def constrain(self, u: NDArray[np.float64]) -> Dict[str, NDArray[np.float64]]:
        return self._constrain_all(np.asarray(u, dtype=np.float64))[0]

    def unconstrain_partial(
        self,
        values: Dict[str, NDArray[np.float64]],
        u: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        unknown = sorted(set(values) - set(self._shapes))
        if unknown:
            raise ModelSpecError(f"Unknown parameters {unknown}")
        u = np.array(u, dtype=np.float64)
        for block in self.blocks:
            if block.name not in values:
                continue
            value = np.asarray(values[block.name], dtype=np.float64)
            if value.shape != block.shape:
                raise ModelSpecError(
                    f"Value for '{block.name}' must have shape {block.shape}. Got {value.shape}"
                )
            u[block.start:block.stop] = block.constraint.unconstrain(value)
        return u

    def log_density_gradient(self, u: NDArray[np.float64]) -> Tuple[float, NDArray[np.float64]]:
        """
        Log posterior and gradient at the unconstrained point ``u``.

        Returns ``(-inf, zeros)`` when any term has zero probability.
        """
        u = np.asarray(u, dtype=np.float64)
        with np.errstate(over="ignore"):
            values, log_det = self._constrain_all(u)
        grads = {name: np.zeros(shape) for name, shape in self._shapes.items()}

        total = log_det
        for term in self.terms:
            total += term.evaluate(values, grads)
            if not np.isfinite(total):
                return -np.inf, np.zeros(self._dimension)

        gradient = np.empty(self._dimension)
        for block in self.blocks:
            gradient[block.start:block.stop] = block.constraint.backpropagate(
                u[block.start:block.stop], values[block.name], grads[block.name]
            )
        return float(total), gradient

    def log_density(self, u: NDArray[np.float64]) -> float:
        u = np.asarray(u, dtype=np.float64)
        with np.errstate(over="ignore"):
            values, log_det = self._constrain_all(u)
        total = log_det
        for term in self.terms:
            total += float(np.sum(term.elementwise(values)))
        return float(total) if np.isfinite(total) else -np.inf

    def pointwise_log_likelihood(self, u: NDArray[np.float64]) -> NDArray[np.float64]:
        """Log-likelihood of every observation (flattened) at ``u``."""
        values = self.constrain(u)
        return np.ravel(self._likelihood.elementwise(values))

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"Model(parameters={self.parameter_names}, dimension={self.dimension}, "
            f"n_obs={self.n_observations})"
        )


# ----------------------------------------------------------------------------
# Arbitrary differentiable targets
# ----------------------------------------------------------------------------

class FunctionLogDensity(LogDensity):
    """
    Log density given as a callable over an unconstrained vector.

    Parameters
    ----------
    function : Callable
        ``function(u) -> (log_density, gradient)``. Must be a module-level
        callable for chains to run in worker processes.
    dimension : int
        Length of ``u``.
    name : str
        Name under which the vector is reported. Default ``"x"``.
    """

    def __init__(
        self,
        function: Callable[[NDArray[np.float64]], Tuple[float, NDArray[np.float64]]],
        dimension: int,
        name: str = "x",
    ) -> None:
        if dimension <= 0:
            raise ValueError(f"dimension must be positive. Got {dimension}")
        self.function = function
        self._dimension = int(dimension)
        self.name = name

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def parameter_shapes(self) -> Dict[str, Tuple[int, ...]]:
        return {self.name: (self._dimension,)}

    def log_density_gradient(self, u: NDArray[np.float64]) -> Tuple[float, NDArray[np.float64]]:
        lp, grad = self.function(np.asarray(u, dtype=np.float64))
        lp = float(lp)
        if np.isnan(lp):
            lp = -np.inf
        return lp, np.asarray(grad, dtype=np.float64)

    def constrain(self, u: NDArray[np.float64]) -> Dict[str, NDArray[np.float64]]:
        return {self.name: np.array(u, dtype=np.float64)}

    def unconstrain_partial(
        self,
        values: Dict[str, NDArray[np.float64]],
        u: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        unknown = sorted(set(values) - {self.name})
        if unknown:
            raise ModelSpecError(f"Unknown parameters {unknown}")
        u = np.array(u, dtype=np.float64)
        if self.name in values:
            value = np.asarray(values[self.name], dtype=np.float64).ravel()
            if value.size != self._dimension:
                raise ModelSpecError(
                    f"Value for '{self.name}' must have {self._dimension} entries. Got {value.size}"
                )
            u[:] = value
        return u

    def __repr__(self) -> str:
        """String representation."""
        return f"FunctionLogDensity(dimension={self._dimension})"
