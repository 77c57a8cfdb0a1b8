"""
Bayesian model builder: structured model specification to compiled model.

A model is declared piece by piece and compiled once:
- Data bindings with declared shapes and domains
- Grouping indices for hierarchical terms (1-based, contiguous)
- Parameter declarations (name, shape, support constraint)
- One prior per parameter, whose arguments may reference other parameters
- Exactly one likelihood over a data binding

Example (hierarchical logistic regression):
    a_j ~ Normal(mu, tau)                       # group intercepts
    mu  ~ Normal(0, 2.5)                        # hyperparameters
    tau ~ HalfNormal(1)
    y_i ~ BernoulliLogit(a[group_i])            # likelihood

    mb = ModelBuilder()
    mb.add_data("y", y, shape=("N",), integer=True)
    mb.add_grouping("group", group, shape=("N",))
    mb.add_parameter("mu")
    mb.add_parameter("tau", constraint=positive())
    mb.add_parameter("a", shape=("group",))
    mb.set_prior("mu", Distribution("normal", loc=0.0, scale=2.5))
    mb.set_prior("tau", Distribution("half_normal", scale=1.0))
    mb.set_prior("a", Distribution("normal", loc="mu", scale="tau"))
    mb.set_likelihood("y", Distribution(
        "bernoulli_logit", logit=LinearPredictor(group_effects={"a": "group"})))
    model = mb.build()

``build()`` resolves every reference, checks shapes, validates fixed
arguments and orders the prior graph topologically. The graph looks
recursive (priors of priors) but must be acyclic.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple, Union
import numpy as np
from numpy.typing import NDArray

from nutsengine.distributions.distribution import (
    Distribution,
    validate_fixed_argument,
    validate_fixed_variate,
)
from nutsengine.distributions.families import Domain
from nutsengine.exceptions import ModelSpecError
from nutsengine.model.constraints import Constraint, ConstraintKind, real
from nutsengine.model.log_density import (
    ConstantArgument,
    LinearArgument,
    Model,
    ParameterArgument,
    ParameterBlock,
    Term,
)

logger = logging.getLogger(__name__)

ShapeSpec = Sequence[Union[int, str]]


class LinearPredictor:
    """
    Linear predictor used as a distribution argument.

        eta_i = offset_i + intercept + sum_k coef_k * X_k[i] + sum_g effect_g[group_g[i]]

    Parameters
    ----------
    intercept : str, optional
        Scalar parameter added to every observation.
    coefficients : Dict[str, str], optional
        ``{parameter: data}``. A scalar coefficient multiplies a data vector
        of length N; a vector coefficient of length K multiplies an (N, K)
        design matrix.
    group_effects : Dict[str, str], optional
        ``{parameter: grouping}``. The parameter has one entry per group and
        is indexed by the grouping vector.
    offset : str or array_like, optional
        Fixed offset (data name or literal vector).
    """

    def __init__(
        self,
        intercept: Optional[str] = None,
        coefficients: Optional[Dict[str, str]] = None,
        group_effects: Optional[Dict[str, str]] = None,
        offset: Optional[Union[str, NDArray[np.float64]]] = None,
    ) -> None:
        self.intercept = intercept
        self.coefficients = dict(coefficients or {})
        self.group_effects = dict(group_effects or {})
        self.offset = offset

        if intercept is None and not self.coefficients and not self.group_effects and offset is None:
            raise ModelSpecError("LinearPredictor needs at least one term")

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"LinearPredictor(intercept={self.intercept}, coefficients={self.coefficients}, "
            f"group_effects={self.group_effects}, offset={'yes' if self.offset is not None else None})"
        )


class ModelBuilder:
    """
    Bayesian model builder.

    Collects data, groupings, parameters, priors and the likelihood, then
    compiles them into an immutable ``Model``.

    Attributes
    ----------
    dims : Dict[str, int]
        Named dimensions resolved so far.
    model : Model or None
        Compiled model (None until built)
    """

    def __init__(self, dims: Optional[Dict[str, int]] = None) -> None:
        """
        Initialize model builder.

        Parameters
        ----------
        dims : Dict[str, int], optional
            Named dimensions known up front, e.g. ``{"K": 3}``. Others are
            inferred from data and groupings.
        """
        self.dims: Dict[str, int] = {}
        for name, size in (dims or {}).items():
            if int(size) <= 0:
                raise ModelSpecError(f"Dimension '{name}' must be positive. Got {size}")
            self.dims[name] = int(size)

        self._data: Dict[str, NDArray[np.float64]] = {}
        self._groupings: Dict[str, NDArray[np.int64]] = {}
        self._parameters: Dict[str, Tuple[Tuple[Union[int, str], ...], Constraint]] = {}
        self._priors: Dict[str, Distribution] = {}
        self._likelihoods: List[Tuple[str, Distribution]] = []
        self.model: Optional[Model] = None

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def _check_new_name(self, name: str) -> None:
        if not isinstance(name, str) or not name:
            raise ModelSpecError(f"Names must be non-empty strings. Got {name!r}")
        if name in self._data or name in self._groupings or name in self._parameters:
            raise ModelSpecError(f"'{name}' is already declared")

    def _bind_shape(self, name: str, declared: ShapeSpec, actual: Tuple[int, ...]) -> None:
        """Match a declared shape (ints or dimension names) against supplied data."""
        declared = tuple(declared)
        if len(declared) != len(actual):
            raise ModelSpecError(
                f"'{name}' declared with shape {declared} but supplied with shape {actual}"
            )
        for dim, size in zip(declared, actual):
            if isinstance(dim, str):
                known = self.dims.setdefault(dim, size)
                if known != size:
                    raise ModelSpecError(
                        f"'{name}' has {size} entries along '{dim}', but '{dim}' = {known}"
                    )
            elif int(dim) != size:
                raise ModelSpecError(
                    f"'{name}' declared with shape {declared} but supplied with shape {actual}"
                )

    def add_data(
        self,
        name: str,
        values,
        shape: Optional[ShapeSpec] = None,
        integer: bool = False,
        lower: Optional[float] = None,
        upper: Optional[float] = None,
    ) -> "ModelBuilder":
        """
        Bind observed or fixed data.

        Parameters
        ----------
        name : str
            Data name.
        values : array_like
            Values.
        shape : sequence of int or str, optional
            Declared shape; strings are named dimensions.
        integer : bool
            Require integer values. Default False.
        lower, upper : float, optional
            Inclusive bounds on the values.

        Raises
        ------
        ModelSpecError
            If the name is taken, the shape disagrees with the declaration,
            or values violate the declared domain.
        """
        self._check_new_name(name)
        array = np.asarray(values, dtype=np.float64)
        if not np.all(np.isfinite(array)):
            raise ModelSpecError(f"Data '{name}' contains non-finite values")
        if shape is not None:
            self._bind_shape(name, shape, array.shape)
        if integer and not np.all(np.floor(array) == array):
            raise ModelSpecError(f"Data '{name}' must be integer valued")
        if lower is not None and np.any(array < lower):
            raise ModelSpecError(f"Data '{name}' must be >= {lower}")
        if upper is not None and np.any(array > upper):
            raise ModelSpecError(f"Data '{name}' must be <= {upper}")

        array.flags.writeable = False
        self._data[name] = array
        return self

    def add_grouping(
        self,
        name: str,
        index,
        shape: Optional[ShapeSpec] = None,
    ) -> "ModelBuilder":
        """
        Bind a grouping index mapping observations to clusters 1..J.

        The grouping name doubles as the dimension holding the number of
        groups, so group-level parameters can be declared with
        ``shape=(name,)``.

        Raises
        ------
        ModelSpecError
            If the index is not a 1-D integer vector whose values form the
            contiguous range 1..J.
        """
        self._check_new_name(name)
        array = np.asarray(index)
        if array.ndim != 1 or array.size == 0:
            raise ModelSpecError(f"Grouping '{name}' must be a non-empty vector. Got shape {array.shape}")
        if not np.all(np.floor(array) == array):
            raise ModelSpecError(f"Grouping '{name}' must be integer valued")
        array = array.astype(np.int64)
        n_groups = int(array.max())
        if array.min() != 1 or np.unique(array).size != n_groups:
            raise ModelSpecError(
                f"Grouping '{name}' must use every id in the contiguous range 1..J. "
                f"Got ids {np.unique(array).tolist()}"
            )
        if shape is not None:
            self._bind_shape(name, shape, array.shape)
        self._bind_shape(name, (name,), (n_groups,))

        zero_based = array - 1
        zero_based.flags.writeable = False
        self._groupings[name] = zero_based
        return self

    def add_parameter(
        self,
        name: str,
        shape: ShapeSpec = (),
        constraint: Optional[Constraint] = None,
    ) -> "ModelBuilder":
        """
        Declare a parameter.

        Parameters
        ----------
        name : str
            Parameter name.
        shape : sequence of int or str
            Shape; strings are named dimensions. Default scalar.
        constraint : Constraint, optional
            Support. Default unconstrained real.
        """
        self._check_new_name(name)
        self._parameters[name] = (tuple(shape), constraint or real())
        return self

    def set_prior(self, name: str, distribution: Distribution) -> "ModelBuilder":
        """Assign the prior of a parameter (references are resolved at build)."""
        if not isinstance(distribution, Distribution):
            raise ModelSpecError(f"Prior for '{name}' must be a Distribution. Got {distribution!r}")
        if name in self._priors:
            raise ModelSpecError(f"Parameter '{name}' already has a prior")
        self._priors[name] = distribution
        return self

    def set_likelihood(self, observed: str, distribution: Distribution) -> "ModelBuilder":
        """Assign the likelihood of a data binding."""
        if not isinstance(distribution, Distribution):
            raise ModelSpecError(f"Likelihood must be a Distribution. Got {distribution!r}")
        self._likelihoods.append((observed, distribution))
        return self

    # ------------------------------------------------------------------
    # Compilation
    # ------------------------------------------------------------------

    def _resolve_parameter_shape(self, name: str, shape: Tuple[Union[int, str], ...]) -> Tuple[int, ...]:
        resolved = []
        for dim in shape:
            if isinstance(dim, str):
                if dim not in self.dims:
                    raise ModelSpecError(f"Parameter '{name}' uses unknown dimension '{dim}'")
                resolved.append(self.dims[dim])
            else:
                if int(dim) <= 0:
                    raise ModelSpecError(f"Parameter '{name}' has non-positive dimension {dim}")
                resolved.append(int(dim))
        return tuple(resolved)

    def _build_blocks(self) -> List[ParameterBlock]:
        blocks = []
        start = 0
        for name, (shape, constraint) in self._parameters.items():
            resolved = self._resolve_parameter_shape(name, shape)
            size = constraint.unconstrained_size(resolved)
            blocks.append(ParameterBlock(name, resolved, constraint, start, start + size))
            start += size
        return blocks

    def _lookup_data(self, name: str, context: str) -> NDArray[np.float64]:
        if name in self._data:
            return self._data[name]
        raise ModelSpecError(f"{context} references undeclared data '{name}'")

    def _resolve_linear(
        self,
        predictor: LinearPredictor,
        shapes: Dict[str, Tuple[int, ...]],
        context: str,
    ):
        def parameter_shape(name: str) -> Tuple[int, ...]:
            if name not in shapes:
                raise ModelSpecError(f"{context} references undeclared parameter '{name}'")
            return shapes[name]

        lengths: Dict[str, int] = {}
        coefficients = []
        for coef, covariate_name in predictor.coefficients.items():
            covariate = self._lookup_data(covariate_name, context)
            coef_shape = parameter_shape(coef)
            if coef_shape == () and covariate.ndim == 1:
                pass
            elif len(coef_shape) == 1 and covariate.ndim == 2 and covariate.shape[1] == coef_shape[0]:
                pass
            else:
                raise ModelSpecError(
                    f"{context}: coefficient '{coef}' with shape {coef_shape} does not match "
                    f"covariate '{covariate_name}' with shape {covariate.shape}"
                )
            lengths[covariate_name] = covariate.shape[0]
            coefficients.append((coef, covariate))

        group_effects = []
        for effect, grouping_name in predictor.group_effects.items():
            if grouping_name not in self._groupings:
                raise ModelSpecError(f"{context} references undeclared grouping '{grouping_name}'")
            index = self._groupings[grouping_name]
            n_groups = self.dims[grouping_name]
            if parameter_shape(effect) != (n_groups,):
                raise ModelSpecError(
                    f"{context}: group effect '{effect}' must have shape ({n_groups},) to match "
                    f"grouping '{grouping_name}'. Got {shapes[effect]}"
                )
            lengths[grouping_name] = index.size
            group_effects.append((effect, index, n_groups))

        if predictor.intercept is not None and parameter_shape(predictor.intercept) != ():
            raise ModelSpecError(f"{context}: intercept '{predictor.intercept}' must be scalar")

        offset = None
        if predictor.offset is not None:
            if isinstance(predictor.offset, str):
                offset = self._lookup_data(predictor.offset, context)
            else:
                offset = np.asarray(predictor.offset, dtype=np.float64)
            if offset.ndim != 1:
                raise ModelSpecError(f"{context}: offset must be a vector. Got shape {offset.shape}")
            lengths["offset"] = offset.size

        if len(set(lengths.values())) > 1:
            raise ModelSpecError(f"{context}: linear predictor terms disagree on length: {lengths}")
        if not lengths:
            raise ModelSpecError(f"{context}: linear predictor needs a covariate, grouping or offset")
        size = next(iter(lengths.values()))
        return LinearArgument(
            size,
            predictor.intercept,
            coefficients,
            group_effects,
            None if offset is None else np.array(offset, dtype=np.float64),
        )

    def _resolve_arguments(
        self,
        distribution: Distribution,
        shapes: Dict[str, Tuple[int, ...]],
        context: str,
    ) -> List:
        family = distribution.family
        arguments = []
        for (arg_name, value), domain in zip(distribution.args.items(), family.arg_domains):
            label = f"{context}, argument '{arg_name}'"
            if isinstance(value, LinearPredictor):
                if domain.discrete:
                    raise ModelSpecError(f"{label} is discrete and cannot be a linear predictor")
                arguments.append(self._resolve_linear(value, shapes, label))
            elif isinstance(value, str):
                if value in shapes:
                    if domain.discrete:
                        raise ModelSpecError(
                            f"{label} must be {domain.value} and cannot reference parameter '{value}'"
                        )
                    arguments.append(ParameterArgument(value, shapes[value]))
                elif value in self._data:
                    validate_fixed_argument(distribution.kind, arg_name, self._data[value])
                    arguments.append(ConstantArgument(self._data[value]))
                elif value in self._groupings:
                    raise ModelSpecError(f"{label}: grouping '{value}' can only be used in a LinearPredictor")
                else:
                    raise ModelSpecError(f"{label} references undeclared name '{value}'")
            else:
                arguments.append(
                    ConstantArgument(validate_fixed_argument(distribution.kind, arg_name, value))
                )
        return arguments

    @staticmethod
    def _check_broadcast(target_shape: Tuple[int, ...], arguments: Sequence, context: str) -> None:
        try:
            shape = np.broadcast_shapes(target_shape, *(argument.shape for argument in arguments))
        except ValueError:
            shape = None
        if shape != tuple(target_shape):
            raise ModelSpecError(
                f"{context}: argument shapes {[a.shape for a in arguments]} do not broadcast "
                f"to the target shape {tuple(target_shape)}"
            )

    @staticmethod
    def _topological_order(dependencies: Dict[str, Tuple[str, ...]]) -> List[str]:
        """Order parameters so hyperparameters precede dependants; reject cycles."""
        order: List[str] = []
        state: Dict[str, int] = {}  # 1 = visiting, 2 = done

        def visit(name: str, path: List[str]) -> None:
            if state.get(name) == 2:
                return
            if state.get(name) == 1:
                cycle = path[path.index(name):] + [name]
                raise ModelSpecError(f"Prior graph is cyclic: {' -> '.join(cycle)}")
            state[name] = 1
            for parent in dependencies.get(name, ()):
                visit(parent, path + [name])
            state[name] = 2
            order.append(name)

        for name in dependencies:
            visit(name, [])
        return order

    def build(self) -> Model:
        """
        Compile the declarations into a ``Model``.

        Returns
        -------
        model : Model
            Compiled, immutable model.

        Raises
        ------
        ModelSpecError
            Undeclared references, cyclic priors, shape mismatches, or not
            exactly one likelihood.
        DomainError
            A fixed argument or observation violates its domain.
        """
        if len(self._likelihoods) != 1:
            raise ModelSpecError(
                f"A model needs exactly one likelihood. Got {len(self._likelihoods)}"
            )

        undeclared = sorted(set(self._priors) - set(self._parameters))
        if undeclared:
            raise ModelSpecError(f"Priors assigned to undeclared parameters {undeclared}")

        blocks = self._build_blocks()
        shapes = {block.name: block.shape for block in blocks}

        prior_terms: Dict[str, Term] = {}
        for name, distribution in self._priors.items():
            context = f"Prior of '{name}'"
            if distribution.family.discrete:
                raise ModelSpecError(f"{context}: parameters are continuous, {distribution.kind.value} is discrete")
            if distribution.family.support is Domain.SIMPLEX and len(shapes[name]) != 1:
                raise ModelSpecError(f"{context}: {distribution.kind.value} needs a vector parameter")
            arguments = self._resolve_arguments(distribution, shapes, context)
            self._check_broadcast(shapes[name], arguments, context)
            prior_terms[name] = Term(distribution.kind, name, arguments, target_shape=shapes[name])

            constraint = self._parameters[name][1]
            if distribution.family.support is not Domain.REAL and constraint.kind is ConstraintKind.REAL:
                logger.warning(
                    "Parameter '%s' is unconstrained but its %s prior has %s support",
                    name, distribution.kind.value, distribution.family.support.value,
                )

        for name in self._parameters:
            if name not in prior_terms:
                logger.warning("Parameter '%s' has no prior; using a flat prior on its support", name)

        order = self._topological_order({name: term.dependencies for name, term in prior_terms.items()})
        terms = [prior_terms[name] for name in order if name in prior_terms]

        observed_name, distribution = self._likelihoods[0]
        context = f"Likelihood of '{observed_name}'"
        if observed_name in self._parameters or observed_name in self._groupings:
            raise ModelSpecError(f"{context}: the likelihood must be placed on data")
        observed = self._lookup_data(observed_name, context)
        validate_fixed_variate(distribution.kind, observed)
        arguments = self._resolve_arguments(distribution, shapes, context)
        self._check_broadcast(observed.shape, arguments, context)
        terms.append(
            Term(distribution.kind, observed_name, arguments, observed=observed, target_shape=observed.shape)
        )

        data = dict(self._data)
        data.update({name: index + 1 for name, index in self._groupings.items()})
        self.model = Model(blocks, terms, data, self.dims)
        logger.debug("Built %r with term order %s", self.model, [term.target for term in terms])
        return self.model

    def get_model(self) -> Model:
        """
        Get the built model.

        Raises
        ------
        RuntimeError
            If model has not been built yet.
        """
        if self.model is None:
            raise RuntimeError("Model has not been built. Call .build() first.")
        return self.model

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"ModelBuilder(parameters={list(self._parameters)}, data={list(self._data)}, "
            f"groupings={list(self._groupings)}, priors={len(self._priors)}, "
            f"likelihoods={len(self._likelihoods)})"
        )
