"""
Distribution statements used as priors and likelihoods.

A ``Distribution`` pairs a catalog kind with named arguments. An argument is
either a literal (number or array), the name of a declared parameter or bound
data (resolved when the model is built), or a ``LinearPredictor``.

    Distribution("normal", loc="mu", scale="tau")      # hierarchical prior
    Distribution("half_cauchy", scale=5.0)              # fixed prior
    Distribution("bernoulli_logit", logit=LinearPredictor(...))
"""

from typing import Any, Dict
import numpy as np

from nutsengine.distributions.families import (
    Domain,
    DistributionKind,
    Family,
    FAMILIES,
    in_domain,
)
from nutsengine.exceptions import DomainError, ModelSpecError


class Distribution:
    """
    Immutable distribution statement.

    Attributes
    ----------
    kind : DistributionKind
        Family in the catalog.
    args : Dict[str, Any]
        Arguments keyed by catalog name, in catalog order.
    """

    def __init__(self, kind, **args: Any) -> None:
        """
        Initialize distribution statement.

        Parameters
        ----------
        kind : DistributionKind or str
            Catalog kind, e.g. ``"normal"`` or ``DistributionKind.NORMAL``.
        **args
            One keyword per catalog argument.

        Raises
        ------
        ModelSpecError
            If the kind is unknown or arguments are missing or unexpected.
        """
        try:
            kind = DistributionKind(kind)
        except ValueError:
            known = ", ".join(k.value for k in DistributionKind)
            raise ModelSpecError(f"Unknown distribution '{kind}'. Known: {known}") from None

        family = FAMILIES[kind]
        missing = [name for name in family.arg_names if name not in args]
        unexpected = sorted(set(args) - set(family.arg_names))
        if missing or unexpected:
            raise ModelSpecError(
                f"{kind.value} takes arguments {family.arg_names}. "
                f"Missing: {missing}, unexpected: {unexpected}"
            )

        self._kind = kind
        self._args = {name: args[name] for name in family.arg_names}

    @property
    def kind(self) -> DistributionKind:
        return self._kind

    @property
    def family(self) -> Family:
        return FAMILIES[self._kind]

    @property
    def args(self) -> Dict[str, Any]:
        return dict(self._args)

    def __repr__(self) -> str:
        """String representation."""
        inner = ", ".join(f"{name}={value!r}" for name, value in self._args.items())
        return f"Distribution({self._kind.value}, {inner})"


def validate_fixed_argument(kind, name: str, value) -> np.ndarray:
    """
    Check a literal (or data-bound) argument against its domain.

    Parameters
    ----------
    kind : DistributionKind or str
        Distribution the argument belongs to.
    name : str
        Argument name.
    value : array_like
        Fixed argument value.

    Returns
    -------
    np.ndarray
        The value as a float array.

    Raises
    ------
    DomainError
        If any element violates the argument's domain.
    """
    kind = DistributionKind(kind)
    family = FAMILIES[kind]
    domain = family.arg_domains[family.arg_names.index(name)]
    array = np.asarray(value, dtype=np.float64)
    if not np.all(in_domain(array, domain)):
        raise DomainError(
            f"{kind.value} argument '{name}' must be {domain.value}. Got {value!r}"
        )
    return array


def validate_fixed_variate(kind, value) -> np.ndarray:
    """
    Check observed values against the support of a distribution.

    Raises
    ------
    ModelSpecError
        If any observation lies outside the support.
    """
    kind = DistributionKind(kind)
    domain: Domain = FAMILIES[kind].support
    array = np.asarray(value, dtype=np.float64)
    ok = in_domain(array, domain)
    if not np.all(ok):
        bad = int(np.size(ok) - np.count_nonzero(ok))
        raise ModelSpecError(
            f"{bad} observed value(s) outside the support of {kind.value} "
            f"(must be {domain.value})"
        )
    return array
