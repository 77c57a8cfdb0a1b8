"""Shared models and helpers for the test suite."""

import numpy as np
import pytest

from nutsengine.distributions import Distribution
from nutsengine.model import LinearPredictor, ModelBuilder, positive


def finite_difference(f, x: np.ndarray, eps: float = 1e-6) -> np.ndarray:
    """Central finite-difference gradient of a scalar function."""
    x = np.asarray(x, dtype=np.float64)
    grad = np.zeros_like(x)
    for i in range(x.size):
        step = np.zeros_like(x)
        step.flat[i] = eps
        grad.flat[i] = (f(x + step) - f(x - step)) / (2 * eps)
    return grad


def build_conjugate_normal(y: np.ndarray, prior_sd: float = 10.0, sigma: float = 1.0):
    """y_i ~ N(mu, sigma) with known sigma, mu ~ N(0, prior_sd)."""
    mb = ModelBuilder()
    mb.add_data("y", y, shape=("N",))
    mb.add_parameter("mu")
    mb.set_prior("mu", Distribution("normal", loc=0.0, scale=prior_sd))
    mb.set_likelihood("y", Distribution("normal", loc="mu", scale=sigma))
    return mb.build()


def build_regression(x: np.ndarray, y: np.ndarray):
    """y_i ~ N(alpha + beta * x_i, sigma) with weakly informative priors."""
    mb = ModelBuilder()
    mb.add_data("x", x, shape=("N",))
    mb.add_data("y", y, shape=("N",))
    mb.add_parameter("alpha")
    mb.add_parameter("beta")
    mb.add_parameter("sigma", constraint=positive())
    mb.set_prior("alpha", Distribution("normal", loc=0.0, scale=20.0))
    mb.set_prior("beta", Distribution("normal", loc=0.0, scale=20.0))
    mb.set_prior("sigma", Distribution("half_normal", scale=20.0))
    mb.set_likelihood(
        "y",
        Distribution(
            "normal",
            loc=LinearPredictor(intercept="alpha", coefficients={"beta": "x"}),
            scale="sigma",
        ),
    )
    return mb.build()


def build_hierarchical_bernoulli(counts, n_per_group: int = 30):
    """
    Group intercepts with partial pooling.

        a_j ~ N(mu, tau), mu ~ N(0, 2.5), tau ~ HalfNormal(1)
        y_i ~ BernoulliLogit(a[group_i])
    """
    y, group = [], []
    for j, k in enumerate(counts):
        y.extend([1] * k + [0] * (n_per_group - k))
        group.extend([j + 1] * n_per_group)

    mb = ModelBuilder()
    mb.add_data("y", np.array(y), shape=("N",), integer=True, lower=0, upper=1)
    mb.add_grouping("group", np.array(group), shape=("N",))
    mb.add_parameter("mu")
    mb.add_parameter("tau", constraint=positive())
    mb.add_parameter("a", shape=("group",))
    mb.set_prior("a", Distribution("normal", loc="mu", scale="tau"))
    mb.set_prior("mu", Distribution("normal", loc=0.0, scale=2.5))
    mb.set_prior("tau", Distribution("half_normal", scale=1.0))
    mb.set_likelihood(
        "y", Distribution("bernoulli_logit", logit=LinearPredictor(group_effects={"a": "group"}))
    )
    return mb.build()


@pytest.fixture
def normal_data() -> np.ndarray:
    rng = np.random.default_rng(0)
    return rng.normal(1.5, 1.0, size=50)


@pytest.fixture
def conjugate_model(normal_data):
    return build_conjugate_normal(normal_data)
