"""
Unit tests for the model builder and compiled log density.

Tests cover:
- Log posterior against hand-computed values (priors + likelihood + Jacobian)
- Exact gradients against finite differences for several model shapes
- Pointwise log-likelihood
- Build-time validation (references, cycles, shapes, domains)
- Prior graph ordering
"""

import logging
import pytest
import numpy as np
from numpy.testing import assert_allclose
from scipy import stats

from conftest import (
    build_hierarchical_bernoulli,
    build_regression,
    finite_difference,
)
from nutsengine.distributions import Distribution
from nutsengine.exceptions import DomainError, ModelSpecError
from nutsengine.model import (
    FunctionLogDensity,
    LinearPredictor,
    ModelBuilder,
    interval,
    positive,
    simplex,
)


@pytest.fixture
def regression_data():
    rng = np.random.default_rng(3)
    x = rng.normal(0, 1, size=40)
    y = 1.0 + 3.0 * x + rng.normal(0, 2.0, size=40)
    return x, y


def build_normal_unknown_scale(y):
    mb = ModelBuilder()
    mb.add_data("y", y, shape=("N",))
    mb.add_parameter("mu")
    mb.add_parameter("sigma", constraint=positive())
    mb.set_prior("mu", Distribution("normal", loc=0.0, scale=10.0))
    mb.set_prior("sigma", Distribution("half_normal", scale=5.0))
    mb.set_likelihood("y", Distribution("normal", loc="mu", scale="sigma"))
    return mb.build()


def build_simplex_binomial():
    mb = ModelBuilder()
    mb.add_data("y", np.array([2, 5, 3]), shape=(3,), integer=True, lower=0)
    mb.add_parameter("theta", shape=(3,), constraint=simplex())
    mb.set_prior("theta", Distribution("dirichlet", concentration=np.array([2.0, 2.0, 2.0])))
    mb.set_likelihood("y", Distribution("binomial", trials=10, prob="theta"))
    return mb.build()


def build_student_t():
    mb = ModelBuilder()
    mb.add_data("y", np.array([-2.1, 0.3, 0.8, 4.5, -0.2]), shape=("N",))
    mb.add_parameter("nu", constraint=interval(1.0, 30.0))
    mb.add_parameter("mu")
    mb.set_prior("nu", Distribution("uniform", lower=1.0, upper=30.0))
    mb.set_prior("mu", Distribution("cauchy", loc=0.0, scale=2.5))
    mb.set_likelihood("y", Distribution("student_t", df="nu", loc="mu", scale=1.0))
    return mb.build()


def build_design_matrix(x, y):
    design = np.column_stack([x, x ** 2])
    mb = ModelBuilder()
    mb.add_data("X", design, shape=("N", "K"))
    mb.add_data("y", y, shape=("N",))
    mb.add_parameter("alpha")
    mb.add_parameter("beta", shape=("K",))
    mb.add_parameter("sigma", constraint=positive())
    mb.set_prior("alpha", Distribution("normal", loc=0.0, scale=5.0))
    mb.set_prior("beta", Distribution("normal", loc=0.0, scale=5.0))
    mb.set_prior("sigma", Distribution("exponential", rate=1.0))
    mb.set_likelihood(
        "y",
        Distribution(
            "normal",
            loc=LinearPredictor(intercept="alpha", coefficients={"beta": "X"}),
            scale="sigma",
        ),
    )
    return mb.build()


def assert_gradient_matches(model, u) -> None:
    lp, grad = model.log_density_gradient(u)
    assert np.isfinite(lp)
    assert_allclose(lp, model.log_density(u), rtol=1e-12)
    assert_allclose(grad, finite_difference(model.log_density, u), rtol=1e-5, atol=1e-6)


class TestLogPosterior:
    """Tests for the log posterior value."""

    def test_matches_manual_computation(self) -> None:
        """Test priors, likelihood and the log Jacobian of the positive transform."""
        y = np.array([0.5, 1.7, -0.3, 2.2])
        model = build_normal_unknown_scale(y)
        u = np.array([0.8, np.log(1.3)])
        mu, sigma = 0.8, 1.3

        expected = (
            stats.norm.logpdf(mu, 0, 10)
            + stats.halfnorm.logpdf(sigma, scale=5)
            + np.log(sigma)
            + np.sum(stats.norm.logpdf(y, mu, sigma))
        )
        assert_allclose(model.log_density(u), expected, rtol=1e-10)
        assert_allclose(model.log_density_gradient(u)[0], expected, rtol=1e-10)

    def test_hierarchical_matches_manual_computation(self) -> None:
        """Test a group-indexed likelihood with hyperpriors."""
        counts = [9, 12, 18, 21]
        model = build_hierarchical_bernoulli(counts)
        mu, tau = 0.2, 0.7
        a = np.array([-0.5, 0.0, 0.4, 1.1])
        u = model.unconstrain({"mu": mu, "tau": tau, "a": a})

        expected = (
            stats.norm.logpdf(mu, 0, 2.5)
            + stats.halfnorm.logpdf(tau, scale=1.0)
            + np.log(tau)
            + np.sum(stats.norm.logpdf(a, mu, tau))
        )
        for j, k in enumerate(counts):
            p = 1 / (1 + np.exp(-a[j]))
            expected += k * np.log(p) + (30 - k) * np.log1p(-p)
        assert_allclose(model.log_density(u), expected, rtol=1e-10)

    def test_zero_probability_point(self) -> None:
        """Test that an impossible point gives -inf and a zero gradient."""
        mb = ModelBuilder()
        mb.add_data("y", np.array([0.3, -0.1]))
        mb.add_parameter("s", constraint=positive())
        mb.set_prior("s", Distribution("uniform", lower=1.0, upper=2.0))
        mb.set_likelihood("y", Distribution("normal", loc=0.0, scale="s"))
        model = mb.build()

        lp, grad = model.log_density_gradient(np.array([np.log(3.0)]))
        assert lp == -np.inf
        assert_allclose(grad, [0.0])
        assert model.log_density(np.array([np.log(3.0)])) == -np.inf
        assert np.isfinite(model.log_density(np.array([np.log(1.5)])))

    def test_nan_from_function_is_negative_infinity(self) -> None:
        """Test that a NaN log density is treated as zero probability."""
        target = FunctionLogDensity(lambda u: (np.nan, np.zeros(1)), 1)
        assert target.log_density_gradient(np.zeros(1))[0] == -np.inf


class TestGradients:
    """Tests for the exact gradient of compiled models."""

    def test_regression(self, regression_data) -> None:
        """Test a linear predictor with intercept and slope."""
        model = build_regression(*regression_data)
        assert_gradient_matches(model, np.array([0.7, 2.5, np.log(1.8)]))

    def test_design_matrix(self, regression_data) -> None:
        """Test a vector coefficient multiplying an (N, K) design matrix."""
        model = build_design_matrix(*regression_data)
        assert model.dimension == 4
        assert_gradient_matches(model, np.array([0.3, 2.0, -0.4, 0.5]))

    def test_hierarchical(self) -> None:
        """Test hyperparameters shared by group effects."""
        model = build_hierarchical_bernoulli([9, 12, 18, 21])
        rng = np.random.default_rng(4)
        for _ in range(3):
            assert_gradient_matches(model, rng.normal(0, 1, size=model.dimension))

    def test_simplex(self) -> None:
        """Test a Dirichlet prior on a simplex parameter."""
        model = build_simplex_binomial()
        assert model.dimension == 2
        assert_gradient_matches(model, np.array([0.3, -0.6]))

    def test_interval_with_student_t(self) -> None:
        """Test a bounded degrees-of-freedom parameter."""
        model = build_student_t()
        assert_gradient_matches(model, np.array([0.4, -0.2]))


class TestPointwiseLogLikelihood:
    """Tests for per-observation log-likelihood."""

    def test_regression(self, regression_data) -> None:
        """Test against scipy at a fixed point."""
        x, y = regression_data
        model = build_regression(x, y)
        u = model.unconstrain({"alpha": 1.2, "beta": 2.9, "sigma": 2.1})
        ll = model.pointwise_log_likelihood(u)
        assert ll.shape == (40,)
        assert model.n_observations == 40
        assert_allclose(ll, stats.norm.logpdf(y, 1.2 + 2.9 * x, 2.1), rtol=1e-10)

    def test_observed_name(self, regression_data) -> None:
        """Test that the likelihood target names the observations."""
        assert build_regression(*regression_data).observed_name == "y"


class TestParameterBookkeeping:
    """Tests for constraining, unconstraining and naming."""

    def test_round_trip(self, regression_data) -> None:
        """Test unconstrain then constrain."""
        model = build_regression(*regression_data)
        values = {"alpha": -0.4, "beta": 3.3, "sigma": 0.25}
        back = model.constrain(model.unconstrain(values))
        for name, value in values.items():
            assert_allclose(back[name], value)

    def test_flat_names(self) -> None:
        """Test 1-based element names of vector parameters."""
        model = build_hierarchical_bernoulli([9, 12, 18, 21])
        assert model.flat_parameter_names == ["mu", "tau", "a[1]", "a[2]", "a[3]", "a[4]"]
        assert model.parameter_shapes["a"] == (4,)

    def test_initial_point_honours_init(self, regression_data) -> None:
        """Test that supplied initial values override the random draw."""
        model = build_regression(*regression_data)
        u = model.initial_point(np.random.default_rng(0), 2.0, init={"sigma": 4.0})
        assert_allclose(model.constrain(u)["sigma"], 4.0)
        assert np.all(np.abs(u[:2]) < 2.0)

    def test_unconstrain_missing_parameter(self, regression_data) -> None:
        """Test that a full unconstrain needs every parameter."""
        model = build_regression(*regression_data)
        with pytest.raises(ModelSpecError, match="Missing"):
            model.unconstrain({"alpha": 0.0})

    def test_init_wrong_shape(self) -> None:
        """Test that initial values must match the declared shape."""
        model = build_hierarchical_bernoulli([9, 12, 18, 21])
        with pytest.raises(ModelSpecError, match="shape"):
            model.unconstrain_partial({"a": np.zeros(3)}, np.zeros(model.dimension))

    def test_groupings_reported_one_based(self) -> None:
        """Test that the bound grouping keeps the user's 1-based ids."""
        model = build_hierarchical_bernoulli([9, 12, 18, 21])
        assert model.data["group"].min() == 1
        assert model.data["group"].max() == 4
        assert model.dims["group"] == 4

    def test_data_is_read_only(self, regression_data) -> None:
        """Test that bound data cannot be modified after binding."""
        model = build_regression(*regression_data)
        with pytest.raises(ValueError):
            model.data["y"][0] = 0.0


class TestPriorGraph:
    """Tests for prior ordering and acyclicity."""

    def test_hyperparameters_first(self) -> None:
        """Test that priors are evaluated after their hyperparameters."""
        model = build_hierarchical_bernoulli([9, 12, 18, 21])
        targets = [term.target for term in model.terms]
        assert targets[-1] == "y"
        assert targets.index("mu") < targets.index("a")
        assert targets.index("tau") < targets.index("a")

    def test_cycle_rejected(self) -> None:
        """Test that a cyclic prior graph names the cycle."""
        mb = ModelBuilder()
        mb.add_data("y", np.zeros(3))
        mb.add_parameter("a")
        mb.add_parameter("b", constraint=positive())
        mb.set_prior("a", Distribution("normal", loc=0.0, scale="b"))
        mb.set_prior("b", Distribution("lognormal", loc="a", scale=1.0))
        mb.set_likelihood("y", Distribution("normal", loc="a", scale=1.0))
        with pytest.raises(ModelSpecError, match="cyclic"):
            mb.build()

    def test_self_reference_rejected(self) -> None:
        """Test that a parameter cannot parameterise its own prior."""
        mb = ModelBuilder()
        mb.add_data("y", np.zeros(3))
        mb.add_parameter("a")
        mb.set_prior("a", Distribution("normal", loc="a", scale=1.0))
        mb.set_likelihood("y", Distribution("normal", loc="a", scale=1.0))
        with pytest.raises(ModelSpecError, match="a -> a"):
            mb.build()

    def test_missing_prior_warns(self, caplog) -> None:
        """Test that a parameter without a prior gets a flat one with a warning."""
        mb = ModelBuilder()
        mb.add_data("y", np.zeros(3))
        mb.add_parameter("mu")
        mb.set_likelihood("y", Distribution("normal", loc="mu", scale=1.0))
        with caplog.at_level(logging.WARNING, logger="nutsengine"):
            model = mb.build()
        assert "no prior" in caplog.text
        assert [term.target for term in model.terms] == ["y"]
        assert np.isfinite(model.log_density(np.array([100.0])))

    def test_unconstrained_positive_prior_warns(self, caplog) -> None:
        """Test the warning for a positive prior on an unconstrained parameter."""
        mb = ModelBuilder()
        mb.add_data("y", np.zeros(3))
        mb.add_parameter("sigma")
        mb.set_prior("sigma", Distribution("half_normal", scale=1.0))
        mb.set_likelihood("y", Distribution("normal", loc=0.0, scale="sigma"))
        with caplog.at_level(logging.WARNING, logger="nutsengine"):
            mb.build()
        assert "unconstrained" in caplog.text


class TestBuildValidation:
    """Tests for errors raised by ModelBuilder.build()."""

    def _builder(self):
        mb = ModelBuilder()
        mb.add_data("y", np.array([0.1, 0.4, -0.2]), shape=("N",))
        mb.add_parameter("mu")
        mb.set_prior("mu", Distribution("normal", loc=0.0, scale=1.0))
        return mb

    def test_no_likelihood(self) -> None:
        """Test that a model needs a likelihood."""
        with pytest.raises(ModelSpecError, match="exactly one likelihood"):
            self._builder().build()

    def test_two_likelihoods(self) -> None:
        """Test that a second likelihood is rejected."""
        mb = self._builder()
        mb.add_data("z", np.zeros(3))
        mb.set_likelihood("y", Distribution("normal", loc="mu", scale=1.0))
        mb.set_likelihood("z", Distribution("normal", loc="mu", scale=1.0))
        with pytest.raises(ModelSpecError, match="Got 2"):
            mb.build()

    def test_undeclared_reference(self) -> None:
        """Test that a prior argument must name something declared."""
        mb = self._builder()
        mb.add_parameter("b")
        mb.set_prior("b", Distribution("normal", loc="nowhere", scale=1.0))
        mb.set_likelihood("y", Distribution("normal", loc="mu", scale=1.0))
        with pytest.raises(ModelSpecError, match="undeclared name 'nowhere'"):
            mb.build()

    def test_prior_on_undeclared_parameter(self) -> None:
        """Test that priors must target declared parameters."""
        mb = self._builder()
        mb.set_prior("ghost", Distribution("normal", loc=0.0, scale=1.0))
        mb.set_likelihood("y", Distribution("normal", loc="mu", scale=1.0))
        with pytest.raises(ModelSpecError, match="ghost"):
            mb.build()

    def test_duplicate_name(self) -> None:
        """Test that names are unique across data and parameters."""
        mb = self._builder()
        with pytest.raises(ModelSpecError, match="already declared"):
            mb.add_parameter("y")

    def test_duplicate_prior(self) -> None:
        """Test that a parameter has at most one prior."""
        mb = self._builder()
        with pytest.raises(ModelSpecError, match="already has a prior"):
            mb.set_prior("mu", Distribution("normal", loc=1.0, scale=1.0))

    def test_data_shape_mismatch(self) -> None:
        """Test that data must match its declared shape."""
        mb = ModelBuilder()
        mb.add_data("x", np.zeros(5), shape=("N",))
        with pytest.raises(ModelSpecError, match="'N' = 5"):
            mb.add_data("y", np.zeros(6), shape=("N",))
        with pytest.raises(ModelSpecError, match="declared with shape"):
            mb.add_data("z", np.zeros(4), shape=(5,))

    def test_broadcast_mismatch(self) -> None:
        """Test that prior arguments must broadcast to the parameter shape."""
        mb = self._builder()
        mb.add_parameter("v", shape=(3,))
        mb.set_prior("v", Distribution("normal", loc=np.zeros(4), scale=1.0))
        mb.set_likelihood("y", Distribution("normal", loc="mu", scale=1.0))
        with pytest.raises(ModelSpecError, match="broadcast"):
            mb.build()

    def test_grouping_must_be_one_based(self) -> None:
        """Test that 0-based ids are rejected."""
        with pytest.raises(ModelSpecError, match="1..J"):
            ModelBuilder().add_grouping("g", np.array([0, 1, 1, 2]))

    def test_grouping_must_be_contiguous(self) -> None:
        """Test that skipped ids are rejected."""
        with pytest.raises(ModelSpecError, match="1..J"):
            ModelBuilder().add_grouping("g", np.array([1, 3, 3, 1]))

    def test_group_effect_length(self) -> None:
        """Test that a group effect has one entry per group."""
        mb = ModelBuilder()
        mb.add_data("y", np.zeros(4), shape=("N",))
        mb.add_grouping("g", np.array([1, 2, 2, 1]), shape=("N",))
        mb.add_parameter("a", shape=(3,))
        mb.set_prior("a", Distribution("normal", loc=0.0, scale=1.0))
        mb.set_likelihood(
            "y", Distribution("normal", loc=LinearPredictor(group_effects={"a": "g"}), scale=1.0)
        )
        with pytest.raises(ModelSpecError, match="group effect"):
            mb.build()

    def test_discrete_argument_cannot_be_parameter(self) -> None:
        """Test that binomial trials cannot depend on a parameter."""
        mb = ModelBuilder()
        mb.add_data("y", np.array([3, 4]), integer=True)
        mb.add_parameter("n", constraint=positive())
        mb.set_prior("n", Distribution("exponential", rate=0.1))
        mb.set_likelihood("y", Distribution("binomial", trials="n", prob=0.5))
        with pytest.raises(ModelSpecError, match="cannot reference parameter"):
            mb.build()

    def test_discrete_prior_rejected(self) -> None:
        """Test that a parameter cannot have a discrete prior."""
        mb = self._builder()
        mb.add_parameter("k", constraint=positive())
        mb.set_prior("k", Distribution("poisson", rate=3.0))
        mb.set_likelihood("y", Distribution("normal", loc="mu", scale=1.0))
        with pytest.raises(ModelSpecError, match="discrete"):
            mb.build()

    def test_negative_literal_scale(self) -> None:
        """Test that a literal scale must be positive."""
        mb = self._builder()
        mb.set_likelihood("y", Distribution("normal", loc="mu", scale=-1.0))
        with pytest.raises(DomainError, match="scale"):
            mb.build()

    def test_observation_outside_support(self) -> None:
        """Test that Bernoulli data must be 0 or 1."""
        mb = ModelBuilder()
        mb.add_data("y", np.array([0, 1, 2]))
        mb.add_parameter("p", constraint=interval(0.0, 1.0))
        mb.set_prior("p", Distribution("beta", alpha=1.0, beta=1.0))
        mb.set_likelihood("y", Distribution("bernoulli", prob="p"))
        with pytest.raises(ModelSpecError, match="outside the support"):
            mb.build()

    def test_likelihood_on_parameter(self) -> None:
        """Test that the likelihood must be placed on data."""
        mb = self._builder()
        mb.set_likelihood("mu", Distribution("normal", loc=0.0, scale=1.0))
        with pytest.raises(ModelSpecError, match="placed on data"):
            mb.build()

    def test_data_domain(self) -> None:
        """Test declared integer and bound checks on data."""
        with pytest.raises(ModelSpecError, match="integer"):
            ModelBuilder().add_data("y", np.array([0.5, 1.0]), integer=True)
        with pytest.raises(ModelSpecError, match=">= 0"):
            ModelBuilder().add_data("y", np.array([-1.0, 1.0]), lower=0)
        with pytest.raises(ModelSpecError, match="non-finite"):
            ModelBuilder().add_data("y", np.array([np.nan, 1.0]))

    def test_get_model_before_build(self) -> None:
        """Test that get_model requires build()."""
        with pytest.raises(RuntimeError, match="not been built"):
            ModelBuilder().get_model()

    def test_empty_linear_predictor(self) -> None:
        """Test that a linear predictor needs at least one term."""
        with pytest.raises(ModelSpecError):
            LinearPredictor()


class TestFunctionLogDensity:
    """Tests for wrapped differentiable functions."""

    def test_wraps_callable(self) -> None:
        """Test evaluation and naming of a wrapped function."""
        target = FunctionLogDensity(lambda u: (-0.5 * u @ u, -u), 3, name="z")
        lp, grad = target.log_density_gradient(np.array([1.0, 2.0, 0.0]))
        assert lp == -2.5
        assert_allclose(grad, [-1.0, -2.0, 0.0])
        assert target.flat_parameter_names == ["z[1]", "z[2]", "z[3]"]
        assert target.n_observations == 0

    def test_invalid_dimension(self) -> None:
        """Test that the dimension must be positive."""
        with pytest.raises(ValueError, match="dimension"):
            FunctionLogDensity(lambda u: (0.0, u), 0)

    def test_init_size(self) -> None:
        """Test that an initial vector must have the right length."""
        target = FunctionLogDensity(lambda u: (0.0, u), 2)
        with pytest.raises(ModelSpecError, match="2 entries"):
            target.unconstrain({"x": [1.0, 2.0, 3.0]})
