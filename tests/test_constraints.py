"""
Unit tests for support constraints and unconstraining transforms.
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose

from conftest import finite_difference
from nutsengine.exceptions import DomainError, ModelSpecError
from nutsengine.model import constraints
from nutsengine.model.constraints import Constraint, ConstraintKind


def numeric_log_det(constraint: Constraint, u: np.ndarray, shape) -> float:
    """log |det J| from a finite-difference Jacobian."""
    k = u.size
    jac = np.zeros((k, k))
    for j in range(k):
        def f(v, j=j):
            w = u.copy()
            w[j] = v[0]
            return constraint.constrain(w, shape)[0].ravel()[:k]

        eps = 1e-6
        jac[:, j] = (f([u[j] + eps]) - f([u[j] - eps])) / (2 * eps)
    return float(np.linalg.slogdet(jac)[1])


CASES = [
    (constraints.real(), (3,), np.array([-1.0, 0.2, 3.0])),
    (constraints.positive(), (3,), np.array([0.1, 2.0, 7.5])),
    (constraints.lower_bounded(-2.0), (2,), np.array([-1.5, 4.0])),
    (constraints.upper_bounded(1.0), (2,), np.array([0.5, -3.0])),
    (constraints.interval(-1.0, 3.0), (2,), np.array([-0.5, 2.9])),
    (constraints.unit_interval(), (), np.array(0.3)),
    (constraints.simplex(), (4,), np.array([0.1, 0.2, 0.3, 0.4])),
]


class TestTransforms:
    """Tests for constrain / unconstrain."""

    @pytest.mark.parametrize("constraint, shape, x", CASES, ids=[repr(c[0]) for c in CASES])
    def test_round_trip(self, constraint, shape, x) -> None:
        """Test unconstrain followed by constrain recovers the value."""
        u = constraint.unconstrain(x)
        assert u.size == constraint.unconstrained_size(shape)
        x_back, _ = constraint.constrain(u, shape)
        assert x_back.shape == shape
        assert_allclose(x_back, x, rtol=1e-10)

    @pytest.mark.parametrize("constraint, shape, x", CASES, ids=[repr(c[0]) for c in CASES])
    def test_inverse_round_trip(self, constraint, shape, x) -> None:
        """Test constrain followed by unconstrain recovers the unconstrained point."""
        rng = np.random.default_rng(3)
        for _ in range(5):
            u = rng.normal(0, 2, size=constraint.unconstrained_size(shape))
            value, _ = constraint.constrain(u, shape)
            u_back = constraint.unconstrain(value)
            assert u_back.shape == u.shape
            assert_allclose(u_back, u, atol=1e-8)

    @pytest.mark.parametrize("constraint, shape, x", CASES, ids=[repr(c[0]) for c in CASES])
    def test_constrained_value_in_support(self, constraint, shape, x) -> None:
        """Test that arbitrary unconstrained points land inside the support."""
        rng = np.random.default_rng(1)
        for _ in range(5):
            u = rng.normal(0, 3, size=constraint.unconstrained_size(shape))
            value, _ = constraint.constrain(u, shape)
            assert constraint.contains(value)

    @pytest.mark.parametrize(
        "constraint, shape",
        [
            (constraints.positive(), (3,)),
            (constraints.upper_bounded(2.0), (2,)),
            (constraints.interval(-1.0, 3.0), (3,)),
            (constraints.simplex(), (3,)),
            (constraints.simplex(), (5,)),
        ],
    )
    def test_log_det_matches_numeric_jacobian(self, constraint, shape) -> None:
        """Test the analytic log Jacobian determinant."""
        rng = np.random.default_rng(2)
        u = rng.normal(0, 1, size=constraint.unconstrained_size(shape))
        _, log_det = constraint.constrain(u, shape)
        assert_allclose(log_det, numeric_log_det(constraint, u, shape), atol=1e-6)

    def test_real_has_zero_log_det(self) -> None:
        """Test the identity transform."""
        _, log_det = constraints.real().constrain(np.array([1.0, 2.0]), (2,))
        assert log_det == 0.0

    def test_simplex_sums_to_one(self) -> None:
        """Test extreme unconstrained values still give a valid simplex."""
        x, _ = constraints.simplex().constrain(np.array([50.0, -50.0]), (3,))
        assert_allclose(np.sum(x), 1.0)
        assert np.all(x >= 0)


class TestBackpropagate:
    """Tests for gradients through the transforms."""

    @pytest.mark.parametrize("constraint, shape, x", CASES, ids=[repr(c[0]) for c in CASES])
    def test_finite_difference(self, constraint, shape, x) -> None:
        """Test d/du of f(c(u)) + log|J(u)| for a smooth f."""
        weights = np.linspace(0.5, 1.5, int(np.prod(shape, dtype=int))).reshape(shape)

        def f_x(value):
            return float(np.sum(weights * value) - 0.5 * np.sum(value ** 2))

        def target(u):
            value, log_det = constraint.constrain(u, shape)
            return f_x(value) + log_det

        u = constraint.unconstrain(x)
        value, _ = constraint.constrain(u, shape)
        grad = constraint.backpropagate(u, value, weights - value)
        assert_allclose(grad, finite_difference(target, u), rtol=1e-5, atol=1e-7)


class TestValidation:
    """Tests for constraint validation."""

    def test_interval_bounds_ordered(self) -> None:
        """Test that lower >= upper is rejected."""
        with pytest.raises(ModelSpecError, match="lower < upper"):
            constraints.interval(2.0, 1.0)

    def test_infinite_bound(self) -> None:
        """Test that bounds must be finite."""
        with pytest.raises(ModelSpecError, match="finite"):
            constraints.lower_bounded(-np.inf)

    def test_unused_bound(self) -> None:
        """Test that a real constraint takes no bounds."""
        with pytest.raises(ModelSpecError, match="takes no"):
            Constraint(ConstraintKind.REAL, lower=0.0)

    def test_simplex_shape(self) -> None:
        """Test that a simplex must be a vector of length >= 2."""
        with pytest.raises(ModelSpecError, match="simplex"):
            constraints.simplex().unconstrained_size((1,))
        with pytest.raises(ModelSpecError):
            constraints.simplex().unconstrained_size((2, 2))

    def test_unconstrain_outside_support(self) -> None:
        """Test that unconstraining an invalid value raises."""
        with pytest.raises(DomainError):
            constraints.positive().unconstrain(np.array([1.0, -1.0]))
        with pytest.raises(DomainError):
            constraints.simplex().unconstrain(np.array([0.5, 0.6]))

    def test_contains_rejects_nan(self) -> None:
        """Test that NaN is outside every support."""
        assert not constraints.real().contains(np.array([np.nan]))

    def test_equality(self) -> None:
        """Test value equality and hashing."""
        assert constraints.positive() == constraints.lower_bounded(0.0)
        assert constraints.unit_interval() == constraints.interval(0.0, 1.0)
        assert len({constraints.positive(), constraints.lower_bounded(0.0)}) == 1
        assert constraints.positive() != constraints.real()
