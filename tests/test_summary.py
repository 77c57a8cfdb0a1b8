"""
Unit tests for posterior summaries.
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose
import arviz as az

from nutsengine.diagnostics import DiagnosticsComputer, PosteriorSummarizer


@pytest.fixture
def posterior():
    """Two chains of a scalar and a length-2 vector parameter."""
    rng = np.random.default_rng(11)
    return {
        "mu": rng.normal(1.0, 2.0, size=(2, 500)),
        "a": rng.gamma(2.0, 1.0, size=(2, 500, 2)),
    }


class TestIntervals:
    """Tests for quantiles and credible intervals."""

    def test_quantiles_pool_chains(self) -> None:
        """Test quantiles over all chains together."""
        draws = np.arange(100, dtype=float).reshape(2, 50)
        assert_allclose(PosteriorSummarizer.quantile(draws, [0.0, 0.5, 1.0]), [0.0, 49.5, 99.0])

    def test_equal_tailed(self) -> None:
        """Test the equal-tailed interval is the central quantile pair."""
        draws = np.random.default_rng(0).normal(size=4000)
        low, high = PosteriorSummarizer.credible_interval(draws, prob=0.9)
        assert_allclose([low, high], np.quantile(draws, [0.05, 0.95]))
        assert_allclose([low, high], [-1.645, 1.645], atol=0.1)

    def test_hdi_matches_arviz(self) -> None:
        """Test the HDI against arviz on a skewed sample."""
        draws = np.random.default_rng(1).exponential(size=3000)
        low, high = PosteriorSummarizer.credible_interval(draws, prob=0.8, method="hdi")
        assert_allclose([low, high], az.hdi(draws, hdi_prob=0.8))

    def test_hdi_pools_chains(self) -> None:
        """Test that (chain, draw) input gives the HDI of all draws together."""
        draws = np.random.default_rng(2).gamma(2.0, size=2000)
        low, high = PosteriorSummarizer.hdi(draws.reshape(4, 500), 0.9)
        assert_allclose([low, high], az.hdi(draws, hdi_prob=0.9))

    def test_hdi_narrower_than_equal_tailed(self) -> None:
        """Test that the HDI of a skewed sample is the narrower interval."""
        draws = np.random.default_rng(2).gamma(1.5, size=5000)
        et_low, et_high = PosteriorSummarizer.credible_interval(draws, 0.9)
        hdi_low, hdi_high = PosteriorSummarizer.credible_interval(draws, 0.9, method="hdi")
        assert hdi_high - hdi_low < et_high - et_low
        assert hdi_low < et_low

    def test_invalid_prob(self) -> None:
        """Test interval probability validation."""
        with pytest.raises(ValueError, match="prob"):
            PosteriorSummarizer.credible_interval(np.zeros(10), prob=1.0)

    def test_invalid_method(self) -> None:
        """Test interval method validation."""
        with pytest.raises(ValueError, match="method"):
            PosteriorSummarizer.credible_interval(np.zeros(10), method="central")

    def test_invalid_quantile(self) -> None:
        """Test quantile probability validation."""
        with pytest.raises(ValueError, match="Quantile"):
            PosteriorSummarizer.quantile(np.zeros(10), [0.5, 1.5])

    def test_empty_sample(self) -> None:
        """Test that an empty sample is rejected."""
        with pytest.raises(ValueError, match="empty"):
            PosteriorSummarizer.quantile(np.array([]), [0.5])

    def test_hdi_too_few_draws(self) -> None:
        """Test that the HDI needs enough draws to be defined."""
        with pytest.raises(ValueError, match="Too few draws"):
            PosteriorSummarizer.hdi(np.array([1.0]), 0.5)


class TestSummarize:
    """Tests for the per-element summary table."""

    def test_element_names(self, posterior) -> None:
        """Test vector parameters are summarised per element."""
        stats = PosteriorSummarizer.summarize(posterior)
        assert list(stats) == ["mu", "a[1]", "a[2]"]

    def test_columns(self, posterior) -> None:
        """Test the reported statistics."""
        row = PosteriorSummarizer.summarize(posterior, quantiles=[0.05, 0.5])["mu"]
        assert set(row) == {
            "mean", "sd", "median", "ci_low", "ci_high", "q5%", "q50%",
            "rhat", "ess_bulk", "ess_tail", "mcse_mean",
        }

    def test_values(self, posterior) -> None:
        """Test values against direct computation on the pooled draws."""
        row = PosteriorSummarizer.summarize(posterior, prob=0.5, quantiles=[0.5])["a[2]"]
        element = posterior["a"][:, :, 1]
        pooled = element.ravel()
        assert_allclose(row["mean"], pooled.mean())
        assert_allclose(row["sd"], pooled.std(ddof=1))
        assert_allclose(row["median"], row["q50%"])
        assert_allclose([row["ci_low"], row["ci_high"]], np.quantile(pooled, [0.25, 0.75]))
        assert row["rhat"] == DiagnosticsComputer.rhat(element)
        assert row["ess_bulk"] == DiagnosticsComputer.ess_bulk(element)
        assert row["mcse_mean"] == DiagnosticsComputer.mcse_mean(element)

    def test_recovers_moments(self, posterior) -> None:
        """Test the summary of independent normal draws."""
        row = PosteriorSummarizer.summarize(posterior)["mu"]
        assert_allclose(row["mean"], 1.0, atol=0.2)
        assert_allclose(row["sd"], 2.0, rtol=0.1)
        assert row["ci_low"] < row["median"] < row["ci_high"]

    def test_hdi_method(self, posterior) -> None:
        """Test the HDI columns are used when requested."""
        row = PosteriorSummarizer.summarize(posterior, prob=0.8, method="hdi")["a[1]"]
        expected = PosteriorSummarizer.hdi(posterior["a"][:, :, 0], 0.8)
        assert (row["ci_low"], row["ci_high"]) == expected
