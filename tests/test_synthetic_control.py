"""Tests for synthetic control method implementation."""

import numpy as np
import pandas as pd
import pytest

from one_child_scm.exceptions import FitFailure, SilentExclusionWarning
from one_child_scm.metrics import compute_rmspe
from one_child_scm.predictors import PredictorSpec, build_predictor_spec
from one_child_scm.synthetic_control import (
    SCMResult,
    fit_synthetic_control,
    fit_with_config,
    jackknife_test,
    optimize_v_weights,
    solve_weights,
)

DONORS = ["IND", "BGD", "IDN", "KOR", "THA", "PHL", "BRA", "MEX", "COL", "EGY", "IRN", "MAR", "TUR"]


def _spec(config):
    return build_predictor_spec(
        config.pre_period,
        list(config.predictor_vars),
        list(config.special_predictor_anchor_years),
        outcome_var=config.outcome_var,
    )


def _two_donor_fit(panel, **kwargs):
    spec = [PredictorSpec("x", "x", (1976, 1977, 1978, 1979))]
    return fit_synthetic_control(
        df=panel,
        spec=spec,
        treated_unit="TRT",
        donor_pool=["A", "B"],
        treatment_year=1980,
        pre_period=(1976, 1979),
        post_period_end=1981,
        **kwargs,
    )


class TestSolveWeights:
    """Tests for the solve_weights function."""

    def test_weights_sum_to_one(self, simple_matrices):
        """Weights should sum to 1."""
        X0, X1, V = simple_matrices
        W = solve_weights(X0, X1, V)
        assert np.isclose(np.sum(W), 1.0, atol=1e-6)

    def test_weights_non_negative(self, simple_matrices):
        """All weights should be non-negative."""
        X0, X1, V = simple_matrices
        W = solve_weights(X0, X1, V)
        assert np.all(W >= 0)

    def test_weights_shape(self, simple_matrices):
        """Weights should have correct shape."""
        X0, X1, V = simple_matrices
        W = solve_weights(X0, X1, V)
        assert W.shape == (X0.shape[1],)

    def test_accepts_diagonal_vector(self, simple_matrices):
        """V may be passed as its diagonal."""
        X0, X1, V = simple_matrices
        W_matrix = solve_weights(X0, X1, V)
        W_vector = solve_weights(X0, X1, np.diag(V))
        np.testing.assert_allclose(W_matrix, W_vector, atol=1e-5)

    def test_exact_convex_combination(self):
        """A treated vector inside the donor hull is reproduced exactly."""
        X0 = np.array([[0.0, 2.0], [0.0, 2.0]])
        X1 = np.array([1.0, 1.0])
        W = solve_weights(X0, X1, np.ones(2))
        np.testing.assert_allclose(W, [0.5, 0.5], atol=1e-4)

    def test_single_donor(self):
        """One donor always gets all the weight."""
        W = solve_weights(np.array([[3.0], [1.0]]), np.array([1.0, 2.0]), np.ones(2))
        np.testing.assert_array_equal(W, [1.0])

    def test_no_donors_raises(self):
        with pytest.raises(FitFailure):
            solve_weights(np.empty((2, 0)), np.array([1.0, 2.0]), np.ones(2))


class TestComputeRMSPE:
    """Tests for the compute_rmspe function."""

    def test_rmspe_positive(self, outcome_matrices):
        """RMSPE should be positive."""
        Y0, Y1, W = outcome_matrices
        rmspe = compute_rmspe(Y0, Y1, W)
        assert rmspe >= 0

    def test_rmspe_zero_perfect_fit(self):
        """RMSPE should be zero for perfect fit."""
        Y0 = np.array([[1, 2], [3, 4], [5, 6]])
        Y1 = np.array([1.5, 3.5, 5.5])
        W = np.array([0.5, 0.5])
        rmspe = compute_rmspe(Y0, Y1, W)
        assert np.isclose(rmspe, 0.0, atol=1e-10)

    def test_rmspe_known_value(self):
        """RMSPE should match known value."""
        Y0 = np.array([[1], [2], [3]])
        Y1 = np.array([2, 3, 4])
        W = np.array([1.0])
        rmspe = compute_rmspe(Y0, Y1, W)
        # Errors are [1, 1, 1], RMSPE = sqrt(mean([1, 1, 1])) = 1
        assert np.isclose(rmspe, 1.0, atol=1e-10)


class TestOptimizeVWeights:
    """Tests for the outer predictor-weight search."""

    def test_v_on_simplex(self, simple_matrices, outcome_matrices):
        X0, X1, _ = simple_matrices
        Y0, Y1, _ = outcome_matrices
        v = optimize_v_weights(X0, X1, Y0, Y1, max_iter=20)
        assert v.shape == (X0.shape[0],)
        assert np.all(v >= 0)
        assert np.isclose(v.sum(), 1.0)

    def test_never_worse_than_equal_weights(self, simple_matrices, outcome_matrices):
        """The search result is at least as good as its equal-weight start."""
        X0, X1, _ = simple_matrices
        Y0, Y1, _ = outcome_matrices
        K = X0.shape[0]

        v = optimize_v_weights(X0, X1, Y0, Y1, max_iter=20)

        start = compute_rmspe(Y0, Y1, solve_weights(X0, X1, np.ones(K) / K))
        found = compute_rmspe(Y0, Y1, solve_weights(X0, X1, v))
        assert found <= start + 1e-6

    def test_expired_deadline_raises(self, simple_matrices, outcome_matrices):
        X0, X1, _ = simple_matrices
        Y0, Y1, _ = outcome_matrices
        with pytest.raises(FitFailure, match="time limit"):
            optimize_v_weights(X0, X1, Y0, Y1, deadline=0.0)


class TestTwoDonorScenario:
    """Treated trajectory that neither donor spans alone."""

    def test_weights_on_both_donors(self, two_donor_panel):
        """Both donors receive non-trivial weight."""
        result = _two_donor_fit(two_donor_panel)
        assert result.weights["A"] > 0.1
        assert result.weights["B"] > 0.1
        assert np.isclose(result.weights.sum(), 1.0, atol=1e-6)

    def test_beats_either_donor_alone(self, two_donor_panel):
        """Pre-RMSPE is strictly below either single-donor synthetic."""
        result = _two_donor_fit(two_donor_panel)

        pre = two_donor_panel[two_donor_panel["year"] < 1980].pivot(
            index="year", columns="country", values="fertility_rate"
        )
        Y0 = pre[["A", "B"]].to_numpy()
        Y1 = pre["TRT"].to_numpy()

        assert result.rmspe_pre < compute_rmspe(Y0, Y1, np.array([1.0, 0.0]))
        assert result.rmspe_pre < compute_rmspe(Y0, Y1, np.array([0.0, 1.0]))

    def test_fixed_v_weights(self, two_donor_panel):
        """Supplied predictor weights skip the outer search."""
        result = _two_donor_fit(two_donor_panel, v_weights=np.array([3.0]))
        assert result.v_weights.tolist() == [1.0]

    def test_fixed_v_weights_respect_timeout(self, two_donor_panel):
        """The time limit applies even when the outer search is skipped."""
        with pytest.raises(FitFailure, match="time limit"):
            _two_donor_fit(two_donor_panel, v_weights=np.array([1.0]), timeout=1e-9)

    def test_invalid_v_weights(self, two_donor_panel):
        with pytest.raises(FitFailure):
            _two_donor_fit(two_donor_panel, v_weights=np.array([1.0, 1.0]))


class TestFitSyntheticControl:
    """Tests for the fit_synthetic_control function."""

    @pytest.fixture
    def result(self, interpolated_panel, test_config):
        return fit_with_config(interpolated_panel, _spec(test_config), DONORS, test_config)

    def test_returns_scm_result(self, result):
        """Should return SCMResult namedtuple."""
        assert isinstance(result, SCMResult)

    def test_weights_on_simplex(self, result):
        """Weights are non-negative and sum to one."""
        assert (result.weights >= -1e-8).all()
        assert np.isclose(result.weights.sum(), 1.0, atol=1e-6)

    def test_weights_keyed_by_donors_used(self, result):
        assert result.weights.index.tolist() == result.donors_used
        assert result.donors_used == DONORS
        assert result.excluded_donors == {}

    def test_series_lengths(self, result, test_config):
        """Actual and synthetic series should cover the analysis window."""
        assert len(result.actual) == len(result.synthetic) == len(result.gap)
        assert result.actual.index.tolist() == test_config.analysis_years

    def test_gap_calculation(self, result):
        """Gap should equal actual minus synthetic."""
        pd.testing.assert_series_equal(
            result.gap,
            result.actual - result.synthetic,
            check_names=False,
        )

    def test_rmspe_positive_values(self, result):
        """RMSPE values should be positive."""
        assert result.rmspe_pre >= 0
        assert result.rmspe_post >= 0
        assert result.mspe_ratio >= 0

    def test_predictor_balance_shape(self, result, test_config):
        """Predictor balance table should have correct columns."""
        assert list(result.predictor_balance.columns) == ["Actual", "Synthetic", "Sample Mean"]
        assert list(result.predictor_balance.index) == [p.name for p in _spec(test_config)]

    def test_treatment_effect_direction(self, result):
        """China should show negative gap after 1980 due to simulated policy."""
        post_gap = result.gap[result.gap.index >= 1980]
        assert post_gap.mean() < 0


class TestDonorAlignment:
    """Requested versus used donors."""

    def test_all_nan_predictor_donor_excluded(self, interpolated_panel, test_config):
        """A donor with an all-NaN predictor is absent from donors and weights."""
        df = interpolated_panel.copy()
        df.loc[df["country"] == "BRA", "life_expectancy"] = np.nan

        with pytest.warns(SilentExclusionWarning, match="BRA"):
            result = fit_with_config(df, _spec(test_config), DONORS, test_config)

        assert "BRA" not in result.donors_used
        assert "BRA" not in result.weights.index
        assert "BRA" in result.excluded_donors
        assert len(result.donors_used) == len(result.weights)
        assert result.weights.index.tolist() == result.donors_used
        assert result.donors_requested == DONORS

    def test_missing_outcome_donor_excluded(self, interpolated_panel, test_config):
        """A donor with complete predictors but a post-period outcome gap is dropped."""
        df = interpolated_panel.copy()
        df.loc[(df["country"] == "KOR") & (df["year"] == 1985), "fertility_rate"] = np.nan

        with pytest.warns(SilentExclusionWarning, match="KOR"):
            result = fit_with_config(df, _spec(test_config), DONORS, test_config)

        assert "KOR" not in result.weights.index
        assert result.excluded_donors == {"KOR": "missing outcome in 1985"}
        assert result.synthetic.notna().all()

    def test_missing_predictor_reported_first(self, interpolated_panel, test_config):
        """PAK lacks its 1960s outcome, so its 1965 window predictor is reported."""
        with pytest.warns(SilentExclusionWarning):
            result = fit_with_config(
                interpolated_panel, _spec(test_config), DONORS + ["PAK"], test_config
            )
        assert "PAK" not in result.weights.index
        assert "fertility_rate_1965" in result.excluded_donors["PAK"]

    def test_treated_unit_never_a_donor(self, interpolated_panel, test_config):
        result = fit_with_config(
            interpolated_panel, _spec(test_config), ["CHN"] + DONORS, test_config
        )
        assert "CHN" not in result.donors_requested
        assert "CHN" not in result.weights.index

    def test_zero_usable_donors(self, interpolated_panel, test_config):
        """FitFailure when every requested donor is excluded."""
        df = interpolated_panel.copy()
        df.loc[df["country"].isin(["IND", "BGD"]), "gdp_per_capita"] = np.nan

        with pytest.warns(SilentExclusionWarning):
            with pytest.raises(FitFailure, match="no donors remain"):
                fit_with_config(df, _spec(test_config), ["IND", "BGD"], test_config)


class TestEdgeCases:
    """Tests for edge cases and error handling."""

    def test_single_donor(self, interpolated_panel, test_config):
        """Should work with a single donor."""
        result = fit_with_config(interpolated_panel, _spec(test_config), ["IND"], test_config)
        assert np.isclose(result.weights.sum(), 1.0)

    def test_timeout_raises(self, interpolated_panel, test_config):
        """An exhausted time budget abandons the fit."""
        config = test_config.with_overrides(fit_timeout=1e-9)
        with pytest.raises(FitFailure, match="time limit"):
            fit_with_config(interpolated_panel, _spec(config), DONORS, config)


class TestJackknife:
    """Tests for leave-one-out refits."""

    def test_drops_top_donors(self, interpolated_panel, test_config):
        spec = _spec(test_config)
        full = fit_with_config(interpolated_panel, spec, DONORS, test_config)

        results = jackknife_test(interpolated_panel, spec, full, test_config, top_n=2)

        assert results["full"] is full
        dropped = full.top_weights().index[:2]
        for donor in dropped:
            assert donor not in results[f"w/o_{donor}"].weights.index
