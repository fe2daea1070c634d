"""Tests for robustness diagnostics."""

import numpy as np
import pandas as pd

from one_child_scm.predictors import build_predictor_spec
from one_child_scm.robustness import detect_donor_shocks, sensitivity_analysis
from one_child_scm.synthetic_control import SCMResult


def _weighted_result(weights):
    """SCMResult carrying only what shock detection reads."""
    empty = pd.Series(dtype=float)
    return SCMResult(
        treated_unit="CHN",
        treatment_year=1980,
        donors_requested=list(weights),
        donors_used=list(weights),
        excluded_donors={},
        weights=pd.Series(weights, dtype=float),
        v_weights=empty,
        synthetic=empty,
        actual=empty,
        gap=empty,
        rmspe_pre=0.1,
        rmspe_post=0.1,
        mspe_ratio=1.0,
        perfect_pre_fit=False,
        predictor_balance=pd.DataFrame(),
    )


class TestSensitivityAnalysis:
    """Tests for the coverage sensitivity sweep."""

    def test_one_row_per_threshold(self, interpolated_panel, test_config):
        config = test_config.with_overrides(min_donor_pool_size=14, v_max_iter=10)
        spec = build_predictor_spec(
            config.pre_period,
            list(config.predictor_vars),
            list(config.special_predictor_anchor_years),
        )

        table = sensitivity_analysis(interpolated_panel, spec, config, thresholds=[0.5, 0.8])

        assert table["threshold"].tolist() == [0.5, 0.8]
        ok, failed = table.iloc[0], table.iloc[1]
        # PAK (50% outcome coverage) only survives the lenient threshold
        assert ok["status"] == "ok"
        assert ok["n_donors"] == 14
        assert ok["rmspe_pre"] >= 0
        assert failed["status"].startswith("insufficient data")
        assert np.isnan(failed["rmspe_pre"])


class TestDetectDonorShocks:
    """Tests for the donor shock check."""

    def test_flags_post_treatment_jump(self, sample_panel_data):
        df = sample_panel_data.copy()
        mask = (df["country"] == "IND") & (df["year"] >= 1983)
        df.loc[mask, "fertility_rate"] -= 2.0

        shocks = detect_donor_shocks(
            df, _weighted_result({"IND": 0.6, "BRA": 0.4}), "fertility_rate"
        )

        assert list(shocks.columns) == ["donor", "year", "weight", "change", "z_score"]
        assert ((shocks["donor"] == "IND") & (shocks["year"] == 1983)).any()
        flagged = shocks[(shocks["donor"] == "IND") & (shocks["year"] == 1983)].iloc[0]
        assert flagged["weight"] == 0.6
        assert flagged["z_score"] < -2

    def test_zero_weight_donors_ignored(self, sample_panel_data):
        df = sample_panel_data.copy()
        df.loc[(df["country"] == "IND") & (df["year"] >= 1983), "fertility_rate"] -= 2.0

        shocks = detect_donor_shocks(
            df, _weighted_result({"IND": 0.0, "BRA": 1.0}), "fertility_rate"
        )
        assert "IND" not in shocks["donor"].tolist()

    def test_no_weighted_donors(self, sample_panel_data):
        shocks = detect_donor_shocks(sample_panel_data, _weighted_result({}), "fertility_rate")
        assert shocks.empty
