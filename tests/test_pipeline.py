"""End-to-end tests for the analysis pipeline and its reporting."""

import dataclasses

import numpy as np
import pandas as pd
import pytest

from one_child_scm.data_loader import load_or_fetch_data
from one_child_scm.exceptions import ConfigurationError, InsufficientDataError
from one_child_scm.pipeline import AnalysisResult, prepare_panel, run_analysis
from one_child_scm.reporting import generate_figures, save_results, summary_table


@pytest.fixture
def analysis(sample_panel_data, test_config, tmp_path):
    config = test_config.with_overrides(output_dir=str(tmp_path / "results"))
    return run_analysis(sample_panel_data, config, show_progress=False)


class TestPreparePanel:
    """Tests for the interpolation step."""

    def test_interpolation_enabled(self, sample_panel_data, test_config):
        panel = prepare_panel(sample_panel_data, test_config)
        assert panel["gdp_per_capita"].notna().all()

    def test_interpolation_disabled(self, sample_panel_data, test_config):
        config = test_config.with_overrides(interpolate_small_gaps=False)
        panel = prepare_panel(sample_panel_data, config)
        assert panel["gdp_per_capita"].isna().sum() == 2


class TestRunAnalysis:
    """Tests for the run_analysis function."""

    def test_full_run(self, analysis):
        assert isinstance(analysis, AnalysisResult)

        main = analysis.main
        assert main.treated_unit == "CHN"
        assert main.weights.index.tolist() == main.donors_used
        assert np.isclose(main.weights.sum(), 1.0, atol=1e-6)
        assert set(main.donors_used) <= set(analysis.donor_pool.donors)

        test = analysis.inference.test
        assert test.p_value is None or 0.0 <= test.p_value <= 1.0
        assert len(analysis.inference.distribution.attempted) == 4

        assert analysis.yearly_p_values.index.min() == 1980
        assert analysis.in_time.treatment_year == 1970
        assert "full" in analysis.leave_one_out
        assert analysis.sensitivity is None
        assert list(analysis.donor_shocks.columns) == [
            "donor", "year", "weight", "change", "z_score",
        ]

    def test_without_placebos(self, sample_panel_data, test_config):
        config = test_config.with_overrides(
            run_leave_one_out=False, in_time_placebo_year=None, check_donor_shocks=False
        )
        result = run_analysis(sample_panel_data, config, run_placebos=False, show_progress=False)

        assert result.inference is None
        assert result.yearly_p_values is None
        assert result.in_time is None
        assert result.leave_one_out is None
        assert result.donor_shocks is None

    def test_invalid_spec_before_data(self, sample_panel_data, test_config):
        """Anchors outside the pre-period fail before any filtering."""
        with pytest.raises(ConfigurationError, match="special_predictor_anchor_years"):
            test_config.with_overrides(special_predictor_anchor_years=[1990])

        # An unvalidated config is still rejected by the pipeline
        config = dataclasses.replace(test_config, special_predictor_anchor_years=(1990,))
        with pytest.raises(ConfigurationError):
            run_analysis(sample_panel_data, config, show_progress=False)

    def test_small_pool_stops(self, sample_panel_data, test_config):
        config = test_config.with_overrides(min_donor_pool_size=30)
        with pytest.raises(InsufficientDataError) as exc_info:
            run_analysis(sample_panel_data, config, show_progress=False)
        assert exc_info.value.current == 13


class TestReporting:
    """Tests for result export."""

    def test_save_results(self, analysis, sample_panel_data, tmp_path):
        save_results(analysis, panel=sample_panel_data)
        output_dir = tmp_path / "results"

        for name in [
            "scm_series.csv",
            "donor_weights.csv",
            "predictor_balance.csv",
            "summary_stats.csv",
            "donor_filter_log.txt",
            "placebo_results.csv",
            "yearly_p_values.csv",
            "donor_shocks.csv",
        ]:
            assert (output_dir / name).exists(), name

        weights = pd.read_csv(output_dir / "donor_weights.csv", index_col=0)
        assert set(weights.index) == set(analysis.main.donors_used)
        assert weights.index[0] == analysis.main.weights.idxmax()
        assert "country_name" in weights.columns

        log = (output_dir / "donor_filter_log.txt").read_text()
        assert "PAK" in log
        assert "FINAL DONOR POOL: 13 units" in log

    def test_summary_table(self, analysis):
        table = summary_table(analysis).set_index("Metric")["Value"]
        assert table["Treatment Country"] == "CHN"
        assert table["N Donors (pool)"] == "13"

    def test_generate_figures(self, analysis, tmp_path):
        generate_figures(analysis)
        output_dir = tmp_path / "results"
        assert (output_dir / "tfr_path.png").exists()
        assert (output_dir / "tfr_gap.png").exists()
        assert (output_dir / "tfr_gap_in_time_placebo.png").exists()


def test_load_cached_data(sample_panel_data, tmp_path):
    """A cached panel is read without contacting the World Bank API."""
    path = tmp_path / "panel_data.csv"
    sample_panel_data.to_csv(path, index=False)

    df = load_or_fetch_data(path)

    assert len(df) == len(sample_panel_data)
    assert set(df["country"]) == set(sample_panel_data["country"])
