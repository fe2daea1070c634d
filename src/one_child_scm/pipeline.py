"""
End-to-end analysis: raw panel to weights, fit metrics and placebo p-value.

raw panel -> gap interpolation -> donor pool -> predictor spec
-> main fit -> placebo fits -> permutation p-value -> robustness checks
"""

from typing import NamedTuple

import pandas as pd

from .config import AnalysisConfig
from .donor_pool import DonorPoolResult, build_donor_pool, check_treated_coverage
from .inference import InferenceResult, compute_yearly_p_values, in_time_placebo, run_placebo_inference
from .interpolation import interpolate_panel
from .logger import logger
from .predictors import PredictorSpec, build_predictor_spec
from .robustness import detect_donor_shocks, sensitivity_analysis
from .synthetic_control import SCMResult, fit_with_config, jackknife_test


class AnalysisResult(NamedTuple):
    """Everything a reporting step needs from one run."""

    config: AnalysisConfig
    donor_pool: DonorPoolResult
    spec: list[PredictorSpec]
    main: SCMResult
    inference: InferenceResult | None
    yearly_p_values: pd.Series | None
    in_time: SCMResult | None
    leave_one_out: dict[str, SCMResult] | None
    sensitivity: pd.DataFrame | None
    donor_shocks: pd.DataFrame | None


def prepare_panel(df: pd.DataFrame, config: AnalysisConfig) -> pd.DataFrame:
    """Interpolate short gaps in the outcome and every predictor."""
    if not config.interpolate_small_gaps:
        return df.copy()
    logger.info(f"Interpolating gaps up to {config.max_gap_to_interpolate} years...")
    columns = [config.outcome_var] + list(config.predictor_vars)
    return interpolate_panel(df, columns, config.max_gap_to_interpolate)


def run_analysis(
    df: pd.DataFrame,
    config: AnalysisConfig,
    run_placebos: bool = True,
    show_progress: bool = True,
) -> AnalysisResult:
    """
    Run the full synthetic control analysis.

    Args:
        df: Raw long panel (country, year, outcome, predictors, tags)
        config: Validated analysis configuration
        run_placebos: Run placebo-in-space inference
        show_progress: Display progress bars for batch fits

    Returns:
        AnalysisResult

    Raises:
        ConfigurationError: invalid predictor specification
        InsufficientDataError: treated unit or donor pool fails coverage
        FitFailure: the main fit fails
    """
    # Validate the predictor specification before touching data
    spec = build_predictor_spec(
        config.pre_period,
        list(config.predictor_vars),
        list(config.special_predictor_anchor_years),
        outcome_var=config.outcome_var,
    )

    panel = prepare_panel(df, config)
    check_treated_coverage(panel, config)
    pool = build_donor_pool(panel, config)

    logger.info("Fitting main SCM model...")
    main = fit_with_config(panel, spec, pool.donors, config)
    logger.info(f"  Donors used: {len(main.donors_used)} of {len(main.donors_requested)}")
    logger.info(f"  Pre-treatment RMSPE:  {main.rmspe_pre:.4f}")
    logger.info(f"  Post-treatment RMSPE: {main.rmspe_post:.4f}")
    logger.info(f"  MSPE Ratio:           {main.mspe_ratio:.4f}")
    for country, weight in main.top_weights().items():
        logger.info(f"  {country}: {weight:.3f}")

    inference = None
    yearly = None
    if run_placebos:
        inference = run_placebo_inference(
            panel, spec, main, pool.donors, config, show_progress=show_progress
        )
        yearly = compute_yearly_p_values(main, inference.distribution.results)

    in_time = in_time_placebo(panel, pool.donors, config)

    leave_one_out = None
    if config.run_leave_one_out:
        logger.info("Jackknife (leave-one-out) tests...")
        leave_one_out = jackknife_test(panel, spec, main, config)

    sensitivity = None
    if config.run_sensitivity_analysis:
        logger.info("Coverage sensitivity analysis...")
        sensitivity = sensitivity_analysis(panel, spec, config)

    shocks = None
    if config.check_donor_shocks:
        shocks = detect_donor_shocks(
            panel, main, config.outcome_var, threshold_sd=config.donor_shock_threshold
        )

    return AnalysisResult(
        config=config,
        donor_pool=pool,
        spec=spec,
        main=main,
        inference=inference,
        yearly_p_values=yearly,
        in_time=in_time,
        leave_one_out=leave_one_out,
        sensitivity=sensitivity,
        donor_shocks=shocks,
    )
