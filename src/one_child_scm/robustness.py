"""
Robustness diagnostics around the main synthetic control fit.

- Coverage sensitivity: how the pool and the fit move with the completeness
  threshold.
- Donor shocks: positively weighted donors whose own outcome jumps after
  treatment, which would contaminate the counterfactual.
"""

import numpy as np
import pandas as pd

from .config import TIME_COL, UNIT_COL, AnalysisConfig
from .donor_pool import build_donor_pool
from .exceptions import FitFailure, InsufficientDataError
from .logger import logger
from .predictors import PredictorSpec
from .synthetic_control import SCMResult, fit_with_config


def sensitivity_analysis(
    df: pd.DataFrame,
    spec: list[PredictorSpec],
    config: AnalysisConfig,
    thresholds: list[float] | None = None,
) -> pd.DataFrame:
    """
    Rebuild the donor pool and refit for several coverage thresholds.

    The threshold is applied to both the outcome and the predictors. A
    threshold whose pool is too small, or whose fit fails, is reported as a
    row with its status rather than stopping the sweep.

    Args:
        df: Interpolated panel
        spec: Predictor specification
        config: Base configuration
        thresholds: Thresholds to try (config.sensitivity_coverage_thresholds)

    Returns:
        DataFrame with one row per threshold
    """
    if thresholds is None:
        thresholds = list(config.sensitivity_coverage_thresholds)

    rows = []
    for threshold in thresholds:
        variant = config.with_overrides(
            outcome_completeness_threshold=threshold,
            predictor_completeness_threshold=threshold,
        )
        row = {
            "threshold": threshold,
            "n_donors": np.nan,
            "n_donors_used": np.nan,
            "rmspe_pre": np.nan,
            "rmspe_post": np.nan,
            "mspe_ratio": np.nan,
            "avg_post_gap": np.nan,
            "status": "ok",
        }
        try:
            pool = build_donor_pool(df, variant)
            row["n_donors"] = len(pool.donors)
            result = fit_with_config(df, spec, pool.donors, variant)
        except InsufficientDataError as e:
            row["status"] = f"insufficient data: {e.stage} ({e.current} < {e.required})"
            logger.warning(f"Sensitivity {threshold:.2f}: {row['status']}")
        except FitFailure as e:
            row["status"] = f"fit failed: {e}"
            logger.warning(f"Sensitivity {threshold:.2f}: {row['status']}")
        else:
            post_gap = result.gap[result.gap.index >= result.treatment_year]
            row.update(
                n_donors_used=len(result.donors_used),
                rmspe_pre=result.rmspe_pre,
                rmspe_post=result.rmspe_post,
                mspe_ratio=result.mspe_ratio,
                avg_post_gap=post_gap.mean(),
            )
            logger.info(
                f"Sensitivity {threshold:.2f}: {row['n_donors']} donors, "
                f"pre-RMSPE {result.rmspe_pre:.4f}, MSPE ratio {result.mspe_ratio:.2f}"
            )
        rows.append(row)

    return pd.DataFrame(rows)


def detect_donor_shocks(
    df: pd.DataFrame,
    result: SCMResult,
    outcome_var: str,
    threshold_sd: float = 2.0,
    min_weight: float = 0.001,
) -> pd.DataFrame:
    """
    Flag weighted donors with unusually large post-treatment outcome changes.

    A year is flagged when the donor's year-on-year change exceeds
    `threshold_sd` standard deviations of its pre-treatment changes.

    Args:
        df: Panel data
        result: Main SCMResult
        outcome_var: Outcome column
        threshold_sd: Shock size in pre-period standard deviations
        min_weight: Only donors above this weight are checked

    Returns:
        DataFrame of flagged (donor, year) pairs with weight and z-score
    """
    columns = ["donor", "year", "weight", "change", "z_score"]
    donors = result.top_weights(min_weight)
    if donors.empty:
        return pd.DataFrame(columns=columns)

    series = (
        df[df[UNIT_COL].isin(donors.index)]
        .pivot_table(index=TIME_COL, columns=UNIT_COL, values=outcome_var, aggfunc="first")
        .sort_index()
    )
    changes = series.diff()

    flagged = []
    for donor, weight in donors.items():
        if donor not in changes.columns:
            continue
        pre = changes.loc[changes.index < result.treatment_year, donor].dropna()
        post = changes.loc[changes.index >= result.treatment_year, donor].dropna()
        sd = pre.std()
        if len(pre) < 2 or not np.isfinite(sd) or sd == 0:
            continue
        z = (post - pre.mean()) / sd
        for year, score in z[z.abs() > threshold_sd].items():
            flagged.append(
                {
                    "donor": donor,
                    "year": int(year),
                    "weight": float(weight),
                    "change": float(post.loc[year]),
                    "z_score": float(score),
                }
            )

    shocks = pd.DataFrame(flagged, columns=columns)
    if not shocks.empty:
        logger.warning(
            f"Post-treatment shocks (> {threshold_sd} SD) in weighted donors: "
            f"{', '.join(sorted(shocks['donor'].unique()))}"
        )
    return shocks
