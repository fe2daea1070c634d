"""Fit-quality statistics shared by the main fit and every placebo fit."""

from typing import NamedTuple

import numpy as np
import pandas as pd


class FitMetrics(NamedTuple):
    """Pre/post divergence between actual and synthetic trajectories."""

    rmspe_pre: float
    rmspe_post: float
    mspe_ratio: float  # inf (or nan) when perfect_pre_fit
    perfect_pre_fit: bool


def compute_rmspe(
    Y0: np.ndarray,
    Y1: np.ndarray,
    W: np.ndarray,
) -> float:
    """
    Compute Root Mean Square Prediction Error.

    Args:
        Y0: Outcome matrix for control units (T x J)
        Y1: Outcome vector for treated unit (T x 1)
        W: Synthetic control weights (J x 1)

    Returns:
        RMSPE value
    """
    synthetic = Y0 @ W
    errors = Y1 - synthetic
    return np.sqrt(np.mean(errors**2))


def period_rmspe(gap: pd.Series) -> float:
    """RMSPE of a gap series, ignoring missing years (NaN if none observed)."""
    values = gap.dropna().to_numpy(dtype=float)
    if values.size == 0:
        return np.nan
    return float(np.sqrt(np.mean(values**2)))


def mspe_ratio(rmspe_pre: float, rmspe_post: float) -> tuple[float, bool]:
    """
    Squared post RMSPE over squared pre RMSPE.

    A perfect pre-period fit gives inf (nan when the post period is also
    perfect) together with a flag, so callers can still rank it.
    """
    if rmspe_pre == 0:
        return (np.inf if rmspe_post > 0 else np.nan), True
    return rmspe_post**2 / rmspe_pre**2, False


def compute_fit_metrics(
    actual: pd.Series,
    synthetic: pd.Series,
    treatment_year: int,
) -> FitMetrics:
    """
    Pre/post RMSPE and MSPE ratio for one fit.

    Args:
        actual: Observed outcome indexed by year
        synthetic: Synthetic outcome indexed by year
        treatment_year: First post-treatment year

    Returns:
        FitMetrics
    """
    gap = actual - synthetic
    pre = gap[gap.index < treatment_year]
    post = gap[gap.index >= treatment_year]

    rmspe_pre = period_rmspe(pre)
    rmspe_post = period_rmspe(post)
    ratio, perfect = mspe_ratio(rmspe_pre, rmspe_post)

    return FitMetrics(
        rmspe_pre=rmspe_pre,
        rmspe_post=rmspe_post,
        mspe_ratio=ratio,
        perfect_pre_fit=perfect,
    )
