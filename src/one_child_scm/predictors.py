"""
Matching predictors for the synthetic control fit.

Two kinds of predictor are supported: covariates averaged over the whole
pre-treatment period, and "special" predictors that average the outcome
over a three-year window centred on an anchor year.
"""

from typing import NamedTuple

import numpy as np
import pandas as pd

from .config import OUTCOME_VAR, TIME_COL, UNIT_COL
from .exceptions import ConfigurationError
from .logger import logger


class PredictorSpec(NamedTuple):
    """One row of the predictor matrix."""

    name: str
    variable: str
    years: tuple[int, ...]
    special: bool = False
    anchor: int | None = None


def special_predictor_window(anchor: int, pre_period: tuple[int, int]) -> tuple[int, ...]:
    """Intersect {anchor-1, anchor, anchor+1} with the pre-period."""
    start, end = pre_period
    return tuple(y for y in (anchor - 1, anchor, anchor + 1) if start <= y <= end)


def build_predictor_spec(
    pre_period: tuple[int, int],
    covariates: list[str],
    anchor_years: list[int],
    outcome_var: str = OUTCOME_VAR,
) -> list[PredictorSpec]:
    """
    Build the ordered predictor list: averaged covariates, then windows.

    Args:
        pre_period: (start, end) of the pre-treatment period, inclusive
        covariates: Variables averaged over the full pre-period
        anchor_years: Centre years of the outcome windows
        outcome_var: Outcome variable used by special predictors

    Returns:
        List of PredictorSpec

    Raises:
        ConfigurationError: if every anchor window is empty or the
            resulting list is empty
    """
    start, end = pre_period
    if start > end:
        raise ConfigurationError(f"Empty pre-period {pre_period}")

    full_window = tuple(range(start, end + 1))
    spec = [PredictorSpec(var, var, full_window) for var in covariates]

    n_special = 0
    for anchor in anchor_years:
        window = special_predictor_window(anchor, pre_period)
        if not window:
            logger.info(
                f"Dropping special predictor anchored at {anchor}: window "
                f"{anchor - 1}-{anchor + 1} lies outside pre-period {start}-{end}"
            )
            continue
        spec.append(
            PredictorSpec(
                name=f"{outcome_var}_{anchor}",
                variable=outcome_var,
                years=window,
                special=True,
                anchor=anchor,
            )
        )
        n_special += 1

    if anchor_years and n_special == 0:
        raise ConfigurationError(
            f"All special predictor anchor years {list(anchor_years)} fall outside "
            f"pre-period {start}-{end} after windowing"
        )
    if not spec:
        raise ConfigurationError("Predictor specification is empty")

    logger.info(
        f"Using {len(spec) - n_special} averaged predictors and "
        f"{n_special} special predictors"
    )
    return spec


def predictor_values(
    df: pd.DataFrame,
    spec: list[PredictorSpec],
    units: list[str],
    unit_col: str = UNIT_COL,
    time_col: str = TIME_COL,
) -> pd.DataFrame:
    """
    Evaluate every predictor for every unit.

    Each value is the mean of the available observations in the predictor's
    window; it is NaN only when the window holds no observation at all.

    Returns:
        DataFrame (predictors x units)
    """
    sub = df[df[unit_col].isin(units)]
    rows = {}
    for p in spec:
        window = sub[sub[time_col].isin(p.years)]
        if p.variable in window.columns:
            means = window.groupby(unit_col)[p.variable].mean()
        else:
            means = pd.Series(dtype=float)
        rows[p.name] = means.reindex(units)

    return pd.DataFrame(rows, index=pd.Index(units, name=unit_col)).T.astype(float)


def build_predictor_matrices(
    df: pd.DataFrame,
    spec: list[PredictorSpec],
    treated_unit: str,
    donors: list[str],
) -> tuple[pd.Series, pd.DataFrame]:
    """
    Predictor vector of the treated unit and matrix of the donors.

    Returns:
        X1: Series indexed by predictor name
        X0: DataFrame (predictors x donors), may contain NaN
    """
    values = predictor_values(df, spec, [treated_unit] + list(donors))
    X1 = values[treated_unit].rename(treated_unit)
    X0 = values[list(donors)]
    return X1, X0


def donors_missing_predictors(X0: pd.DataFrame) -> dict[str, str]:
    """Donors with at least one missing predictor value, with the reason."""
    missing = {}
    for donor in X0.columns:
        absent = X0.index[np.isnan(X0[donor].to_numpy())].tolist()
        if absent:
            missing[donor] = f"missing predictor(s): {', '.join(absent)}"
    return missing
