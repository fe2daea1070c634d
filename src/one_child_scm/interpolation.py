"""
Linear interpolation of short gaps in annual series.

Coverage is measured after interpolation, so this runs per unit and per
variable before any donor filtering.
"""

import pandas as pd

from .config import TIME_COL, UNIT_COL


def interpolate_gaps(series: pd.Series, max_gap: int) -> pd.Series:
    """
    Fill interior runs of missing values no longer than `max_gap`.

    Each fillable run is replaced by the straight line between its two
    bounding observations, measured against the series index (years).
    Longer runs, and runs touching either end of the series, stay missing.

    Args:
        series: Time-ordered values indexed by period
        max_gap: Longest run of missing values to fill

    Returns:
        New series with the same index
    """
    if max_gap < 0:
        raise ValueError(f"max_gap must be >= 0, got {max_gap}")

    values = series.astype(float)
    missing = values.isna()
    if max_gap == 0 or not missing.any() or missing.all():
        return values.copy()

    # Label consecutive runs, then measure each missing run
    run_id = (missing != missing.shift()).cumsum()
    run_length = missing.groupby(run_id).transform("sum")

    filled = values.interpolate(method="index", limit_area="inside")
    fillable = missing & (run_length <= max_gap)

    return values.where(~fillable, filled)


def interpolate_panel(
    df: pd.DataFrame,
    columns: list[str],
    max_gap: int,
    unit_col: str = UNIT_COL,
    time_col: str = TIME_COL,
) -> pd.DataFrame:
    """
    Apply `interpolate_gaps` independently to every unit and column.

    Args:
        df: Long panel with one row per (unit, period)
        columns: Variables to interpolate (outcome and predictors)
        max_gap: Longest run of missing values to fill
        unit_col: Unit identifier column
        time_col: Period column

    Returns:
        Interpolated copy of the panel, sorted by unit and period
    """
    df = df.sort_values([unit_col, time_col]).reset_index(drop=True)
    columns = [c for c in columns if c in df.columns]

    pieces = []
    for _, group in df.groupby(unit_col, sort=False):
        group = group.set_index(time_col)
        for col in columns:
            group[col] = interpolate_gaps(group[col], max_gap)
        pieces.append(group.reset_index())

    if not pieces:
        return df

    return pd.concat(pieces, ignore_index=True)[df.columns]
