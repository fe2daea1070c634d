"""
Donor pool construction for the synthetic control analysis.

Starting from every unit except the treated one, the pool is narrowed by
allow/deny lists (ids, regions, income groups), by the negligible-size list
and finally by pre-period data coverage. Every stage is recorded and logged
because large silent donor removals are the easiest way to get a
misleading synthetic control.
"""

from typing import NamedTuple

import pandas as pd

from .config import (
    INCOME_COL,
    RECOMMENDED_DONOR_POOL_SIZE,
    REGION_COL,
    TIME_COL,
    UNIT_COL,
    AnalysisConfig,
)
from .exceptions import ConfigurationError, InsufficientDataError
from .logger import logger


class FilterStage(NamedTuple):
    """One step of donor filtering."""

    name: str
    count_before: int
    count_after: int
    removed: dict[str, str]  # unit id -> reason

    @property
    def n_removed(self) -> int:
        return self.count_before - self.count_after


class DonorPoolResult(NamedTuple):
    """Surviving donors plus the audit trail that produced them."""

    donors: list[str]
    stages: list[FilterStage]
    coverage: pd.DataFrame  # per-unit pre-period coverage (0..1)

    def largest_removal_stage(self) -> FilterStage | None:
        candidates = [s for s in self.stages if s.n_removed > 0]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.n_removed)


def compute_coverage(
    df: pd.DataFrame,
    units: list[str],
    variables: list[str],
    pre_period: tuple[int, int],
    unit_col: str = UNIT_COL,
    time_col: str = TIME_COL,
) -> pd.DataFrame:
    """
    Share of non-missing observations per unit and variable in the pre-period.

    Years absent from the panel count as missing.

    Returns:
        DataFrame indexed by unit, one column per variable
    """
    years = list(range(pre_period[0], pre_period[1] + 1))
    window = df[
        df[unit_col].isin(units)
        & df[time_col].between(pre_period[0], pre_period[1])
    ]

    coverage = {}
    for var in variables:
        if var not in window.columns or window.empty:
            coverage[var] = pd.Series(0.0, index=units)
            continue
        observed = (
            window.pivot_table(index=time_col, columns=unit_col, values=var, aggfunc="first")
            .reindex(index=years, columns=units)
        )
        coverage[var] = observed.notna().mean(axis=0)

    return pd.DataFrame(coverage, index=pd.Index(units, name=unit_col)).fillna(0.0)


def check_treated_coverage(df: pd.DataFrame, config: AnalysisConfig) -> float:
    """
    Verify the treated unit exists and clears the outcome threshold.

    Returns:
        The treated unit's outcome coverage

    Raises:
        InsufficientDataError: if the treated unit is absent or too sparse
    """
    treated = config.treated_unit_id
    if treated not in set(df[UNIT_COL]):
        raise InsufficientDataError(
            f"Treated unit {treated} not found in panel data",
            stage="treated_coverage",
            current=0.0,
            required=config.outcome_completeness_threshold,
        )

    coverage = compute_coverage(df, [treated], [config.outcome_var], config.pre_period)
    value = float(coverage.loc[treated, config.outcome_var])
    logger.info(
        f"{treated} outcome coverage in pre-period "
        f"{config.pre_period[0]}-{config.pre_period[1]}: {value:.1%}"
    )

    if value < config.outcome_completeness_threshold:
        raise InsufficientDataError(
            f"{treated} has insufficient outcome coverage "
            f"({value:.1%} < {config.outcome_completeness_threshold:.1%} required, "
            f"option outcome_completeness_threshold). Try lowering the threshold, "
            f"enabling interpolation or shortening pre_period.",
            stage="treated_coverage",
            current=value,
            required=config.outcome_completeness_threshold,
        )
    return value


def _apply_stage(
    stages: list[FilterStage],
    name: str,
    pool: list[str],
    keep: set[str],
    reason: str,
) -> list[str]:
    """Keep members of `keep`, record and log the stage."""
    survivors = [u for u in pool if u in keep]
    removed = {u: reason for u in pool if u not in keep}
    stage = FilterStage(name, len(pool), len(survivors), removed)
    stages.append(stage)
    _log_stage(stage, survivors)
    return survivors


def _log_stage(stage: FilterStage, survivors: list[str]):
    logger.info(f"Donor filter [{stage.name}]: {stage.count_before} -> {stage.count_after}")
    if stage.removed:
        shown = sorted(stage.removed)[:10]
        more = len(stage.removed) - len(shown)
        suffix = f" ... and {more} more" if more > 0 else ""
        logger.info(f"  Removed {len(stage.removed)}: {', '.join(shown)}{suffix}")
        logger.debug(
            "  Reasons: " + "; ".join(f"{u}: {r}" for u, r in sorted(stage.removed.items()))
        )
    logger.debug(f"  Remaining examples: {', '.join(sorted(survivors)[:10])}")


def _unit_tags(df: pd.DataFrame, column: str) -> pd.Series:
    if column not in df.columns:
        raise ConfigurationError(
            f"Category filter requested on '{column}' but the panel has no such column"
        )
    return df.drop_duplicates(UNIT_COL).set_index(UNIT_COL)[column]


def _coverage_reason(row: pd.Series, config: AnalysisConfig, n_ok: int) -> str | None:
    predictors = list(config.predictor_vars)
    if row[config.outcome_var] < config.outcome_completeness_threshold:
        return (
            f"outcome coverage {row[config.outcome_var]:.1%} < "
            f"{config.outcome_completeness_threshold:.1%}"
        )
    if predictors and (row[predictors] == 0).all():
        return "every predictor entirely missing"
    if n_ok < config.min_predictors_passing:
        return (
            f"predictors passing {n_ok}/{len(predictors)} < "
            f"{config.min_predictors_passing}"
        )
    return None


def build_donor_pool(df: pd.DataFrame, config: AnalysisConfig) -> DonorPoolResult:
    """
    Select the donor pool satisfying configured filters and coverage.

    Args:
        df: Interpolated long panel
        config: Analysis configuration

    Returns:
        DonorPoolResult with surviving donors and per-stage audit trail

    Raises:
        InsufficientDataError: if fewer than `min_donor_pool_size` donors survive
        ConfigurationError: if a category filter names a missing column
    """
    treated = config.treated_unit_id
    stages: list[FilterStage] = []

    pool = sorted(u for u in df[UNIT_COL].dropna().unique() if u != treated)
    stages.append(FilterStage("initial", len(pool), len(pool), {}))
    logger.info(f"Initial donor pool (all units except {treated}): {len(pool)}")

    if config.remove_microstates:
        negligible = set(config.negligible_size_units)
        pool = _apply_stage(
            stages, "negligible_size", pool,
            {u for u in pool if u not in negligible}, "negligible size",
        )

    if config.donor_exclude_ids:
        excluded = set(config.donor_exclude_ids)
        pool = _apply_stage(
            stages, "exclude_ids", pool,
            {u for u in pool if u not in excluded}, "explicit exclusion list",
        )

    if config.donor_include_ids:
        pool = _apply_stage(
            stages, "include_ids", pool,
            set(config.donor_include_ids), "not in inclusion list",
        )

    if config.donor_include_regions:
        regions = _unit_tags(df, REGION_COL)
        keep = set(regions[regions.isin(config.donor_include_regions)].index)
        pool = _apply_stage(stages, "include_regions", pool, keep, "region not included")

    if config.donor_exclude_regions:
        regions = _unit_tags(df, REGION_COL)
        drop = set(regions[regions.isin(config.donor_exclude_regions)].index)
        pool = _apply_stage(
            stages, "exclude_regions", pool,
            {u for u in pool if u not in drop}, "region excluded",
        )

    if config.donor_include_income_groups:
        income = _unit_tags(df, INCOME_COL)
        keep = set(income[income.isin(config.donor_include_income_groups)].index)
        pool = _apply_stage(stages, "include_income", pool, keep, "income group not included")

    if config.donor_exclude_income_groups:
        income = _unit_tags(df, INCOME_COL)
        drop = set(income[income.isin(config.donor_exclude_income_groups)].index)
        pool = _apply_stage(
            stages, "exclude_income", pool,
            {u for u in pool if u not in drop}, "income group excluded",
        )

    # Coverage filter
    predictors = list(config.predictor_vars)
    coverage = compute_coverage(df, pool, [config.outcome_var] + predictors, config.pre_period)
    n_ok = (
        (coverage[predictors] >= config.predictor_completeness_threshold).sum(axis=1)
        if predictors
        else pd.Series(0, index=coverage.index)
    )
    coverage["n_predictors_ok"] = n_ok

    before = len(pool)
    removed = {}
    survivors = []
    for unit in pool:
        reason = _coverage_reason(coverage.loc[unit], config, int(n_ok.loc[unit]))
        if reason is None:
            survivors.append(unit)
        else:
            removed[unit] = reason
    stage = FilterStage("coverage", before, len(survivors), removed)
    stages.append(stage)
    _log_stage(stage, survivors)
    logger.info(
        f"  Outcome coverage >= {config.outcome_completeness_threshold:.0%}; "
        f"at least {config.min_predictors_passing} of {len(predictors)} predictors "
        f">= {config.predictor_completeness_threshold:.0%}"
    )
    pool = survivors

    result = DonorPoolResult(donors=pool, stages=stages, coverage=coverage)

    if len(pool) < config.min_donor_pool_size:
        worst = result.largest_removal_stage()
        worst_name = worst.name if worst else "initial"
        message = (
            f"Insufficient donor pool size: {len(pool)} donors, "
            f"{config.min_donor_pool_size} required (min_donor_pool_size). "
            f"Stage removing the most candidates: {worst_name}"
            + (f" ({worst.n_removed} removed)" if worst else "")
            + f". Current thresholds: outcome_completeness_threshold="
            f"{config.outcome_completeness_threshold}, predictor_completeness_threshold="
            f"{config.predictor_completeness_threshold}, min_predictors_passing="
            f"{config.min_predictors_passing}, pre_period={config.pre_period}."
        )
        logger.error(message)
        raise InsufficientDataError(
            message,
            stage=worst_name,
            current=len(pool),
            required=config.min_donor_pool_size,
            stages=stages,
        )

    if len(pool) < RECOMMENDED_DONOR_POOL_SIZE:
        logger.warning(
            f"Small donor pool ({len(pool)} units). Recommended: "
            f"{RECOMMENDED_DONOR_POOL_SIZE}+ for robust inference."
        )

    logger.info(f"Final donor pool: {len(pool)} units")
    return result


def summarize_stages(stages: list[FilterStage]) -> pd.DataFrame:
    """Tabulate filter stages (one row per stage)."""
    return pd.DataFrame(
        [
            {
                "stage": s.name,
                "count_before": s.count_before,
                "count_after": s.count_after,
                "removed": s.n_removed,
                "removed_ids": ", ".join(sorted(s.removed)),
            }
            for s in stages
        ],
        columns=["stage", "count_before", "count_after", "removed", "removed_ids"],
    )


def removal_reasons(stages: list[FilterStage]) -> pd.Series:
    """Reason each unit was removed, keyed by unit id."""
    reasons = {}
    for stage in stages:
        for unit, reason in stage.removed.items():
            reasons[unit] = f"{stage.name}: {reason}"
    return pd.Series(reasons, dtype=object, name="reason").sort_index()

