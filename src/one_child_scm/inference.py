"""
Placebo-based inference for the synthetic control estimate.

The placebo-in-space test refits the synthetic control once per donor, with
that donor playing the treated unit, and ranks the treated unit's MSPE ratio
within the resulting distribution. The p-value is a Fisher-exact style
permutation rank, not an asymptotic test statistic.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import NamedTuple

import cvxpy as cp
import numpy as np
import pandas as pd
from tqdm import tqdm

from .config import TIME_COL, AnalysisConfig
from .exceptions import ConfigurationError, FitFailure
from .logger import logger
from .predictors import PredictorSpec, build_predictor_spec
from .synthetic_control import SCMResult, fit_synthetic_control, fit_with_config

# Errors that abandon a single placebo fit without stopping the batch
PLACEBO_ERRORS = (FitFailure, cp.error.SolverError, ValueError, ArithmeticError)


class PlaceboDistribution(NamedTuple):
    """Successful placebo fits plus the units whose fit failed."""

    results: dict[str, SCMResult]
    failures: dict[str, str]  # unit -> error message
    attempted: list[str]

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    def to_frame(self) -> pd.DataFrame:
        """One row per successful placebo."""
        rows = [
            {
                "unit": unit,
                "rmspe_pre": r.rmspe_pre,
                "rmspe_post": r.rmspe_post,
                "mspe_ratio": r.mspe_ratio,
                "perfect_pre_fit": r.perfect_pre_fit,
                "n_donors_used": len(r.donors_used),
            }
            for unit, r in self.results.items()
        ]
        columns = ["unit", "rmspe_pre", "rmspe_post", "mspe_ratio", "perfect_pre_fit", "n_donors_used"]
        return pd.DataFrame(rows, columns=columns).set_index("unit")


class PrefitFilter(NamedTuple):
    """Outcome of the placebo pre-fit quality filter."""

    mode: str
    value: float | None
    threshold: float | None
    kept: list[str]
    removed: list[str]


class PermutationTest(NamedTuple):
    """Permutation p-value; `p_value` is None when it is undefined."""

    p_value: float | None
    treated_ratio: float
    n_placebos: int
    n_at_least_as_extreme: int
    undefined_reason: str | None = None

    @property
    def defined(self) -> bool:
        return self.p_value is not None


class InferenceResult(NamedTuple):
    distribution: PlaceboDistribution
    prefit: PrefitFilter
    test: PermutationTest


def select_placebo_units(donor_pool: list[str], config: AnalysisConfig) -> list[str]:
    """Donors to use as pseudo-treated units, sampled when capped."""
    units = list(donor_pool)
    cap = config.placebo_max_n
    if cap is not None and len(units) > cap:
        rng = np.random.default_rng(config.random_seed)
        units = sorted(rng.choice(units, size=cap, replace=False).tolist())
        logger.info(f"Running placebos for {cap} randomly sampled donors")
    return units


def placebo_test(
    df: pd.DataFrame,
    spec: list[PredictorSpec],
    treated_unit: str,
    donor_pool: list[str],
    config: AnalysisConfig,
    show_progress: bool = True,
) -> PlaceboDistribution:
    """
    Run placebo tests by applying SCM to each control unit.

    Each placebo treats one donor as if it were treated, with the true treated
    unit put back among its donors. Fits are independent and run on a thread
    pool; a failed fit is dropped and counted, never recorded as zero.

    Args:
        df: Interpolated panel
        spec: Predictor specification of the main fit
        treated_unit: The truly treated unit
        donor_pool: Filtered donor pool
        config: Analysis configuration
        show_progress: Display a tqdm progress bar

    Returns:
        PlaceboDistribution
    """
    placebo_units = select_placebo_units(donor_pool, config)
    logger.info(f"Running placebo test for {len(placebo_units)} donors...")

    def run_placebo(unit: str) -> SCMResult:
        donors = [treated_unit] + [d for d in donor_pool if d != unit]
        return fit_with_config(df, spec, donors, config, treated_unit=unit)

    results = {}
    failures = {}
    workers = max(1, min(config.placebo_workers, len(placebo_units)))

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {pool.submit(run_placebo, unit): unit for unit in placebo_units}
        for future in tqdm(
            as_completed(futures),
            total=len(futures),
            desc="Placebo tests",
            disable=not show_progress,
        ):
            unit = futures[future]
            try:
                results[unit] = future.result()
            except PLACEBO_ERRORS as e:
                failures[unit] = str(e) or type(e).__name__
                logger.warning(f"Failed placebo for {unit}: {e}")

    ordered = {u: results[u] for u in placebo_units if u in results}
    logger.info(
        f"Completed {len(ordered)} of {len(placebo_units)} placebo runs "
        f"({len(failures)} failed)"
    )
    return PlaceboDistribution(results=ordered, failures=failures, attempted=placebo_units)


def apply_prefit_filter(
    placebo_rmspe_pre: pd.Series,
    treated_rmspe_pre: float,
    mode: str = "quantile",
    value: float | None = 0.9,
    treated_unit: str | None = None,
) -> PrefitFilter:
    """
    Drop placebos whose pre-period fit is poor.

    Modes:
        quantile: keep placebos with pre-RMSPE <= the `value` quantile of the
            placebo pre-RMSPEs (the treated unit never enters the quantile)
        relative: keep placebos with pre-RMSPE <= `value` x treated pre-RMSPE
        none: keep everything

    Args:
        placebo_rmspe_pre: Pre-RMSPE per placebo unit
        treated_rmspe_pre: Pre-RMSPE of the treated unit
        mode: Filter mode
        value: Quantile or multiple
        treated_unit: Dropped from `placebo_rmspe_pre` if present

    Returns:
        PrefitFilter
    """
    pre = placebo_rmspe_pre.astype(float)
    if treated_unit is not None:
        pre = pre.drop(treated_unit, errors="ignore")

    if mode == "none":
        return PrefitFilter(mode, None, None, pre.index.tolist(), [])

    if mode == "quantile":
        observed = pre.dropna()
        threshold = float(np.quantile(observed, value)) if len(observed) else np.nan
    elif mode == "relative":
        threshold = float(treated_rmspe_pre * value)
    else:
        raise ConfigurationError(f"Unknown placebo pre-fit filter mode: {mode!r}")

    keep = pre <= threshold
    kept = pre.index[keep].tolist()
    removed = pre.index[~keep].tolist()

    logger.info(
        f"Pre-fit filter ({mode} {value}): removed {len(removed)} placebos "
        f"with pre-RMSPE > {threshold:.4f}"
    )
    return PrefitFilter(mode, value, threshold, kept, removed)


def compute_p_value(treated_ratio: float, placebo_ratios: pd.Series) -> PermutationTest:
    """
    Share of placebo MSPE ratios at least as large as the treated ratio.

    Placebos whose ratio is undefined (perfect fit in both periods) are left
    out of the count. With no usable placebos the p-value is undefined.

    Args:
        treated_ratio: Treated unit's post/pre MSPE ratio
        placebo_ratios: MSPE ratio per placebo unit

    Returns:
        PermutationTest
    """
    ratios = placebo_ratios.astype(float).dropna()

    if len(placebo_ratios) == 0:
        return PermutationTest(None, treated_ratio, 0, 0, "no placebo fits available")
    if len(ratios) == 0:
        return PermutationTest(
            None, treated_ratio, 0, 0, "no placebo has a defined MSPE ratio"
        )
    if np.isnan(treated_ratio):
        return PermutationTest(
            None, treated_ratio, len(ratios), 0, "treated MSPE ratio is undefined"
        )

    n_extreme = int((ratios >= treated_ratio).sum())
    return PermutationTest(
        p_value=n_extreme / len(ratios),
        treated_ratio=treated_ratio,
        n_placebos=len(ratios),
        n_at_least_as_extreme=n_extreme,
    )


def compute_yearly_p_values(
    treated_result: SCMResult,
    placebo_results: dict[str, SCMResult],
    years: list[int] | None = None,
) -> pd.Series:
    """
    Compute per-year p-values for the treatment effect.

    P-value = proportion of placebo |gaps| >= treated |gap| in that year.
    Placebos without a gap for the year are skipped; a year with no placebo
    gap at all gets NaN.

    Args:
        treated_result: SCM result for treated unit
        placebo_results: Dictionary of placebo results
        years: Years to compute p-values for

    Returns:
        Series of p-values by year
    """
    if years is None:
        years = [
            y for y in treated_result.gap.index if y >= treated_result.treatment_year
        ]

    p_values = {}

    for year in years:
        treated_gap = abs(treated_result.gap.loc[year])

        placebo_gaps = [
            abs(result.gap.get(year, np.nan)) for result in placebo_results.values()
        ]
        placebo_gaps = [g for g in placebo_gaps if not np.isnan(g)]

        if not placebo_gaps or np.isnan(treated_gap):
            p_values[year] = np.nan
            continue

        # Count placebos with larger gaps
        n_larger = sum(1 for g in placebo_gaps if g >= treated_gap)
        p_values[year] = n_larger / len(placebo_gaps)

    return pd.Series(p_values, name="p_value", dtype=float)


def run_placebo_inference(
    df: pd.DataFrame,
    spec: list[PredictorSpec],
    main_result: SCMResult,
    donor_pool: list[str],
    config: AnalysisConfig,
    show_progress: bool = True,
) -> InferenceResult:
    """
    Placebo distribution, pre-fit filter and permutation p-value.

    Returns:
        InferenceResult; `test.p_value` is None if every placebo failed or
        every placebo was filtered out
    """
    distribution = placebo_test(
        df, spec, main_result.treated_unit, donor_pool, config, show_progress=show_progress
    )
    frame = distribution.to_frame()

    prefit = apply_prefit_filter(
        frame["rmspe_pre"],
        main_result.rmspe_pre,
        mode=config.placebo_prefit_filter_mode,
        value=config.placebo_prefit_filter_value,
        treated_unit=main_result.treated_unit,
    )

    if not distribution.results:
        test = PermutationTest(
            None, main_result.mspe_ratio, 0, 0,
            f"all {len(distribution.attempted)} placebo fits failed",
        )
    elif not prefit.kept:
        test = PermutationTest(
            None, main_result.mspe_ratio, 0, 0,
            f"all {len(frame)} placebos removed by the pre-fit filter",
        )
    else:
        test = compute_p_value(main_result.mspe_ratio, frame.loc[prefit.kept, "mspe_ratio"])

    if test.defined:
        logger.info(
            f"Permutation p-value: {test.p_value:.4f} "
            f"({test.n_at_least_as_extreme} of {test.n_placebos} placebos with "
            f"MSPE ratio >= {test.treated_ratio:.4f})"
        )
    else:
        logger.warning(f"Permutation p-value undefined: {test.undefined_reason}")

    return InferenceResult(distribution=distribution, prefit=prefit, test=test)


def in_time_placebo(
    df: pd.DataFrame,
    donor_pool: list[str],
    config: AnalysisConfig,
    placebo_year: int | None = None,
) -> SCMResult | None:
    """
    Run in-time placebo test with a fictitious earlier treatment year.

    Only data before the true treatment year is used. The check is skipped
    (returns None) when the fictitious pre-period would be empty, when no
    predictor survives windowing, or when the fit fails.

    Args:
        df: Interpolated panel
        donor_pool: Filtered donor pool
        config: Analysis configuration
        placebo_year: Year to use as placebo treatment (config.in_time_placebo_year)

    Returns:
        SCMResult for placebo treatment, or None when skipped
    """
    placebo_year = config.in_time_placebo_year if placebo_year is None else placebo_year
    if placebo_year is None:
        return None

    start = config.pre_period[0]
    if not start < placebo_year < config.treatment_period:
        logger.info(
            f"Skipping in-time placebo: year {placebo_year} leaves no pre-period "
            f"inside {start}-{config.treatment_period - 1}"
        )
        return None

    fake_pre = (start, min(placebo_year - 1, config.pre_period[1]))

    try:
        spec = build_predictor_spec(
            fake_pre,
            list(config.predictor_vars),
            list(config.special_predictor_anchor_years),
            outcome_var=config.outcome_var,
        )
    except ConfigurationError as e:
        logger.info(f"Skipping in-time placebo ({placebo_year}): {e}")
        return None

    logger.info(f"In-time placebo: fictitious treatment in {placebo_year}")
    data = df[df[TIME_COL] < config.treatment_period]

    try:
        return fit_synthetic_control(
            df=data,
            spec=spec,
            treated_unit=config.treated_unit_id,
            donor_pool=donor_pool,
            treatment_year=placebo_year,
            pre_period=fake_pre,
            post_period_end=config.treatment_period - 1,
            outcome_var=config.outcome_var,
            v_optimizer=config.v_optimizer,
            v_max_iter=config.v_max_iter,
            timeout=config.fit_timeout,
        )
    except FitFailure as e:
        logger.warning(f"In-time placebo ({placebo_year}) failed: {e}")
        return None
