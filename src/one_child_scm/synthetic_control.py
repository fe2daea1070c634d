"""
Synthetic Control Method for the One-Child Policy analysis.
Based on Abadie, Diamond & Hainmueller (2010, 2015) and Abadie (2021).
"""

import time
import warnings
from typing import NamedTuple

import cvxpy as cp
import numpy as np
import pandas as pd
from scipy.optimize import minimize

from .config import OUTCOME_VAR, TIME_COL, UNIT_COL, AnalysisConfig
from .exceptions import FitFailure, SilentExclusionWarning
from .logger import logger
from .metrics import compute_fit_metrics, compute_rmspe
from .predictors import PredictorSpec, build_predictor_matrices, donors_missing_predictors

# Inner QP attempts, most accurate first; later entries relax tolerances
SOLVER_ATTEMPTS = [
    (cp.CLARABEL, {}),
    (cp.SCS, {"eps_abs": 1e-6, "eps_rel": 1e-6, "max_iters": 20000}),
    (cp.OSQP, {"eps_abs": 1e-5, "eps_rel": 1e-5, "max_iter": 20000, "polish": True}),
]

# Objective value returned to the outer search for unusable V
PENALTY = 1e10


class SCMResult(NamedTuple):
    """Container for SCM results."""

    treated_unit: str
    treatment_year: int
    donors_requested: list[str]  # Donors passed in by the caller
    donors_used: list[str]  # Donors that entered the optimisation
    excluded_donors: dict[str, str]  # Requested but unusable donors -> reason
    weights: pd.Series  # Donor weights indexed by donors_used
    v_weights: pd.Series  # Predictor importance weights (K x 1)
    synthetic: pd.Series  # Synthetic control outcome series
    actual: pd.Series  # Actual treated unit outcome series
    gap: pd.Series  # Treatment effect (actual - synthetic)
    rmspe_pre: float  # Pre-treatment RMSPE
    rmspe_post: float  # Post-treatment RMSPE
    mspe_ratio: float  # Squared post/pre RMSPE
    perfect_pre_fit: bool  # Pre-RMSPE was zero; mspe_ratio is a sentinel
    predictor_balance: pd.DataFrame  # Predictor balance table

    def top_weights(self, threshold: float = 0.001) -> pd.Series:
        """Donors with weight above `threshold`, largest first."""
        return self.weights[self.weights > threshold].sort_values(ascending=False)


def _project_to_simplex(W: np.ndarray) -> np.ndarray:
    """Clip solver noise below zero and renormalise."""
    W = np.clip(np.asarray(W, dtype=float), 0.0, None)
    total = W.sum()
    if not np.isfinite(total) or total <= 0:
        raise FitFailure("Solver returned an all-zero weight vector")
    return W / total


def solve_weights(
    X0: np.ndarray,
    X1: np.ndarray,
    V: np.ndarray,
) -> np.ndarray:
    """
    Solve for optimal synthetic control weights given predictor weights V.

    Minimizes: (X1 - X0 @ W)' V (X1 - X0 @ W)
    Subject to: W >= 0, sum(W) = 1

    The problem is retried with relaxed solver settings before giving up.

    Args:
        X0: Predictor matrix for control units (K x J)
        X1: Predictor vector for treated unit (K x 1)
        V: Diagonal weight matrix for predictors (K x K), or its diagonal

    Returns:
        Optimal weights W (J x 1)

    Raises:
        FitFailure: if no solver produces a solution
    """
    X0 = np.asarray(X0, dtype=float)
    X1 = np.asarray(X1, dtype=float).reshape(-1)
    v = np.diag(V) if np.ndim(V) == 2 else np.asarray(V, dtype=float)

    J = X0.shape[1]
    if J == 0:
        raise FitFailure("No donors available for weight optimisation")
    if J == 1:
        return np.ones(1)

    W = cp.Variable(J)

    # Weighted distance
    diff = X1 - X0 @ W
    objective = cp.sum_squares(cp.multiply(np.sqrt(np.clip(v, 0.0, None)), diff))

    constraints = [
        W >= 0,
        cp.sum(W) == 1,
    ]

    problem = cp.Problem(cp.Minimize(objective), constraints)

    installed = set(cp.installed_solvers())
    errors = []
    for solver, options in SOLVER_ATTEMPTS:
        if solver not in installed:
            continue
        try:
            problem.solve(solver=solver, **options)
        except cp.error.SolverError as e:
            errors.append(f"{solver}: {e}")
            continue
        if W.value is not None and problem.status in (cp.OPTIMAL, cp.OPTIMAL_INACCURATE):
            return _project_to_simplex(W.value)
        errors.append(f"{solver}: status {problem.status}")

    raise FitFailure("Weight optimisation failed: " + "; ".join(errors))


def _check_deadline(deadline: float | None) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise FitFailure("Weight fit exceeded its time limit")


def outer_objective(
    v_flat: np.ndarray,
    X0: np.ndarray,
    X1: np.ndarray,
    Y0_pre: np.ndarray,
    Y1_pre: np.ndarray,
    deadline: float | None = None,
) -> float:
    """
    Outer optimization objective: minimize pre-treatment RMSPE.

    Args:
        v_flat: Flattened predictor weights
        X0, X1: Predictor matrices
        Y0_pre, Y1_pre: Pre-treatment outcome matrices
        deadline: time.monotonic() value after which the fit is abandoned

    Returns:
        Pre-treatment RMSPE
    """
    _check_deadline(deadline)

    v = np.clip(np.asarray(v_flat, dtype=float), 0.0, None)
    if v.sum() <= 0:
        return PENALTY

    # Solve inner problem for W given V
    try:
        W = solve_weights(X0, X1, v / v.sum())
    except FitFailure:
        return PENALTY

    return compute_rmspe(Y0_pre, Y1_pre, W)


def optimize_v_weights(
    X0: np.ndarray,
    X1: np.ndarray,
    Y0_pre: np.ndarray,
    Y1_pre: np.ndarray,
    method: str = "Nelder-Mead",
    max_iter: int = 1000,
    deadline: float | None = None,
) -> np.ndarray:
    """
    Search predictor weights V minimising pre-treatment outcome RMSPE.

    Starts from equal weights and never returns a V worse than that start.

    Returns:
        Non-negative V summing to one (K,)
    """
    K = X0.shape[0]
    v0 = np.ones(K) / K
    if K == 1:
        return v0

    args = (X0, X1, Y0_pre, Y1_pre, deadline)
    start_loss = outer_objective(v0, *args)

    result = minimize(
        outer_objective,
        v0,
        args=args,
        method=method,
        bounds=[(0, 1)] * K,
        options={"maxiter": max_iter},
    )

    v = np.clip(result.x, 0.0, None)
    if v.sum() <= 0 or result.fun > start_loss:
        return v0
    return v / v.sum()


def _excluded_for_outcome(Y: pd.DataFrame, donors: list[str]) -> dict[str, str]:
    missing = {}
    for donor in donors:
        years = Y.index[Y[donor].isna()].tolist()
        if years:
            shown = ", ".join(str(y) for y in years[:5])
            more = f" (+{len(years) - 5} more)" if len(years) > 5 else ""
            missing[donor] = f"missing outcome in {shown}{more}"
    return missing


def fit_synthetic_control(
    df: pd.DataFrame,
    spec: list[PredictorSpec],
    treated_unit: str,
    donor_pool: list[str],
    treatment_year: int,
    pre_period: tuple[int, int],
    post_period_end: int,
    outcome_var: str = OUTCOME_VAR,
    v_weights: np.ndarray | None = None,
    v_optimizer: str = "Nelder-Mead",
    v_max_iter: int = 1000,
    timeout: float | None = None,
) -> SCMResult:
    """
    Fit Synthetic Control Method.

    Donors with any missing predictor value, or a missing outcome anywhere
    in the analysis window, are excluded before solving (never imputed).
    The returned weights are indexed by the donors actually used.

    Args:
        df: Panel data with countries and years
        spec: Predictor specification
        treated_unit: ISO3 code of treated country
        donor_pool: Donor country codes requested for this fit
        treatment_year: First treated year
        pre_period: (start, end) years used to fit V and W
        post_period_end: Last year of the outcome series
        outcome_var: Name of outcome variable
        v_weights: Fixed predictor weights; searched when None
        v_optimizer: scipy.optimize.minimize method for the V search
        v_max_iter: Iteration cap for the V search
        timeout: Seconds allowed for this fit

    Returns:
        SCMResult with weights, synthetic series, and diagnostics

    Raises:
        FitFailure: if no donor is usable or optimisation fails
    """
    deadline = time.monotonic() + timeout if timeout is not None else None

    donors_requested = list(dict.fromkeys(d for d in donor_pool if d != treated_unit))
    all_years = list(range(pre_period[0], post_period_end + 1))
    pre_years = [y for y in all_years if y <= pre_period[1] and y < treatment_year]

    # Build predictor matrices
    # X0: K x J, X1: K x 1 (vectors of pre-treatment averages)
    X1, X0 = build_predictor_matrices(df, spec, treated_unit, donors_requested)

    # Predictors the treated unit lacks cannot be matched at all
    treated_nan = X1.isna()
    if treated_nan.any():
        logger.warning(
            f"{treated_unit}: dropping predictors with missing values: "
            f"{', '.join(X1.index[treated_nan])}"
        )
        X1 = X1[~treated_nan]
        X0 = X0.loc[~treated_nan]
    if X1.empty:
        raise FitFailure(f"{treated_unit}: no predictor has a value for the treated unit")

    # Outcome matrix over the whole analysis window
    panel = df[df[UNIT_COL].isin([treated_unit] + donors_requested)]
    Y = (
        panel.pivot_table(index=TIME_COL, columns=UNIT_COL, values=outcome_var, aggfunc="first")
        .reindex(index=all_years, columns=[treated_unit] + donors_requested)
    )

    excluded = donors_missing_predictors(X0)
    for donor, reason in _excluded_for_outcome(Y, donors_requested).items():
        excluded.setdefault(donor, reason)

    donors_used = [d for d in donors_requested if d not in excluded]

    if excluded:
        message = (
            f"{treated_unit}: {len(excluded)} of {len(donors_requested)} requested donors "
            f"excluded for missing data: "
            + "; ".join(f"{d} ({r})" for d, r in excluded.items())
        )
        logger.warning(message)
        warnings.warn(message, SilentExclusionWarning, stacklevel=2)

    if not donors_used:
        raise FitFailure(
            f"{treated_unit}: no donors remain after excluding donors with missing data "
            f"({len(donors_requested)} requested)"
        )

    predictor_names = list(X1.index)
    X0 = X0[donors_used]
    X1_raw = X1.to_numpy(dtype=float)
    X0_raw = X0.to_numpy(dtype=float)

    # Normalize predictors (important for optimization)
    stacked = np.hstack([X0_raw, X1_raw.reshape(-1, 1)])
    X_mean = stacked.mean(axis=1)
    X_std = stacked.std(axis=1)
    X_std[X_std == 0] = 1

    X0_norm = (X0_raw - X_mean.reshape(-1, 1)) / X_std.reshape(-1, 1)
    X1_norm = (X1_raw - X_mean) / X_std

    # Pre-treatment outcomes, restricted to years the treated unit is observed
    Y_pre = Y.loc[pre_years]
    observed = Y_pre[treated_unit].notna()
    if not observed.any():
        raise FitFailure(f"{treated_unit}: no pre-treatment outcome observations")
    Y1_pre = Y_pre.loc[observed, treated_unit].to_numpy(dtype=float)
    Y0_pre = Y_pre.loc[observed, donors_used].to_numpy(dtype=float)

    K = len(predictor_names)
    if v_weights is not None:
        v = np.asarray(v_weights, dtype=float).reshape(-1)
        if v.shape != (K,) or np.any(v < 0) or v.sum() <= 0:
            raise FitFailure(
                f"Supplied predictor weights must be {K} non-negative values "
                f"with a positive sum"
            )
        v = v / v.sum()
    else:
        # Optimize V weights using nested optimization
        v = optimize_v_weights(
            X0_norm,
            X1_norm,
            Y0_pre,
            Y1_pre,
            method=v_optimizer,
            max_iter=v_max_iter,
            deadline=deadline,
        )

    # Solve for final weights
    _check_deadline(deadline)
    W_opt = solve_weights(X0_norm, X1_norm, np.diag(v))

    # Create synthetic control series
    Y0_all = Y[donors_used]
    synthetic = pd.Series(Y0_all.to_numpy(dtype=float) @ W_opt, index=all_years, name="synthetic")
    actual = Y[treated_unit].rename("actual")
    gap = actual - synthetic
    gap.name = "gap"

    metrics = compute_fit_metrics(actual, synthetic, treatment_year)

    # Create weights series
    weights = pd.Series(W_opt, index=pd.Index(donors_used, name=UNIT_COL), name="weight")

    # Predictor balance table
    balance_data = {
        "Actual": X1_raw,
        "Synthetic": X0_raw @ W_opt,
        "Sample Mean": X0_raw.mean(axis=1),
    }
    predictor_balance = pd.DataFrame(balance_data, index=predictor_names)

    return SCMResult(
        treated_unit=treated_unit,
        treatment_year=treatment_year,
        donors_requested=donors_requested,
        donors_used=donors_used,
        excluded_donors=excluded,
        weights=weights,
        v_weights=pd.Series(v, index=predictor_names, name="v_weight"),
        synthetic=synthetic,
        actual=actual,
        gap=gap,
        rmspe_pre=metrics.rmspe_pre,
        rmspe_post=metrics.rmspe_post,
        mspe_ratio=metrics.mspe_ratio,
        perfect_pre_fit=metrics.perfect_pre_fit,
        predictor_balance=predictor_balance,
    )


def fit_with_config(
    df: pd.DataFrame,
    spec: list[PredictorSpec],
    donor_pool: list[str],
    config: AnalysisConfig,
    treated_unit: str | None = None,
) -> SCMResult:
    """Run `fit_synthetic_control` with the periods and solver options of `config`."""
    return fit_synthetic_control(
        df=df,
        spec=spec,
        treated_unit=treated_unit or config.treated_unit_id,
        donor_pool=donor_pool,
        treatment_year=config.treatment_period,
        pre_period=config.pre_period,
        post_period_end=config.post_period_end,
        outcome_var=config.outcome_var,
        v_optimizer=config.v_optimizer,
        v_max_iter=config.v_max_iter,
        timeout=config.fit_timeout,
    )


def jackknife_test(
    df: pd.DataFrame,
    spec: list[PredictorSpec],
    full_result: SCMResult,
    config: AnalysisConfig,
    top_n: int | None = None,
) -> dict[str, SCMResult]:
    """
    Run leave-one-out (jackknife) robustness test.

    Drops each of the `top_n` most heavily weighted donors and re-estimates.

    Args:
        df: Panel data
        spec: Predictor specification of the main fit
        full_result: Main SCMResult
        config: Analysis configuration
        top_n: Number of donors to drop in turn (config.loo_top_n_donors)

    Returns:
        Dictionary mapping "full" and "w/o_<donor>" to SCMResult
    """
    top_n = config.loo_top_n_donors if top_n is None else top_n
    positive_weight_countries = full_result.top_weights().index[:top_n].tolist()

    results = {"full": full_result}

    for drop_country in positive_weight_countries:
        new_donors = [c for c in full_result.donors_used if c != drop_country]
        try:
            result = fit_with_config(
                df, spec, new_donors, config, treated_unit=full_result.treated_unit
            )
        except FitFailure as e:
            logger.warning(f"Failed jackknife w/o {drop_country}: {e}")
            continue

        results[f"w/o_{drop_country}"] = result
        logger.info(
            f"  w/o {drop_country}: pre-RMSPE {result.rmspe_pre:.4f}, "
            f"MSPE ratio {result.mspe_ratio:.2f}"
        )

    return results
