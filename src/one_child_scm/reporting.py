"""
Figures and result files for the One-Child Policy synthetic control.

Consumes the structured results of `pipeline.run_analysis`; nothing here
feeds back into estimation.
"""

from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from .config import NAME_COL, UNIT_COL
from .donor_pool import removal_reasons, summarize_stages
from .inference import PlaceboDistribution
from .logger import logger
from .pipeline import AnalysisResult
from .synthetic_control import SCMResult


def setup_style():
    """Set up matplotlib style for publication-quality figures."""
    plt.style.use("seaborn-v0_8-whitegrid")
    plt.rcParams.update({
        "figure.figsize": (10, 6),
        "figure.dpi": 100,
        "font.size": 11,
        "axes.labelsize": 12,
        "axes.titlesize": 14,
        "legend.fontsize": 10,
        "lines.linewidth": 2,
    })


def _finish(fig, save_path: str | Path | None):
    plt.tight_layout()
    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
    return fig


def plot_outcome_path(
    result: SCMResult,
    title: str = "Total Fertility Rate: China vs Synthetic Control",
    save_path: str | Path | None = None,
):
    """
    Plot actual and synthetic outcome trajectories.

    Args:
        result: SCMResult from fit_synthetic_control
        title: Plot title
        save_path: Path to save figure
    """
    setup_style()
    fig, ax = plt.subplots(figsize=(10, 6))

    years = result.actual.index

    ax.plot(years, result.actual, "b-", label=result.treated_unit, linewidth=2.5)
    ax.plot(years, result.synthetic, "r--", label=f"Synthetic {result.treated_unit}")

    # Treatment line
    ax.axvline(x=result.treatment_year, color="black", linestyle=":", alpha=0.7)

    ax.set_xlabel("Year")
    ax.set_ylabel("Total Fertility Rate (births per woman)")
    ax.set_title(title)
    ax.legend(loc="upper right")

    return _finish(fig, save_path), ax


def plot_gap(
    result: SCMResult,
    title: str = "Gap in Total Fertility Rate: actual minus synthetic",
    save_path: str | Path | None = None,
):
    """Plot the estimated effect (actual - synthetic) over time."""
    setup_style()
    fig, ax = plt.subplots(figsize=(10, 6))

    ax.plot(result.gap.index, result.gap, color="#2ca02c", linewidth=2)
    ax.axhline(y=0, color="gray", alpha=0.5)
    ax.axvline(x=result.treatment_year, color="black", linestyle=":", alpha=0.7)

    ax.set_xlabel("Year")
    ax.set_ylabel(f"Gap ({result.treated_unit} - Synthetic)")
    ax.set_title(title)

    return _finish(fig, save_path), ax


def plot_placebo_test(
    main_result: SCMResult,
    distribution: PlaceboDistribution,
    kept: list[str] | None = None,
    title: str = "Placebo-in-space gaps",
    save_path: str | Path | None = None,
):
    """
    Plot placebo gaps in gray with the treated unit's gap on top.

    Args:
        main_result: Treated unit SCMResult
        distribution: Placebo fits
        kept: Placebos surviving the pre-fit filter (all when None)
        title: Plot title
        save_path: Path to save figure
    """
    setup_style()
    fig, ax = plt.subplots(figsize=(10, 7))

    # Plot all placebos in gray
    for unit, result in distribution.results.items():
        if kept is not None and unit not in kept:
            continue
        ax.plot(result.gap.index, result.gap, color="gray", alpha=0.3, linewidth=1)

    # Plot treated unit in bold
    ax.plot(
        main_result.gap.index,
        main_result.gap,
        "b-",
        linewidth=2.5,
        label=main_result.treated_unit,
    )

    ax.axvline(x=main_result.treatment_year, color="black", linestyle=":", alpha=0.7)
    ax.axhline(y=0, color="black", alpha=0.3)

    ax.set_xlabel("Year")
    ax.set_ylabel("Gap = Actual - Synthetic")
    ax.set_title(title)
    ax.legend(loc="upper left")

    return _finish(fig, save_path), ax


def plot_placebo_histogram(
    main_result: SCMResult,
    placebo_ratios: pd.Series,
    p_value: float | None,
    save_path: str | Path | None = None,
):
    """Histogram of placebo MSPE ratios with the treated ratio marked."""
    setup_style()
    fig, ax = plt.subplots(figsize=(10, 6))

    finite = placebo_ratios[np.isfinite(placebo_ratios)]
    ax.hist(finite, bins=20, color="steelblue", alpha=0.7, edgecolor="black")

    if np.isfinite(main_result.mspe_ratio):
        ax.axvline(x=main_result.mspe_ratio, color="red", linestyle="--", linewidth=1.5)
        ax.annotate(
            f"{main_result.treated_unit}\n(ratio = {main_result.mspe_ratio:.2f})",
            xy=(main_result.mspe_ratio, ax.get_ylim()[1] * 0.9),
            color="red",
            fontweight="bold",
        )

    p_text = f"p = {p_value:.4f}" if p_value is not None else "p undefined"
    ax.set_xlabel("Post/Pre MSPE Ratio")
    ax.set_ylabel("Count")
    ax.set_title(f"Placebo Test: Distribution of Post/Pre MSPE Ratios ({p_text})")

    return _finish(fig, save_path), ax


def plot_jackknife(
    jackknife_results: dict[str, SCMResult],
    title: str = "Leave-one-out synthetic controls",
    save_path: str | Path | None = None,
):
    """Plot the treated series with each leave-one-out synthetic control."""
    setup_style()
    fig, ax = plt.subplots(figsize=(10, 7))

    full_result = jackknife_results["full"]
    ax.plot(
        full_result.actual.index,
        full_result.actual,
        "b-",
        label=full_result.treated_unit,
        linewidth=2.5,
    )

    others = [(k, r) for k, r in jackknife_results.items() if k != "full"]
    colors = plt.cm.Set2(np.linspace(0, 1, max(len(others), 1)))

    for (key, result), color in zip(others, colors):
        ax.plot(
            result.synthetic.index,
            result.synthetic,
            "--",
            color=color,
            label=key.replace("w/o_", "w/o "),
            linewidth=1.5,
            alpha=0.8,
        )

    ax.axvline(x=full_result.treatment_year, color="black", linestyle=":", alpha=0.7)
    ax.set_xlabel("Year")
    ax.set_ylabel("Total Fertility Rate (births per woman)")
    ax.set_title(title)
    ax.legend(loc="upper right", fontsize=9)

    return _finish(fig, save_path), ax


def summary_table(result: AnalysisResult) -> pd.DataFrame:
    """Key metrics of a run as a two-column table."""
    config = result.config
    main = result.main
    post_gap = main.gap[main.gap.index >= main.treatment_year]

    test = result.inference.test if result.inference else None
    if test is None:
        p_text = "not run"
    elif test.defined:
        p_text = f"{test.p_value:.4f}"
    else:
        p_text = f"undefined ({test.undefined_reason})"

    metrics = {
        "Treatment Country": config.treated_unit_id,
        "Treatment Year": str(config.treatment_period),
        "Pre-period": f"{config.pre_period[0]}-{config.pre_period[1]}",
        "Post-period": f"{config.treatment_period}-{config.post_period_end}",
        "Pre RMSPE": f"{main.rmspe_pre:.4f}",
        "Post RMSPE": f"{main.rmspe_post:.4f}",
        "MSPE Ratio": f"{main.mspe_ratio:.4f}",
        "Placebo p-value (permutation)": p_text,
        "Avg Post-treatment Gap": f"{post_gap.mean():.4f}",
        "N Donors (pool)": str(len(result.donor_pool.donors)),
        "N Donors (used)": str(len(main.donors_used)),
        "N Placebos": str(len(result.inference.distribution.results)) if result.inference else "0",
        "N Placebos failed": str(result.inference.distribution.n_failed) if result.inference else "0",
    }
    return pd.DataFrame({"Metric": list(metrics), "Value": list(metrics.values())})


def write_donor_filter_log(result: AnalysisResult, path: str | Path):
    """Write the per-stage donor filtering audit trail as text."""
    config = result.config
    stages = summarize_stages(result.donor_pool.stages)
    reasons = removal_reasons(result.donor_pool.stages)

    lines = [
        "DONOR POOL FILTERING LOG",
        f"Treatment Country: {config.treated_unit_id}",
        f"Treatment Year: {config.treatment_period}",
        f"Pre-period: {config.pre_period[0]}-{config.pre_period[1]}",
        f"Min predictors required: {config.min_predictors_passing} of "
        f"{len(config.predictor_vars)}",
        "",
        stages.to_string(index=False),
        "",
        "Removed units:",
    ]
    lines += [f"  {unit}: {reason}" for unit, reason in reasons.items()]

    if result.main.excluded_donors:
        lines += ["", "Excluded inside the main fit (missing data):"]
        lines += [f"  {unit}: {reason}" for unit, reason in result.main.excluded_donors.items()]

    lines += ["", f"FINAL DONOR POOL: {len(result.donor_pool.donors)} units"]
    lines += [f"  {unit}" for unit in result.donor_pool.donors]

    Path(path).write_text("\n".join(lines) + "\n", encoding="utf-8")


def save_results(result: AnalysisResult, panel: pd.DataFrame | None = None):
    """
    Save numerical results to CSV and text under config.output_dir.

    Args:
        result: AnalysisResult from run_analysis
        panel: Panel data, used to attach country names to weights
    """
    output_dir = Path(result.config.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    main = result.main

    # Save synthetic control series
    series_df = pd.DataFrame({
        "year": main.actual.index,
        "actual": main.actual.values,
        "synthetic": main.synthetic.values,
        "gap": main.gap.values,
    })
    series_df.to_csv(output_dir / "scm_series.csv", index=False)

    # Save weights, keyed by the donors actually used in the fit
    weights = main.weights.sort_values(ascending=False).to_frame()
    if panel is not None and NAME_COL in panel.columns:
        names = panel.drop_duplicates(UNIT_COL).set_index(UNIT_COL)[NAME_COL]
        weights[NAME_COL] = names.reindex(weights.index)
    weights.to_csv(output_dir / "donor_weights.csv")

    main.predictor_balance.to_csv(output_dir / "predictor_balance.csv")
    main.v_weights.to_csv(output_dir / "predictor_weights.csv")
    summary_table(result).to_csv(output_dir / "summary_stats.csv", index=False)
    write_donor_filter_log(result, output_dir / "donor_filter_log.txt")

    if result.inference is not None:
        placebo_df = result.inference.distribution.to_frame()
        placebo_df["kept_after_prefit_filter"] = placebo_df.index.isin(result.inference.prefit.kept)
        placebo_df.sort_values("mspe_ratio", ascending=False).to_csv(
            output_dir / "placebo_results.csv"
        )
    if result.yearly_p_values is not None:
        result.yearly_p_values.to_csv(output_dir / "yearly_p_values.csv")
    if result.sensitivity is not None:
        result.sensitivity.to_csv(output_dir / "sensitivity_analysis.csv", index=False)
    if result.donor_shocks is not None:
        result.donor_shocks.to_csv(output_dir / "donor_shocks.csv", index=False)

    logger.info(f"Results saved to {output_dir}/")


def generate_figures(result: AnalysisResult):
    """Generate all figures under config.output_dir."""
    output_dir = Path(result.config.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    main = result.main

    plot_outcome_path(main, save_path=output_dir / "tfr_path.png")
    plot_gap(main, save_path=output_dir / "tfr_gap.png")

    if result.inference is not None and result.inference.distribution.results:
        kept = result.inference.prefit.kept
        plot_placebo_test(
            main, result.inference.distribution, kept=kept,
            save_path=output_dir / "placebo_gaps.png",
        )
        ratios = result.inference.distribution.to_frame().loc[kept, "mspe_ratio"]
        plot_placebo_histogram(
            main, ratios, result.inference.test.p_value,
            save_path=output_dir / "placebo_mspe_hist.png",
        )

    if result.in_time is not None:
        plot_gap(
            result.in_time,
            title=(
                f"In-time placebo: fictitious treatment in {result.in_time.treatment_year}"
            ),
            save_path=output_dir / "tfr_gap_in_time_placebo.png",
        )

    if result.leave_one_out and len(result.leave_one_out) > 1:
        plot_jackknife(result.leave_one_out, save_path=output_dir / "leave_one_out.png")

    plt.close("all")
    logger.info(f"Figures saved to {output_dir}/")
