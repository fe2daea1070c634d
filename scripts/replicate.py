#!/usr/bin/env python3
"""
Main script for the One-Child Policy synthetic control analysis.

Usage:
    uv run scripts/replicate.py                          # Run full analysis
    uv run scripts/replicate.py --data-only              # Only fetch and save data
    uv run scripts/replicate.py --config analysis.yaml   # Options from YAML
    uv run scripts/replicate.py --placebo_max_n=50 --in_time_placebo_year=none
"""

import argparse
from pathlib import Path

import numpy as np
import pandas as pd
import yaml

from one_child_scm.config import PRE_TREATMENT_START, AnalysisConfig, load_config
from one_child_scm.data_loader import load_or_fetch_data
from one_child_scm.exceptions import ScmError
from one_child_scm.logger import logger, setup_logging
from one_child_scm.pipeline import AnalysisResult, run_analysis
from one_child_scm.reporting import generate_figures, save_results


def parse_overrides(extra: list[str]) -> dict:
    """
    Turn `--key=value` arguments into configuration overrides.

    Values are read as YAML scalars or flow lists, so `--placebo_max_n=50`,
    `--remove_microstates=false` and `--donor_exclude_ids=[TWN,HKG]` all work.
    `none` (any case) clears an optional setting.
    """
    overrides = {}
    for arg in extra:
        if not arg.startswith("--") or "=" not in arg:
            raise SystemExit(f"Unrecognised argument {arg!r}; expected --key=value")
        key, raw = arg[2:].split("=", 1)
        key = key.replace("-", "_")
        if raw.strip().lower() == "none":
            overrides[key] = None
        else:
            overrides[key] = yaml.safe_load(raw)
    return overrides


def run_main_analysis(df: pd.DataFrame, config: AnalysisConfig, skip_placebos: bool) -> AnalysisResult:
    """
    Run the full SCM analysis and log the headline numbers.

    Args:
        df: Panel data with countries and years
        config: Run configuration
        skip_placebos: Skip placebo-in-space inference

    Returns:
        AnalysisResult
    """
    logger.info("=" * 60)
    logger.info("SYNTHETIC CONTROL METHOD ANALYSIS")
    logger.info("=" * 60)

    result = run_analysis(df, config, run_placebos=not skip_placebos)
    main_result = result.main

    logger.info("-" * 40)
    logger.info("OPTIMAL WEIGHTS")
    logger.info("-" * 40)
    for country, weight in main_result.top_weights().items():
        logger.info(f"  {country}: {weight:.3f}")

    logger.info("-" * 40)
    logger.info("MODEL FIT")
    logger.info("-" * 40)
    logger.info(f"  Pre-treatment RMSPE:  {main_result.rmspe_pre:.4f}")
    logger.info(f"  Post-treatment RMSPE: {main_result.rmspe_post:.4f}")
    logger.info(f"  MSPE Ratio:           {main_result.mspe_ratio:.4f}")
    if main_result.perfect_pre_fit:
        logger.warning("  Pre-treatment fit is exact; MSPE ratio is degenerate")

    logger.info("-" * 40)
    logger.info("TREATMENT EFFECT")
    logger.info("-" * 40)
    final_year = main_result.actual.index[-1]
    logger.info(f"  Year {final_year}:")
    logger.info(f"    Actual TFR:    {main_result.actual.iloc[-1]:.2f}")
    logger.info(f"    Synthetic TFR: {main_result.synthetic.iloc[-1]:.2f}")
    logger.info(f"    Gap:           {main_result.gap.iloc[-1]:.2f}")

    if result.inference is not None:
        test = result.inference.test
        logger.info("-" * 40)
        logger.info("PLACEBO INFERENCE")
        logger.info("-" * 40)
        if test.defined:
            logger.info(
                f"  p-value: {test.p_value:.4f} "
                f"({test.n_at_least_as_extreme} of {test.n_placebos} placebos)"
            )
        else:
            logger.warning(f"  p-value undefined: {test.undefined_reason}")

    logger.info("-" * 40)
    logger.info("PREDICTOR BALANCE")
    logger.info("-" * 40)
    logger.info(main_result.predictor_balance.to_string())

    return result


def main():
    parser = argparse.ArgumentParser(
        description="Synthetic control analysis of China's One-Child Policy",
        epilog="Any configuration option can be overridden as --option=value.",
    )
    parser.add_argument("--config", type=Path, help="YAML configuration file")
    parser.add_argument(
        "--data-path",
        type=Path,
        default=Path("data/raw/panel_data.csv"),
        help="Cached panel CSV",
    )
    parser.add_argument(
        "--data-only",
        action="store_true",
        help="Only fetch and save data",
    )
    parser.add_argument(
        "--skip-placebos",
        action="store_true",
        help="Skip placebo-in-space inference",
    )
    parser.add_argument(
        "--no-figures",
        action="store_true",
        help="Save tables only",
    )
    parser.add_argument(
        "--refresh-data",
        action="store_true",
        help="Force refresh data from sources",
    )
    parser.add_argument("--log-level", default="INFO")

    args, extra = parser.parse_known_args()

    try:
        config = load_config(args.config, parse_overrides(extra))
    except ScmError as e:
        parser.error(str(e))

    output_dir = Path(config.output_dir)
    setup_logging(args.log_level.upper(), log_file=output_dir / "run.log")

    # Set random seed for reproducibility
    np.random.seed(config.random_seed)
    logger.info(f"Random seed set to {config.random_seed}")

    df = load_or_fetch_data(
        args.data_path,
        force_refresh=args.refresh_data,
        start_year=min(PRE_TREATMENT_START, config.pre_period[0]),
        end_year=config.post_period_end,
    )

    if args.data_only:
        logger.info("Data fetched and saved. Exiting.")
        return

    try:
        result = run_main_analysis(df, config, args.skip_placebos)
    except ScmError as e:
        logger.error(f"Analysis stopped: {e}")
        raise SystemExit(1) from e

    if not args.no_figures:
        logger.info("=" * 60)
        logger.info("GENERATING FIGURES")
        logger.info("=" * 60)
        generate_figures(result)

    save_results(result, panel=df)

    logger.info("=" * 60)
    logger.info("ANALYSIS COMPLETE")
    logger.info("=" * 60)


if __name__ == "__main__":
    main()
