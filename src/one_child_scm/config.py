"""
Configuration parameters for the One-Child Policy synthetic control analysis.

Module-level constants describe the default case study. `AnalysisConfig` is
the immutable value every component receives; it is built once per run by
`load_config`, which layers defaults, a YAML file and explicit overrides.
"""

from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import get_args, get_origin

import yaml

from .exceptions import ConfigurationError

# Treatment configuration
TREATMENT_YEAR = 1980
PRE_TREATMENT_START = 1960
PRE_TREATMENT_END = 1979
POST_TREATMENT_END = 2015

# Treated unit
TREATED_COUNTRY = "CHN"  # China ISO3 code

# Panel column names
UNIT_COL = "country"
TIME_COL = "year"
NAME_COL = "country_name"
REGION_COL = "region"
INCOME_COL = "income"

# Outcome variable
OUTCOME_VAR = "fertility_rate"

# World Bank indicator codes
WB_INDICATORS = {
    "fertility_rate": "SP.DYN.TFRT.IN",  # Fertility rate, total (births per woman)
    "gdp_per_capita": "NY.GDP.PCAP.KD",  # GDP per capita (constant 2015 US$)
    "life_expectancy": "SP.DYN.LE00.IN",  # Life expectancy at birth
    "urban_population": "SP.URB.TOTL.IN.ZS",  # Urban population (% of total)
}

# Predictor variables for SCM (averages over pre-treatment period)
PREDICTOR_VARIABLES = [
    "gdp_per_capita",
    "life_expectancy",
    "urban_population",
]

# Anchor years for windowed outcome ("special") predictors
SPECIAL_PREDICTOR_YEARS = [1965, 1970, 1975, 1979]

# City-states and territories with atypical demography
DONOR_EXCLUDE = ["TWN", "HKG", "MAC"]

# Entities too small to serve as donors (noisy annual series)
MICROSTATES = [
    "LIE", "MCO", "SMR", "AND", "VAT", "NAU", "TUV", "PLW",
    "MHL", "KNA", "DMA", "VCT", "GRD", "ATG", "BRB", "TON",
    "KIR", "FSM", "SYC", "MUS", "BHR", "MLT", "MDV",
]

# Below this many donors the pool is usable but a warning is logged
RECOMMENDED_DONOR_POOL_SIZE = 20

PREFIT_FILTER_MODES = ("quantile", "relative", "none")

# Random seed for reproducibility
RANDOM_SEED = 20231108


@dataclass(frozen=True)
class AnalysisConfig:
    """Immutable configuration for one analysis run."""

    treated_unit_id: str = TREATED_COUNTRY
    treatment_period: int = TREATMENT_YEAR
    pre_period: tuple[int, int] = (PRE_TREATMENT_START, PRE_TREATMENT_END)
    post_period_end: int = POST_TREATMENT_END
    outcome_var: str = OUTCOME_VAR
    predictor_vars: tuple[str, ...] = tuple(PREDICTOR_VARIABLES)
    special_predictor_anchor_years: tuple[int, ...] = tuple(SPECIAL_PREDICTOR_YEARS)

    # Coverage and interpolation
    outcome_completeness_threshold: float = 0.8
    predictor_completeness_threshold: float = 0.8
    min_predictors_passing: int = 2
    interpolate_small_gaps: bool = True
    max_gap_to_interpolate: int = 3

    # Donor pool filters
    donor_include_ids: tuple[str, ...] = ()
    donor_exclude_ids: tuple[str, ...] = tuple(DONOR_EXCLUDE)
    donor_include_regions: tuple[str, ...] = ()
    donor_exclude_regions: tuple[str, ...] = ()
    donor_include_income_groups: tuple[str, ...] = ()
    donor_exclude_income_groups: tuple[str, ...] = ()
    remove_microstates: bool = True
    negligible_size_units: tuple[str, ...] = tuple(MICROSTATES)
    min_donor_pool_size: int = 10

    # Weight fitting
    v_optimizer: str = "Nelder-Mead"
    v_max_iter: int = 1000
    fit_timeout: float | None = None

    # Placebo inference
    placebo_prefit_filter_mode: str = "quantile"
    placebo_prefit_filter_value: float = 0.9
    placebo_max_n: int | None = None
    placebo_workers: int = 1
    in_time_placebo_year: int | None = 1970

    # Robustness checks
    run_leave_one_out: bool = True
    loo_top_n_donors: int = 5
    run_sensitivity_analysis: bool = False
    sensitivity_coverage_thresholds: tuple[float, ...] = (0.7, 0.75, 0.8, 0.85)
    check_donor_shocks: bool = True
    donor_shock_threshold: float = 2.0

    # Output
    end_year_exclude_2015_policy_change: bool = False
    output_dir: str = "scm_results"
    random_seed: int = RANDOM_SEED

    @property
    def pre_period_years(self) -> list[int]:
        return list(range(self.pre_period[0], self.pre_period[1] + 1))

    @property
    def analysis_years(self) -> list[int]:
        return list(range(self.pre_period[0], self.post_period_end + 1))

    def with_overrides(self, **overrides) -> "AnalysisConfig":
        """Return a validated copy with some options replaced."""
        return validate_config(replace(self, **_coerce(overrides)))

    def to_dict(self) -> dict:
        return asdict(self)


_FIELD_TYPES = {f.name: f.type for f in fields(AnalysisConfig)}


def _value_type(annotation):
    """Split an annotation into (is_sequence, element type)."""
    origin = get_origin(annotation)
    if origin is tuple:
        return True, get_args(annotation)[0]
    if origin is not None:
        # Optional scalar such as `int | None`
        args = [a for a in get_args(annotation) if a is not type(None)]
        return False, args[0]
    return False, annotation


def _cast(key: str, value, kind):
    """Convert one option value to `kind`, naming the option on failure."""
    if kind is bool:
        if not isinstance(value, bool):
            raise ConfigurationError(f"{key} expects true or false, got {value!r}")
        return value
    if kind not in (int, float, str) or (isinstance(value, kind) and not isinstance(value, bool)):
        return value
    try:
        cast = kind(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"{key} expects {kind.__name__} values, got {value!r}"
        ) from e
    if kind is int and isinstance(value, float) and cast != value:
        raise ConfigurationError(f"{key} expects int values, got {value!r}")
    return cast


def _coerce(values: dict) -> dict:
    """Normalise user-supplied values to the types AnalysisConfig stores."""
    unknown = sorted(set(values) - set(_FIELD_TYPES))
    if unknown:
        raise ConfigurationError(f"Unknown configuration option(s): {', '.join(unknown)}")

    coerced = {}
    for key, value in values.items():
        if value is not None:
            is_sequence, kind = _value_type(_FIELD_TYPES[key])
            if is_sequence:
                if isinstance(value, str):
                    value = [v.strip() for v in value.split(",") if v.strip()]
                elif not isinstance(value, (list, tuple)):
                    value = [value]
                value = tuple(_cast(key, v, kind) for v in value)
            else:
                value = _cast(key, value, kind)
        coerced[key] = value
    return coerced


def validate_config(config: AnalysisConfig) -> AnalysisConfig:
    """
    Check option combinations that can be rejected before touching data.

    Raises:
        ConfigurationError: naming the offending option and its value
    """
    if len(config.pre_period) != 2:
        raise ConfigurationError(
            f"pre_period must be (start, end), got {config.pre_period}"
        )
    start, end = config.pre_period
    if start > end:
        raise ConfigurationError(
            f"pre_period start ({start}) is after pre_period end ({end})"
        )
    if end >= config.treatment_period:
        raise ConfigurationError(
            f"pre_period end ({end}) must be strictly before "
            f"treatment_period ({config.treatment_period})"
        )
    if config.post_period_end < config.treatment_period:
        raise ConfigurationError(
            f"post_period_end ({config.post_period_end}) is before "
            f"treatment_period ({config.treatment_period})"
        )

    # Deferred: predictors imports this module's constants
    from .predictors import special_predictor_window

    anchors = config.special_predictor_anchor_years
    if anchors and not any(special_predictor_window(a, config.pre_period) for a in anchors):
        raise ConfigurationError(
            f"special_predictor_anchor_years {list(anchors)} all fall outside "
            f"pre_period {start}-{end} after windowing"
        )

    for name in ("outcome_completeness_threshold", "predictor_completeness_threshold"):
        value = getattr(config, name)
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError(f"{name} must be within [0, 1], got {value}")

    n_predictors = len(config.predictor_vars)
    if n_predictors == 0:
        if config.min_predictors_passing != 0:
            raise ConfigurationError(
                "min_predictors_passing must be 0 when no predictor_vars are configured"
            )
    elif not 1 <= config.min_predictors_passing <= n_predictors:
        raise ConfigurationError(
            f"min_predictors_passing must be between 1 and {n_predictors} "
            f"(number of predictors), got {config.min_predictors_passing}"
        )

    if config.max_gap_to_interpolate < 0:
        raise ConfigurationError(
            f"max_gap_to_interpolate must be >= 0, got {config.max_gap_to_interpolate}"
        )
    if config.min_donor_pool_size < 1:
        raise ConfigurationError(
            f"min_donor_pool_size must be >= 1, got {config.min_donor_pool_size}"
        )

    mode = config.placebo_prefit_filter_mode
    if mode not in PREFIT_FILTER_MODES:
        raise ConfigurationError(
            f"placebo_prefit_filter_mode must be one of {PREFIT_FILTER_MODES}, got {mode!r}"
        )
    value = config.placebo_prefit_filter_value
    if mode == "quantile" and not 0.0 < value <= 1.0:
        raise ConfigurationError(
            f"placebo_prefit_filter_value must be a quantile in (0, 1] for "
            f"quantile mode, got {value}"
        )
    if mode == "relative" and value <= 0:
        raise ConfigurationError(
            f"placebo_prefit_filter_value must be a positive multiple for "
            f"relative mode, got {value}"
        )

    if config.placebo_max_n is not None and config.placebo_max_n < 1:
        raise ConfigurationError(f"placebo_max_n must be >= 1, got {config.placebo_max_n}")
    if config.placebo_workers < 1:
        raise ConfigurationError(f"placebo_workers must be >= 1, got {config.placebo_workers}")
    if config.fit_timeout is not None and config.fit_timeout <= 0:
        raise ConfigurationError(f"fit_timeout must be positive, got {config.fit_timeout}")
    if config.v_max_iter < 1:
        raise ConfigurationError(f"v_max_iter must be >= 1, got {config.v_max_iter}")

    for threshold in config.sensitivity_coverage_thresholds:
        if not 0.0 <= threshold <= 1.0:
            raise ConfigurationError(
                f"sensitivity_coverage_thresholds must be within [0, 1], got {threshold}"
            )

    return config


def load_config(
    path: str | Path | None = None,
    overrides: dict | None = None,
) -> AnalysisConfig:
    """
    Build the run configuration: defaults, then YAML file, then overrides.

    Args:
        path: Optional YAML file with a mapping of option names to values
        overrides: Optional mapping (e.g. parsed command-line options)

    Returns:
        Validated, immutable AnalysisConfig
    """
    values = {}

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")
        with open(path, encoding="utf-8") as f:
            file_values = yaml.safe_load(f) or {}
        if not isinstance(file_values, dict):
            raise ConfigurationError(f"{path} must contain a mapping of options")
        values.update(file_values)

    if overrides:
        values.update(overrides)

    config = AnalysisConfig(**_coerce(values))

    if config.end_year_exclude_2015_policy_change:
        config = replace(config, post_period_end=2014)

    return validate_config(config)
