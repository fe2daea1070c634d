"""Pytest fixtures for One-Child Policy synthetic control tests."""

import numpy as np
import pandas as pd
import pytest

from one_child_scm.config import AnalysisConfig, load_config
from one_child_scm.interpolation import interpolate_panel

# (region, income) tags in World Bank codes
COUNTRY_TAGS = {
    "CHN": ("EAS", "UMC"),
    "IND": ("SAS", "LMC"),
    "PAK": ("SAS", "LMC"),
    "BGD": ("SAS", "LMC"),
    "IDN": ("EAS", "LMC"),
    "KOR": ("EAS", "HIC"),
    "THA": ("EAS", "UMC"),
    "PHL": ("EAS", "LMC"),
    "TWN": ("EAS", "HIC"),
    "BRA": ("LCN", "UMC"),
    "MEX": ("LCN", "UMC"),
    "COL": ("LCN", "UMC"),
    "EGY": ("MEA", "LMC"),
    "IRN": ("MEA", "UMC"),
    "MAR": ("MEA", "LMC"),
    "TUR": ("ECS", "UMC"),
    "MLT": ("MEA", "HIC"),
}


@pytest.fixture
def sample_panel_data():
    """
    Create a fertility panel for testing, 1960-1990.

    China's fertility drops sharply after 1980. PAK misses its outcome for
    1960-1969 and IND misses GDP for 1972-1973 (interpolable).
    """
    np.random.seed(42)

    years = list(range(1960, 1991))

    data = []
    for country, (region, income) in COUNTRY_TAGS.items():
        base_tfr = 6.0 if country == "CHN" else np.random.uniform(4.5, 7.0)
        decline = 0.045 if country == "CHN" else np.random.uniform(0.01, 0.05)
        base_gdp = 300 if country == "CHN" else np.random.uniform(200, 3000)
        base_life = 50 if country == "CHN" else np.random.uniform(40, 65)
        base_urban = 16 if country == "CHN" else np.random.uniform(10, 50)

        for i, year in enumerate(years):
            tfr = base_tfr * np.exp(-decline * max(year - 1965, 0))
            # Policy effect
            if country == "CHN" and year >= 1980:
                tfr -= 0.08 * (year - 1979)

            data.append({
                "country": country,
                "country_name": country.title(),
                "region": region,
                "income": income,
                "year": year,
                "fertility_rate": tfr + np.random.normal(0, 0.05),
                "gdp_per_capita": base_gdp * 1.03**i + np.random.normal(0, 20),
                "life_expectancy": base_life + 0.4 * i + np.random.normal(0, 0.3),
                "urban_population": base_urban + 0.3 * i + np.random.normal(0, 0.5),
            })

    df = pd.DataFrame(data)
    df.loc[(df["country"] == "PAK") & (df["year"] < 1970), "fertility_rate"] = np.nan
    df.loc[(df["country"] == "IND") & df["year"].isin([1972, 1973]), "gdp_per_capita"] = np.nan
    return df


@pytest.fixture
def test_config():
    """Small, fast configuration over the sample panel."""
    return load_config(
        overrides={
            "post_period_end": 1990,
            "predictor_vars": ["gdp_per_capita", "life_expectancy"],
            "special_predictor_anchor_years": [1965, 1975],
            "v_max_iter": 30,
            "placebo_max_n": 4,
            "loo_top_n_donors": 2,
        }
    )


@pytest.fixture
def interpolated_panel(sample_panel_data, test_config):
    """Sample panel after gap interpolation."""
    columns = [test_config.outcome_var] + list(test_config.predictor_vars)
    return interpolate_panel(sample_panel_data, columns, test_config.max_gap_to_interpolate)


@pytest.fixture
def two_donor_panel():
    """
    Treated unit between two donors that each miss its trajectory alone.

    Treated predictor 11 sits between donor A (10) and donor B (12).
    """
    pre_years = [1976, 1977, 1978, 1979]
    outcomes = {
        "TRT": [1.5, 1.4, 1.3, 1.2, 1.0, 0.9],
        "A": [1.6, 1.5, 1.3, 1.1, 1.1, 1.0],
        "B": [1.4, 1.3, 1.2, 1.0, 1.0, 0.9],
    }
    predictor = {"TRT": 11.0, "A": 10.0, "B": 12.0}

    data = []
    for country, values in outcomes.items():
        for year, value in zip(pre_years + [1980, 1981], values):
            data.append({
                "country": country,
                "year": year,
                "fertility_rate": value,
                "x": predictor[country],
            })
    return pd.DataFrame(data)


@pytest.fixture
def simple_matrices():
    """Create simple matrices for testing optimization."""
    np.random.seed(42)

    # K predictors, J donors
    K, J = 5, 4

    X0 = np.random.randn(K, J)  # Control units
    X1 = np.random.randn(K)     # Treated unit
    V = np.eye(K)               # Identity weights

    return X0, X1, V


@pytest.fixture
def outcome_matrices():
    """Create outcome matrices for RMSPE testing."""
    np.random.seed(42)

    T, J = 10, 4

    Y0 = np.random.randn(T, J) * 0.5 + 4   # Control outcomes
    Y1 = np.random.randn(T) * 0.5 + 4      # Treated outcome
    W = np.array([0.3, 0.3, 0.2, 0.2])     # Weights

    return Y0, Y1, W


@pytest.fixture
def default_config():
    return AnalysisConfig()
