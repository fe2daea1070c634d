"""
Data loading utilities for the One-Child Policy analysis.
Fetches World Development Indicators from the World Bank API.
"""

from pathlib import Path

import pandas as pd
import wbgapi as wb

from .config import (
    INCOME_COL,
    NAME_COL,
    POST_TREATMENT_END,
    PRE_TREATMENT_START,
    REGION_COL,
    TIME_COL,
    UNIT_COL,
    WB_INDICATORS,
)
from .logger import logger


def fetch_country_metadata() -> pd.DataFrame:
    """
    Country names and category tags, aggregates removed.

    Returns:
        DataFrame with country, country_name, region, income
    """
    meta = wb.economy.DataFrame(skipAggs=True).reset_index()
    meta = meta.rename(
        columns={
            "id": UNIT_COL,
            "name": NAME_COL,
            "region": REGION_COL,
            "incomeLevel": INCOME_COL,
        }
    )
    if "aggregate" in meta.columns:
        meta = meta[~meta["aggregate"].astype(bool)]
    return meta[[UNIT_COL, NAME_COL, REGION_COL, INCOME_COL]]


def fetch_world_bank_data(
    indicators: dict[str, str] | None = None,
    countries: list[str] | str = "all",
    start_year: int = PRE_TREATMENT_START,
    end_year: int = POST_TREATMENT_END,
) -> pd.DataFrame:
    """
    Fetch World Bank indicators for specified countries.

    Args:
        indicators: Mapping of column name to WDI code
        countries: List of ISO3 country codes, or "all"
        start_year: Start year for data
        end_year: End year for data

    Returns:
        Long DataFrame with country, year and one column per indicator
    """
    if indicators is None:
        indicators = WB_INDICATORS

    all_data = []

    for var_name, indicator_code in indicators.items():
        df = wb.data.DataFrame(
            indicator_code,
            economy=countries,
            time=range(start_year, end_year + 1),
        )

        # Reshape from wide to long format
        # wbgapi returns country as index, years as columns (YR1960, YR1961, etc.)
        df = df.reset_index()
        df = df.melt(id_vars=["economy"], var_name=TIME_COL, value_name=var_name)
        df.columns = [UNIT_COL, TIME_COL, var_name]

        # Convert year from 'YR1960' format to int
        df[TIME_COL] = df[TIME_COL].str.replace("YR", "").astype(int)

        all_data.append(df)
        logger.info(f"Fetched {var_name} ({indicator_code}): {len(df)} obs")

    # Merge all indicators
    result = all_data[0]
    for df in all_data[1:]:
        result = result.merge(df, on=[TIME_COL, UNIT_COL], how="outer")

    return result.sort_values([UNIT_COL, TIME_COL]).reset_index(drop=True)


def assemble_panel_data(
    indicators: dict[str, str] | None = None,
    start_year: int = PRE_TREATMENT_START,
    end_year: int = POST_TREATMENT_END,
    save_path: str | Path | None = None,
) -> pd.DataFrame:
    """
    Assemble complete panel dataset for SCM analysis.

    Args:
        indicators: Mapping of column name to WDI code
        start_year: First year to download
        end_year: Last year to download
        save_path: Path to save assembled data

    Returns:
        Complete panel DataFrame (aggregates removed, metadata attached)
    """
    logger.info("Downloading data from World Bank WDI...")
    df = fetch_world_bank_data(indicators, start_year=start_year, end_year=end_year)

    meta = fetch_country_metadata()
    df = df.merge(meta, on=UNIT_COL, how="inner")
    if df.empty:
        raise ValueError("World Bank API returned no country-level data")

    # Sort and clean
    df = df.sort_values([UNIT_COL, TIME_COL]).reset_index(drop=True)

    # Save if path provided
    if save_path is not None:
        save_path = Path(save_path)
        save_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(save_path, index=False)
        logger.info(f"Data saved to {save_path}")

    logger.info(f"Panel data assembled: {len(df)} observations")
    logger.info(f"Countries: {df[UNIT_COL].nunique()}")
    logger.info(f"Years: {df[TIME_COL].min()} - {df[TIME_COL].max()}")

    return df


def load_or_fetch_data(
    data_path: str | Path,
    force_refresh: bool = False,
    start_year: int = PRE_TREATMENT_START,
    end_year: int = POST_TREATMENT_END,
) -> pd.DataFrame:
    """
    Load data from cache or fetch from sources.

    Args:
        data_path: CSV cache location
        force_refresh: If True, fetch fresh data even if cache exists
        start_year: First year to download
        end_year: Last year to download

    Returns:
        Panel data with all countries and variables
    """
    data_path = Path(data_path)

    if data_path.exists() and not force_refresh:
        logger.info(f"Loading cached data from {data_path}")
        return pd.read_csv(data_path)

    return assemble_panel_data(start_year=start_year, end_year=end_year, save_path=data_path)
