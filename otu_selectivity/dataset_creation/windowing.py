"""
windowing.py
------------
Time-window and season filtering of the environmental series.

Positions are tagged with their study region once (`tag_positions`), and the
tag mapping drives every later split, so the east/west sub-tables can be
truncated to their own sampling date.
"""

import logging
from typing import Dict, Iterable, List, Optional, Union

import pandas as pd

from otu_selectivity.constants import REGION_MARKERS, REGIONS, SEASON_MONTHS, SEASONS
from otu_selectivity.errors import EmptyFilterResult, InvalidDateRange, RegionTagError
from otu_selectivity.utils import parse_datetime_column, parse_timestamp

logger = logging.getLogger(__name__)

DateLike = Union[str, pd.Timestamp, None]


def tag_positions(
    columns: Iterable[str],
    date_col: str,
    regions: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """
    Assign every position column to a region.

    Args:
        columns: Column names of the environmental table.
        date_col: Name of the datetime column (skipped).
        regions: Optional explicit {position: region} mapping. Positions not
            listed fall back to the name marker.

    Returns:
        Ordered {position: region} mapping.

    A name must contain exactly one of the markers "E" / "W" unless the
    position is listed in `regions`.
    """
    regions = regions or {}
    tags = {}
    for col in columns:
        if col == date_col:
            continue
        name = str(col)
        if name in regions:
            region = regions[name]
            if region not in REGIONS:
                raise RegionTagError(f"Region '{region}' given for position '{name}' is not one of {REGIONS}")
            tags[name] = region
            continue
        found = {REGION_MARKERS[m] for m in REGION_MARKERS if m in name}
        if len(found) != 1:
            raise RegionTagError(
                f"Cannot assign position '{name}' to a region: it must contain exactly one of "
                f"{sorted(REGION_MARKERS)} (pass an explicit regions mapping otherwise)"
            )
        tags[name] = found.pop()
    return tags


def positions_in_region(tags: Dict[str, str], region: str) -> List[str]:
    return [pos for pos, reg in tags.items() if reg == region]


def _is_unset(value: DateLike) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def resolve_window(
    sampling_date: DateLike,
    span: float,
    start_date: DateLike = None,
    end_date: DateLike = None,
):
    """
    Resolve the [start, end] interval of a window.

    The end defaults to the sampling date and must not lie after it; the
    start defaults to end - span hours.
    """
    sampling_ts = parse_timestamp(sampling_date, what="sampling date")

    if _is_unset(end_date):
        end = sampling_ts
    else:
        end = parse_timestamp(end_date, what="end date")
        if end > sampling_ts:
            raise InvalidDateRange(
                f"The provided end date '{end_date}' is after the sampling date '{sampling_date}'"
            )

    if _is_unset(start_date):
        start = end - pd.Timedelta(hours=span)
    else:
        start = parse_timestamp(start_date, what="start date")

    if start > end:
        raise InvalidDateRange(f"The start date '{start}' lies after the end date '{end}'")
    return start, end


def window(
    df: pd.DataFrame,
    date_col: str,
    sampling_date: DateLike,
    span: float,
    start_date: DateLike = None,
    end_date: DateLike = None,
) -> pd.DataFrame:
    """
    Truncate a table with a datetime column to the window before sampling.

    Parameters:
        df: Table with a parsed datetime column.
        date_col: Name of the datetime column.
        sampling_date: Date at which the samples were taken.
        span: Hours before the end date to include (ignored if start_date is set).
        start_date: Optional explicit start, 'dd.mm.yyyy HH:MM'.
        end_date: Optional explicit end, not later than the sampling date.

    Returns:
        Rows with start <= timestamp <= end (a copy).
    """
    start, end = resolve_window(sampling_date, span, start_date, end_date)
    logger.info(f"Including values between {start} and {end}.")
    timestamps = df[date_col]
    mask = (timestamps >= start) & (timestamps <= end)
    return df.loc[mask].copy()


def in_season(timestamp, season: str) -> bool:
    """True if the timestamp's calendar month belongs to the season."""
    if season not in SEASON_MONTHS:
        raise ValueError(f"Unknown season '{season}'. Expected one of {SEASONS}")
    return pd.Timestamp(timestamp).month in SEASON_MONTHS[season]


def filter_season(df: pd.DataFrame, date_col: str, season: str) -> pd.DataFrame:
    """Keep the rows whose month lies in the season ("all" keeps every row)."""
    if season not in SEASON_MONTHS:
        raise ValueError(f"Unknown season '{season}'. Expected one of {SEASONS}")
    months = df[date_col].dt.month
    return df.loc[months.isin(SEASON_MONTHS[season])].copy()


def prepare_env_data(
    df: pd.DataFrame,
    date_col: str,
    sampling_dates: Dict[str, str],
    span: float,
    start_date: DateLike = None,
    end_date: DateLike = None,
    season: str = "all",
    tags: Optional[Dict[str, str]] = None,
) -> Dict[str, pd.DataFrame]:
    """
    Window and season-filter each region against its own sampling date.

    Parameters:
        df: Environmental table of one variable (datetime + position columns).
        date_col: Name of the datetime column (strings are parsed here).
        sampling_dates: {"east": "...", "west": "..."} sampling timestamps.
        span: Hours before the sampling date.
        start_date / end_date: Optional explicit bounds applied to both regions.
        season: Meteorological season to keep.
        tags: Position -> region mapping from `tag_positions`.

    Returns:
        {region: DataFrame(date_col + that region's positions)}
    """
    if tags is None:
        tags = tag_positions(df.columns, date_col)
    df = df.copy()
    df[date_col] = parse_datetime_column(df[date_col], what=f"'{date_col}' column")

    truncated = {}
    for region in REGIONS:
        positions = positions_in_region(tags, region)
        if not positions:
            continue
        if region not in sampling_dates:
            raise InvalidDateRange(f"No sampling date given for region '{region}'")
        sub = df[[date_col] + positions]
        sub = window(sub, date_col, sampling_dates[region], span, start_date, end_date)
        sub = filter_season(sub, date_col, season)
        if len(sub) < 1:
            raise EmptyFilterResult(
                f"There are no hours within the selected span and season: {season} "
                f"(region {region}, sampling date {sampling_dates[region]}, span {span} h)"
            )
        truncated[region] = sub.reset_index(drop=True)
    if not truncated:
        raise EmptyFilterResult("No position columns found in the environmental table")
    return truncated
