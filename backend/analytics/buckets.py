"""Daily bucketing of timestamped values into zero-filled local-day series."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime
from typing import Any

import pandas as pd

from analytics.date_range import DateRange

SUPPORTED_AGGREGATIONS = ("sum", "mean", "nunique")


def bucket_daily(
    records: Iterable[tuple[datetime, Any]],
    date_range: DateRange,
    tz_name: str = "UTC",
    how: str = "sum",
) -> list[tuple[date, float]]:
    """
    Aggregate (naive-UTC timestamp, value) records per local calendar day.

    Returns exactly one point per day of `date_range`, in order; days with
    no records are 0.0. Records whose value is None are ignored.
    """
    if how not in SUPPORTED_AGGREGATIONS:
        raise ValueError(f"Unsupported aggregation: {how}")

    days = date_range.days()
    frame = pd.DataFrame(
        [(ts, value) for ts, value in records if value is not None],
        columns=["timestamp", "value"],
    )
    if frame.empty:
        return [(day, 0.0) for day in days]

    local = pd.to_datetime(frame["timestamp"]).dt.tz_localize("UTC").dt.tz_convert(tz_name)
    frame["day"] = local.dt.date
    if how != "nunique":
        frame["value"] = pd.to_numeric(frame["value"])

    grouped = frame.groupby("day")["value"].agg(how).reindex(days, fill_value=0)
    return [(day, float(value)) for day, value in zip(days, grouped.fillna(0).tolist())]
