"""Presentation-time formatting of metric values."""

from analytics.definitions import MetricFormat


def format_metric_value(value: float, fmt: MetricFormat | str) -> str:
    """Format a computed value for display. Computation never rounds."""
    fmt = MetricFormat(fmt)
    if fmt is MetricFormat.CURRENCY:
        return f"${value:,.2f}"
    if fmt is MetricFormat.PERCENTAGE:
        return f"{value * 100:.1f}%"
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.3f}".rstrip("0").rstrip(".")
