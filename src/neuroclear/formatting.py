"""Formatting utilities for consistent output across CLI and TUI."""

from neuroclear.models import ProcessRecord


def format_mb(memory_mb: float) -> str:
    """Format a memory amount for table cells.

    Returns:
        "512 MB" below 1 GB, "1.5 GB" at or above.
    """
    if memory_mb >= 1024:
        return f"{memory_mb / 1024:.1f} GB"
    return f"{memory_mb:,.0f} MB"


def format_gb(memory_gb: float) -> str:
    return f"{memory_gb:.1f} GB"


def format_category(record: ProcessRecord) -> str:
    """Category label, or "Unscanned" before classification."""
    if record.category is None:
        return "Unscanned"
    return record.category.value


def format_risk(record: ProcessRecord) -> str:
    """Risk label, or "-" when unknown."""
    if record.risk_level is None:
        return "-"
    return record.risk_level.value


def format_safe(record: ProcessRecord) -> str:
    if record.safe_to_kill is None:
        return "-"
    return "yes" if record.safe_to_kill else "no"


def truncate(text: str, length: int) -> str:
    """Shorten text to ``length`` characters with a trailing ellipsis."""
    if length < 2 or len(text) <= length:
        return text
    return text[: length - 1] + "…"


def gauge_level(percent: float, elevated: float, critical: float) -> str:
    """Bucket memory usage into "normal", "elevated" or "critical".

    Args:
        percent: Used memory as a percentage of capacity
        elevated: Threshold (inclusive) for "elevated"
        critical: Threshold (inclusive) for "critical"
    """
    if percent >= critical:
        return "critical"
    if percent >= elevated:
        return "elevated"
    return "normal"


def render_gauge(percent: float, width: int = 20) -> str:
    """Render a fixed-width text bar for a percentage (clamped to 0-100)."""
    percent = max(0.0, min(percent, 100.0))
    filled = round(width * percent / 100)
    return "█" * filled + "░" * (width - filled)
