"""Text formatting helpers for notification copy."""

from typing import Any


def truncate(text: str, max_length: int = 1024) -> str:
    """Truncate text to max_length, adding ellipsis if needed."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def pluralize(count: int, singular: str, plural: str | None = None) -> str:
    """'1 day', '3 days'."""
    word = singular if count == 1 else (plural or f"{singular}s")
    return f"{count} {word}"


def format_currency(value: float | int | None, currency: str = "USD", decimals: int = 2) -> str:
    """Format an amount for payment notifications."""
    if value is None:
        return "N/A"
    if currency.upper() == "USD":
        return f"${value:,.{decimals}f}"
    return f"{value:,.{decimals}f} {currency.upper()}"


def titleize(value: str | None) -> str:
    """'premium' -> 'Premium', 'market_news' -> 'Market News'."""
    if not value:
        return ""
    return value.replace("_", " ").replace("-", " ").title()


def first_present(payload: dict[str, Any], *keys: str, default: Any = None) -> Any:
    """First non-empty value among ``keys`` in ``payload``."""
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return default
