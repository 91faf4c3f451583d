"""
Formatting helpers for console output
"""


def format_number(num: int) -> str:
    """Format number with thousands separator."""
    return f"{num:,}"


def format_percentage(part: float, whole: float) -> str:
    """Format part/whole as a percentage with one decimal place."""
    if not whole:
        return "0.0%"
    return f"{part / whole * 100:.1f}%"


def format_bytes(bytes_val: float) -> str:
    """Format bytes to human readable format."""
    if bytes_val < 1024:
        return f"{bytes_val:.0f} B"
    elif bytes_val < 1024 * 1024:
        return f"{bytes_val/1024:.1f} KB"
    elif bytes_val < 1024 * 1024 * 1024:
        return f"{bytes_val/(1024*1024):.1f} MB"
    else:
        return f"{bytes_val/(1024*1024*1024):.2f} GB"


def format_cost(amount: float, currency: str = 'USD') -> str:
    symbol = '$' if currency == 'USD' else f"{currency} "
    return f"{symbol}{amount:,.2f}"


def confidence_color(confidence: float) -> str:
    """Rich color for a classification confidence."""
    if confidence >= 0.8:
        return "green"
    elif confidence >= 0.65:
        return "yellow"
    else:
        return "red"


def truncate(text: str, width: int = 80) -> str:
    if len(text) <= width:
        return text
    return text[:width - 3] + "..."

