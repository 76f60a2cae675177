"""
Shared backend utility helpers.
"""

from typing import Any


def clean_text(value: Any) -> str:
    """Normalize arbitrary values into trimmed strings."""
    if value is None:
        return ""
    return str(value).strip()
