"""
Price window definitions.
Single source of truth for the reference windows a trigger may ask for.
"""

DEFAULT_WINDOW = "24h"

VALID_WINDOWS = {"24h": "24h", "7d": "7d", "30d": "30d"}


def normalize_window(window) -> str:
    """Return a valid window, falling back to the default for unknown values."""
    if isinstance(window, str) and window in VALID_WINDOWS:
        return window
    return DEFAULT_WINDOW
