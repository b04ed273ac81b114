"""The `(YYYY-MM-DD HH:MM)` token embedded in every rendered highlight.

Notes written by earlier versions carry the same token, so its shape must
not change. All formatting and parsing of it goes through this module.
"""

from __future__ import annotations

import re
from datetime import datetime, tzinfo

TOKEN_FORMAT = "%Y-%m-%d %H:%M"
TOKEN_PATTERN = re.compile(r"\((\d{4}-\d{2}-\d{2} \d{2}:\d{2})\)")


def format_timestamp(dt: datetime, tz: tzinfo | None = None) -> str:
    """Format `dt` in `tz` (system zone if None) as the bare token value."""
    return dt.astimezone(tz).strftime(TOKEN_FORMAT)


def format_token(dt: datetime, tz: tzinfo | None = None) -> str:
    """Format `dt` as the parenthesized token, e.g. `(2024-01-05 10:00)`."""
    return f"({format_timestamp(dt, tz)})"


def extract_token(fragment: str) -> str:
    """Return the first token value in `fragment`, or '' if there is none."""
    match = TOKEN_PATTERN.search(fragment)
    return match.group(1) if match else ""
