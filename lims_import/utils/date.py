"""
Date parsing utilities for legacy export formats.

Two modes are supported: strict parsing against an operator-supplied pattern
such as ``DD.MM.YYYY`` and flexible parsing that lets pandas infer the format,
resolving day/month ambiguity the way Polish laboratory exports write dates.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

import pandas as pd

from lims_import.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

_failure_stats: dict = {}

_PATTERN_TOKENS = {
    "YYYY": "%Y",
    "YY": "%y",
    "MM": "%m",
    "DD": "%d",
    "HH": "%H",
    "mm": "%M",
    "ss": "%S",
}
_TOKEN_RE = re.compile(r"YYYY|YY|MM|DD|HH|mm|ss")

# Workbook cells arrive as ISO timestamps regardless of how the sheet displays them
_ISO_CELL_RE = re.compile(r"^\d{4}-\d{2}-\d{2}([ T]\d{2}:\d{2}(:\d{2})?)?$")


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """
    Collect failure stats and emit limited logs (sampled warnings + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.debug("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse messages after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def pattern_to_strptime(date_format: str) -> str:
    """Translate ``DD.MM.YYYY`` style patterns into ``strptime`` directives."""
    return _TOKEN_RE.sub(lambda m: _PATTERN_TOKENS[m.group(0)], date_format)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date_with_format(value: Any, date_format: str) -> Optional[datetime]:
    """
    Parse ``value`` strictly against ``date_format``.

    A trailing time component is tolerated. Returns None when the value does
    not match.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    directive = pattern_to_strptime(date_format)
    for candidate in (directive, f"{directive} %H:%M", f"{directive} %H:%M:%S"):
        try:
            return _as_utc(datetime.strptime(text, candidate))
        except ValueError:
            continue

    if _ISO_CELL_RE.match(text):
        try:
            return _as_utc(datetime.fromisoformat(text))
        except ValueError:
            pass

    _record_parse_failure(value, date_format, ValueError(f"does not match {date_format}"))
    return None


def parse_flexible_date(value: Any, *, log_context: Optional[str] = None, log_failures: bool = True) -> Optional[datetime]:
    """
    Parse a date value from various formats and return a UTC datetime.

    Supports formats:
    - ISO 8601: "2024-09-04T23:09:18Z"
    - DD.MM.YYYY: "20.10.2025"
    - DD/MM/YYYY or MM/DD/YYYY: "20/10/2025", "10/20/2025"
    - And many others via pandas inference

    Returns:
        Timezone-aware datetime or None if parsing fails
    """
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None

    if isinstance(value, str):
        value = value.strip()
        if value == "":
            return None

    parse_attempts = []
    dt = None

    if isinstance(value, str):
        numeric_match = re.match(r'^(\d{1,2})[./-](\d{1,2})[./-]\d{2,4}', value)
        if numeric_match:
            first = int(numeric_match.group(1))
            second = int(numeric_match.group(2))

            # Decide whether day-first is more plausible
            if first > 12 and second <= 12:
                dayfirst_preferred = True
            elif second > 12 and first <= 12:
                dayfirst_preferred = False
            else:
                dayfirst_preferred = settings.date_default_dayfirst

            parse_attempts.append(
                lambda v, df=dayfirst_preferred: pd.to_datetime(v, utc=True, dayfirst=df, errors='raise')
            )
            # Always try the alternate interpretation as a fallback
            parse_attempts.append(
                lambda v, df=not dayfirst_preferred: pd.to_datetime(v, utc=True, dayfirst=df, errors='raise')
            )

    parse_attempts.append(lambda v: pd.to_datetime(v, utc=True, errors='raise'))

    last_error = None
    for attempt in parse_attempts:
        try:
            dt = attempt(value)
            break
        except (ValueError, TypeError, OverflowError) as exc:
            last_error = exc
            continue

    if dt is None or pd.isna(dt):
        if log_failures:
            _record_parse_failure(value, log_context, last_error or ValueError("Unable to determine format"))
        return None

    return dt.to_pydatetime()


def parse_date(value: Any, date_format: Optional[str] = None) -> Optional[datetime]:
    """Strict when a pattern is configured, flexible otherwise."""
    if date_format:
        return parse_date_with_format(value, date_format)
    return parse_flexible_date(value, log_context="import")
