"""
Date parsing utilities for the transform engine.

Values are parsed either with an explicit ``strptime`` format or, when no
format is given, through pandas inference with a day-first/month-first
heuristic for ambiguous numeric dates.
"""

import logging
import re
from datetime import datetime
from typing import Any, Optional

import pandas as pd

from relmap.core.config import settings

logger = logging.getLogger(__name__)

OUTPUT_FORMAT = "%Y-%m-%d %H:%M:%S"

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

_failure_stats: dict = {}


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
        logger.warning("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse warnings after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def _prefers_dayfirst(value: str) -> Optional[bool]:
    numeric_match = re.match(r'^\d{1,2}[/-]\d{1,2}[/-]\d{2,4}', value)
    if not numeric_match:
        return None

    parts = re.split(r'[/-]', numeric_match.group(0))
    first = int(parts[0])
    second = int(parts[1])

    if first > 12 and second <= 31:
        return True
    if second > 12 and first <= 12:
        return False
    return settings.date_default_dayfirst


def parse_flexible_date(
    value: Any,
    input_format: Optional[str] = None,
    *,
    log_context: Optional[str] = None,
    log_failures: bool = True,
) -> Optional[datetime]:
    """
    Parse a date value into a naive ``datetime``.

    Args:
        value: Date value (string, timestamp number, date or datetime)
        input_format: Optional ``strptime`` format; inference is used when omitted
        log_context: Label used to group failure logs

    Returns:
        Parsed datetime, or None when the value is empty or unparseable
    """
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None

    if isinstance(value, datetime):
        return value

    if isinstance(value, str):
        value = value.strip()
        if value == "":
            return None

    if input_format:
        try:
            return datetime.strptime(str(value), input_format)
        except ValueError as exc:
            if log_failures:
                _record_parse_failure(value, log_context, exc)
            return None

    parse_attempts = []

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        parse_attempts.append(("epoch", lambda v: pd.to_datetime(v, unit="s", errors="raise")))
    elif isinstance(value, str):
        dayfirst = _prefers_dayfirst(value)
        if dayfirst is not None:
            parse_attempts.append((
                "dayfirst" if dayfirst else "monthfirst",
                lambda v, df=dayfirst: pd.to_datetime(v, dayfirst=df, errors="raise"),
            ))
            parse_attempts.append((
                "alternate",
                lambda v, df=not dayfirst: pd.to_datetime(v, dayfirst=df, errors="raise"),
            ))

    parse_attempts.append(("default", lambda v: pd.to_datetime(v, errors="raise")))

    last_error = None
    for attempt_name, attempt in parse_attempts:
        try:
            parsed = attempt(value)
        except (ValueError, TypeError, OverflowError) as exc:
            last_error = exc
            continue
        if pd.isna(parsed):
            continue
        logger.debug("Parsed date '%s' using %s strategy", value, attempt_name)
        if parsed.tzinfo is not None:
            parsed = parsed.tz_convert("UTC").tz_localize(None)
        return parsed.to_pydatetime()

    if log_failures:
        _record_parse_failure(value, log_context, last_error or ValueError("Unable to determine format"))
    return None


def format_date(value: Any, input_format: Optional[str] = None, output_format: str = OUTPUT_FORMAT) -> Optional[str]:
    parsed = parse_flexible_date(value, input_format)
    if parsed is None:
        return None
    return parsed.strftime(output_format)
