"""Timestamp normalization and calendar-month bounds

The wallet API has emitted ``createdAt`` both as ISO‑8601 strings and as raw
Unix timestamps (seconds on older records, milliseconds on newer ones).
:func:`parse_created_at` folds all of them into a timezone‑aware
``datetime`` and returns ``None`` for anything it cannot read, so one bad
record never aborts an aggregation pass.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional

import pandas as pd

from billing_recon.models import MonthWindow

# Logging
LOGGER = logging.getLogger(__name__)

# Digit-only values below this are seconds since the epoch, otherwise milliseconds
SECONDS_THRESHOLD = 10_000_000_000

_DIGITS = re.compile(r"^[0-9]+$")
# pandas reads these as the current clock
_CLOCK_KEYWORDS = frozenset({"now", "today"})
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_created_at(value: object, tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """
    Parse a ledger timestamp into an aware ``datetime``

    * ``None`` / blank → ``None``
    * all digits → Unix seconds (``< 10_000_000_000``) or milliseconds, UTC
    * anything else → ``pandas.to_datetime``; naive values are read as wall
      time in ``tz`` (the local zone when omitted)

    Parameters
    value : object
        Raw ``createdAt`` value, normally a string
    tz : tzinfo, optional
        Zone used for timestamps that carry no offset

    Returns
    datetime | None
        The instant, or ``None`` when the value is empty or unparseable
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    if _DIGITS.match(text):
        ts = int(text)
        millis = ts * 1000 if ts < SECONDS_THRESHOLD else ts
        try:
            return _EPOCH + timedelta(milliseconds=millis)
        except OverflowError:
            LOGGER.debug("Timestamp %s is out of range", text)
            return None

    if not text.isascii() or text.lower() in _CLOCK_KEYWORDS:
        LOGGER.debug("Unparseable createdAt value %r", text)
        return None

    parsed = pd.to_datetime(text, errors="coerce", format="mixed")
    if parsed is None or pd.isna(parsed):
        LOGGER.debug("Unparseable createdAt value %r", text)
        return None

    instant = parsed.to_pydatetime()
    if instant.tzinfo is None:
        return _attach_zone(instant, tz)
    return instant


def _attach_zone(wall: datetime, tz: Optional[tzinfo]) -> datetime:
    """Read a naive wall time in ``tz``, or in the local zone on that date."""
    if tz is None:
        return wall.astimezone()
    return wall.replace(tzinfo=tz)


def resolve_now(now: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> datetime:
    """Return ``now`` as an aware datetime in ``tz`` (or the local zone)."""
    if now is None:
        now = datetime.now(timezone.utc)
    if tz is None:
        # naive values are treated as local wall time by ``astimezone``
        return now.astimezone()
    if now.tzinfo is None:
        return now.replace(tzinfo=tz)
    return now.astimezone(tz)


def month_window(now: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> MonthWindow:
    """
    Inclusive bounds of the calendar month containing ``now``

    ``start`` is day 1 at 00:00:00.000 and ``end`` is the last day at
    23:59:59.999, both as wall time in ``tz`` (or in the local zone, with the
    offset in force on that date).  The last day is the day
    before the first of the following month, so month length and leap
    years need no special casing.
    """
    current = resolve_now(now, tz)
    # bounds are built as naive wall times so each gets the offset of its own date
    first = datetime(current.year, current.month, 1)
    first_of_next = (first + timedelta(days=32)).replace(day=1)
    last = (first_of_next - timedelta(days=1)).replace(hour=23, minute=59, second=59, microsecond=999000)
    return MonthWindow(start=_attach_zone(first, tz), end=_attach_zone(last, tz))
