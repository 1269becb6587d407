# draws.py
"""
Draw schedule and number rules.

The schedule is a fixed weekday set at a fixed local hour (Mon/Wed/Sat 22:59
America/New_York by default). All returned datetimes are aware UTC.
"""

from __future__ import annotations
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional, Union

import pytz

from config import settings, Settings
from errors import InvalidNumbersError, InvalidRequestError


def validate_numbers(numbers, cfg: Settings = settings, label: str = "Numbers") -> List[int]:
    """
    Exactly NUMBERS_COUNT distinct integers within [NUMBERS_MIN, NUMBERS_MAX].
    Returns them sorted; raises InvalidNumbersError otherwise.
    """
    n, lo, hi = cfg.NUMBERS_COUNT, cfg.NUMBERS_MIN, cfg.NUMBERS_MAX
    if not isinstance(numbers, (list, tuple)):
        raise InvalidNumbersError(f"{label} must be an array of {n} numbers")
    if len(numbers) != n:
        raise InvalidNumbersError(f"Must provide exactly {n} numbers")
    out = []
    for v in numbers:
        # bool is an int subclass; reject it along with floats like 3.5
        if isinstance(v, bool) or not isinstance(v, int):
            raise InvalidNumbersError(f"{label} must be integers")
        if v < lo or v > hi:
            raise InvalidNumbersError(f"{label} must be between {lo} and {hi}")
        out.append(int(v))
    if len(set(out)) != n:
        raise InvalidNumbersError(f"{label} must be unique")
    return sorted(out)


def count_matches(bet_numbers: Iterable[int], winning_numbers: Iterable[int]) -> int:
    """Size of the intersection; order-independent."""
    return len(set(bet_numbers) & set(winning_numbers))


def _tz(cfg: Settings):
    return pytz.timezone(cfg.DRAW_TIMEZONE)


def next_draw_date(now: Optional[datetime] = None, cfg: Settings = settings) -> datetime:
    """
    Next scheduled draw slot strictly after `now`.
    A draw day whose cutoff has already passed is skipped, so the result is
    the following qualifying day.
    """
    tz = _tz(cfg)
    now_utc = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    local_now = now_utc.astimezone(tz)
    days = cfg.draw_weekdays
    for offset in range(0, 8):
        day = local_now.date() + timedelta(days=offset)
        if day.weekday() not in days:
            continue
        slot = tz.localize(datetime.combine(day, time(cfg.DRAW_HOUR, cfg.DRAW_MINUTE)))
        if slot > local_now:
            return slot.astimezone(timezone.utc)
    raise RuntimeError("draw schedule has no qualifying day")  # unreachable with a non-empty DRAW_DAYS


def next_draw_info(now: Optional[datetime] = None, cfg: Settings = settings) -> dict:
    now_utc = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    nxt = next_draw_date(now_utc, cfg)
    local_now = now_utc.astimezone(_tz(cfg)).date()
    local_draw = nxt.astimezone(_tz(cfg)).date()
    return {
        "nextDrawDate": nxt,
        "daysUntilDraw": (local_draw - local_now).days,
        "hoursUntilDraw": int((nxt - now_utc).total_seconds() // 3600),
        "drawSchedule": cfg.draw_schedule_label,
    }


def resolve_draw_date(value: Union[str, date, datetime], cfg: Settings = settings) -> datetime:
    """
    Normalize a submitted draw date to aware UTC.
    A bare date ("2026-10-17") means the end of that day in the draw timezone,
    so it covers the round drawn that evening.
    """
    tz = _tz(cfg)
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        return tz.localize(datetime.combine(value, time(23, 59, 59))).astimezone(timezone.utc)
    else:
        s = str(value or "").strip()
        if not s:
            raise InvalidRequestError("drawDate is required")
        if len(s) == 10:
            try:
                d = date.fromisoformat(s)
            except ValueError:
                raise InvalidRequestError(f"Invalid drawDate: {s}")
            return tz.localize(datetime.combine(d, time(23, 59, 59))).astimezone(timezone.utc)
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            raise InvalidRequestError(f"Invalid drawDate: {value}")
    if dt.tzinfo is None:
        dt = tz.localize(dt)
    return dt.astimezone(timezone.utc).replace(microsecond=0)
