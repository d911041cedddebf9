"""Parser and predicate for "when is rolling allowed".

Grammar::

    window := clause (";" clause)*
    clause := days " " HH:MM "-" HH:MM [" " tz]
    days   := day ["-" day] ("," day ["-" day])*

Day tokens are M, Tu, W, Th, F, Sa, Su or Mon..Sun, case-insensitive. The
optional tz is an IANA zone name and defaults to UTC. An end time of 00:00
means midnight at the end of the day. An empty window allows rolling at any
time. Example: "M-F 09:00-17:00 America/Los_Angeles; Sa 10:00-12:00".
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_DAYS = {
    "m": 0,
    "mon": 0,
    "tu": 1,
    "tue": 1,
    "w": 2,
    "wed": 2,
    "th": 3,
    "thu": 3,
    "f": 4,
    "fri": 4,
    "sa": 5,
    "sat": 5,
    "su": 6,
    "sun": 6,
}

_TIME_RANGE_RE = re.compile(r"^(\d{1,2}):(\d{2})-(\d{1,2}):(\d{2})$")


def _parse_day(token: str) -> int:
    try:
        return _DAYS[token.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown day {token!r}")


def _parse_days(text: str) -> frozenset[int]:
    days: set[int] = set()
    for part in text.split(","):
        if not part:
            raise ValueError(f"Empty day in {text!r}")
        if "-" in part:
            start_tok, _, end_tok = part.partition("-")
            start, end = _parse_day(start_tok), _parse_day(end_tok)
            # Ranges may wrap around the week, e.g. Sa-M.
            d = start
            days.add(d)
            while d != end:
                d = (d + 1) % 7
                days.add(d)
        else:
            days.add(_parse_day(part))
    return frozenset(days)


def _parse_time(hh: str, mm: str) -> time:
    h, m = int(hh), int(mm)
    if h == 24 and m == 0:
        return time.max
    if not (0 <= h < 24 and 0 <= m < 60):
        raise ValueError(f"Invalid time {hh}:{mm}")
    return time(h, m)


@dataclass(frozen=True)
class DayWindow:
    days: frozenset[int]
    start: time
    end: time
    tz: ZoneInfo | timezone = timezone.utc

    def contains(self, t: datetime) -> bool:
        local = t.astimezone(self.tz)
        if local.weekday() not in self.days:
            return False
        return self.start <= local.time().replace(tzinfo=None) < self.end


@dataclass(frozen=True)
class TimeWindow:
    windows: tuple[DayWindow, ...] = field(default_factory=tuple)

    @classmethod
    def parse(cls, text: str) -> TimeWindow:
        text = (text or "").strip()
        if not text:
            return cls()
        windows = []
        for clause in text.split(";"):
            fields = clause.split()
            if len(fields) not in (2, 3):
                raise ValueError(f"Expected 'days HH:MM-HH:MM [tz]', got {clause.strip()!r}")
            days = _parse_days(fields[0])
            m = _TIME_RANGE_RE.match(fields[1])
            if not m:
                raise ValueError(f"Invalid time range {fields[1]!r}")
            start = _parse_time(m.group(1), m.group(2))
            end = _parse_time(m.group(3), m.group(4))
            if end == time(0, 0):
                end = time.max
            if end <= start:
                raise ValueError(f"Time range {fields[1]!r} ends before it starts")
            tz: ZoneInfo | timezone = timezone.utc
            if len(fields) == 3:
                try:
                    tz = ZoneInfo(fields[2])
                except (ZoneInfoNotFoundError, ValueError):
                    raise ValueError(f"Unknown time zone {fields[2]!r}")
            windows.append(DayWindow(days=days, start=start, end=end, tz=tz))
        return cls(windows=tuple(windows))

    def contains(self, t: datetime) -> bool:
        if not self.windows:
            return True
        if t.tzinfo is None:
            t = t.replace(tzinfo=timezone.utc)
        return any(w.contains(t) for w in self.windows)
