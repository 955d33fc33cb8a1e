from __future__ import annotations

import datetime as dt


class SystemClock:
    def now(self) -> dt.datetime:
        return dt.datetime.now(dt.timezone.utc)


class FixedClock:
    """Clock frozen at a given instant; tests move it with ``advance``."""

    def __init__(self, instant: dt.datetime) -> None:
        self.instant = _as_utc(instant)

    def now(self) -> dt.datetime:
        return self.instant

    def set(self, instant: dt.datetime) -> None:
        self.instant = _as_utc(instant)

    def advance(self, delta: dt.timedelta) -> dt.datetime:
        self.instant = self.instant + delta
        return self.instant


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)
