"""Working-hours and daily-quota checks applied before every delivery."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_TIMEZONE = "Europe/Berlin"
DEFAULT_DAILY_LIMIT = 100

REASON_DISCONNECTED = "account_disconnected"
REASON_OUTSIDE_HOURS = "outside_hours"
REASON_QUOTA = "quota_exceeded"

WEEKDAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


@dataclass(frozen=True)
class SendDecision:
    """Outcome of :meth:`SendGuard.can_send`."""

    allowed: bool
    reason: Optional[str] = None
    retry_at: Optional[int] = None


@dataclass(frozen=True)
class WorkingWindow:
    weekday: int
    start: int  # minutes since local midnight
    end: int

    @property
    def crosses_midnight(self) -> bool:
        return self.end <= self.start


def _parse_hhmm(value: Any) -> int:
    text = str(value).strip()
    hours, _, minutes = text.partition(":")
    h, m = int(hours), int(minutes or 0)
    if not (0 <= h <= 24 and 0 <= m < 60) or h * 60 + m > 1440:
        raise ValueError(f"Invalid time of day '{value}'")
    return h * 60 + m


def _parse_weekday(value: Any) -> int:
    if isinstance(value, str) and not value.strip().isdigit():
        key = value.strip().lower()
        for idx, name in enumerate(WEEKDAY_NAMES):
            if name.startswith(key[:3]):
                return idx
        raise ValueError(f"Invalid weekday '{value}'")
    day = int(value)
    if not 0 <= day <= 6:
        raise ValueError(f"Invalid weekday '{value}'")
    return day


def parse_windows(raw: Any) -> List[WorkingWindow]:
    """Normalise stored working windows.

    Accepts a list of ``{"weekday", "start", "end"}`` mappings (weekday as
    ``0`` = Monday or a day name) or the dashboard ``office_hours`` shape
    ``{"enabled": bool, "schedule": {"monday": {"enabled", "start", "end"}}}``.
    A disabled ``office_hours`` block yields no windows.
    """
    if not raw:
        return []
    if isinstance(raw, dict):
        if not raw.get("enabled", True):
            return []
        schedule = raw.get("schedule") or {}
        items = [
            {"weekday": day, "start": hours.get("start"), "end": hours.get("end")}
            for day, hours in schedule.items()
            if isinstance(hours, dict) and hours.get("enabled", True)
        ]
    else:
        items = [item for item in raw if isinstance(item, dict) and item.get("enabled", True)]
    windows = [
        WorkingWindow(_parse_weekday(item["weekday"]), _parse_hhmm(item["start"]), _parse_hhmm(item["end"]))
        for item in items
    ]
    return sorted(windows, key=lambda w: (w.weekday, w.start))


def resolve_zone(name: Optional[str], fallback: str = DEFAULT_TIMEZONE) -> ZoneInfo:
    """Return a :class:`ZoneInfo`, falling back when ``name`` is empty or unknown."""
    try:
        return ZoneInfo(name or fallback)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(fallback)


def _local(dt: datetime, tz: ZoneInfo) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(tz)


def _at(day: date, minutes: int, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time()).replace(tzinfo=tz) + timedelta(minutes=minutes)


class SendGuard:
    """Decide whether a job may be delivered right now.

    The guard is a pure function of the agent's working windows, the account's
    quota counters and its connection state; it never writes anything.
    """

    def __init__(
        self,
        *,
        open_when_unconfigured: bool = True,
        default_daily_limit: int = DEFAULT_DAILY_LIMIT,
        default_timezone: str = DEFAULT_TIMEZONE,
    ):
        self.open_when_unconfigured = bool(open_when_unconfigured)
        self.default_daily_limit = max(0, int(default_daily_limit))
        self.default_timezone = default_timezone

    # ----------------------------------------------------------------- helpers
    def _agent_zone(self, agent: Optional[Dict[str, Any]]) -> ZoneInfo:
        return resolve_zone((agent or {}).get("timezone"), self.default_timezone)

    def _account_zone(self, account: Dict[str, Any], agent: Optional[Dict[str, Any]] = None) -> ZoneInfo:
        name = account.get("timezone") or (agent or {}).get("timezone")
        return resolve_zone(name, self.default_timezone)

    def quota_day_for(self, account: Dict[str, Any], now: datetime, agent: Optional[Dict[str, Any]] = None) -> str:
        """Return the local date key the quota counter of ``account`` belongs to at ``now``."""
        return _local(now, self._account_zone(account, agent)).date().isoformat()

    def daily_limit_for(self, account: Dict[str, Any]) -> int:
        value = account.get("daily_limit")
        if value is None or int(value) < 0:
            return self.default_daily_limit
        return int(value)

    def sent_today(self, account: Dict[str, Any], now: datetime, agent: Optional[Dict[str, Any]] = None) -> int:
        """Counter value for the current local day (0 when it belongs to an earlier day)."""
        if account.get("quota_day") != self.quota_day_for(account, now, agent):
            return 0
        return int(account.get("messages_sent_today") or 0)

    @staticmethod
    def is_within(windows: List[WorkingWindow], local_now: datetime) -> bool:
        minute = local_now.hour * 60 + local_now.minute
        weekday = local_now.weekday()
        for window in windows:
            if not window.crosses_midnight:
                if weekday == window.weekday and window.start <= minute < window.end:
                    return True
                continue
            if weekday == window.weekday and minute >= window.start:
                return True
            if weekday == (window.weekday + 1) % 7 and minute < window.end:
                return True
        return False

    @staticmethod
    def next_opening(windows: List[WorkingWindow], local_now: datetime) -> Optional[datetime]:
        """Return the next window start strictly after ``local_now`` within seven days."""
        tz = local_now.tzinfo
        best: Optional[datetime] = None
        for offset in range(0, 8):
            day = local_now.date() + timedelta(days=offset)
            for window in windows:
                if window.weekday != day.weekday():
                    continue
                candidate = _at(day, window.start, tz)
                if candidate > local_now and (best is None or candidate < best):
                    best = candidate
            if best is not None:
                return best
        return best

    # ------------------------------------------------------------------ public
    def can_send(self, agent: Optional[Dict[str, Any]], account: Dict[str, Any], now: datetime) -> SendDecision:
        """Return whether a message for ``agent`` through ``account`` may go out at ``now``."""
        if account.get("status") != "connected":
            return SendDecision(False, REASON_DISCONNECTED)

        windows = parse_windows((agent or {}).get("working_windows"))
        if windows:
            local_now = _local(now, self._agent_zone(agent))
            if not self.is_within(windows, local_now):
                opening = self.next_opening(windows, local_now)
                retry_at = int(opening.timestamp()) if opening else None
                return SendDecision(False, REASON_OUTSIDE_HOURS, retry_at)
        elif not self.open_when_unconfigured:
            return SendDecision(False, REASON_OUTSIDE_HOURS)

        if self.sent_today(account, now, agent) >= self.daily_limit_for(account):
            local_now = _local(now, self._account_zone(account, agent))
            midnight = _at(local_now.date() + timedelta(days=1), 0, local_now.tzinfo)
            return SendDecision(False, REASON_QUOTA, int(midnight.timestamp()))

        return SendDecision(True)
