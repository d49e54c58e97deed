"""
Streak engine: derive current/longest streak and at-risk state from a contribution calendar.

All day boundaries are evaluated in the user's local timezone (pytz). A streak is anchored
on today when today already has contributions, otherwise on yesterday; a zero day or a
missing date ends it. Risk notifications are edge-triggered: only the first transition
into risk on a given local day asks for a notification.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple, Any

import pytz

from normalize.models import ContributionDay, StreakRecord
from settings import parse_hhmm

logger = logging.getLogger(__name__)

RISK_SAFE = 'safe'
RISK_WARNING = 'warning'
RISK_DANGER = 'danger'
RISK_CRITICAL = 'critical'

# hours into the local day after which each level applies
RISK_THRESHOLDS = (
    (8.0, RISK_SAFE, 1, 'Your streak is safe'),
    (16.0, RISK_WARNING, 2, 'Consider making a contribution soon'),
    (20.0, RISK_DANGER, 3, 'Your streak is at risk'),
)


def resolve_timezone(name: Optional[str], default: str = 'UTC'):
    """Return a pytz timezone; unknown names fall back to `default` (and then UTC) with a warning."""
    for candidate in (name, default):
        if not candidate:
            continue
        try:
            return pytz.timezone(candidate)
        except pytz.UnknownTimeZoneError:
            logger.warning("Unknown timezone %r, falling back", candidate)
    return pytz.utc


def local_now(now: Optional[datetime], tz) -> datetime:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(tz)


def hours_until_day_end(now_local: datetime, tz) -> float:
    tomorrow = now_local.date() + timedelta(days=1)
    day_end = tz.localize(datetime.combine(tomorrow, time.min))
    return max(0.0, (day_end - now_local).total_seconds() / 3600.0)


def daily_counts(calendar: Iterable[ContributionDay], today: Optional[date] = None) -> Dict[date, int]:
    """Collapse a calendar into {date: count}; duplicates keep the larger count, days after `today` are dropped."""
    counts: Dict[date, int] = {}
    for day in calendar or []:
        if today is not None and day.date > today:
            logger.debug("Ignoring future calendar day %s", day.date)
            continue
        counts[day.date] = max(counts.get(day.date, 0), day.count)
    return counts


def longest_run(counts: Dict[date, int]) -> int:
    """Longest run of consecutive dates with a positive count."""
    best = run = 0
    prev: Optional[date] = None
    for d in sorted(d for d, c in counts.items() if c > 0):
        run = run + 1 if prev is not None and d - prev == timedelta(days=1) else 1
        best = max(best, run)
        prev = d
    return best


def current_run(counts: Dict[date, int], today: date) -> int:
    yesterday = today - timedelta(days=1)
    if counts.get(today, 0) > 0:
        anchor = today
    elif counts.get(yesterday, 0) > 0:
        anchor = yesterday
    else:
        return 0
    length = 0
    d = anchor
    while counts.get(d, 0) > 0:
        length += 1
        d -= timedelta(days=1)
    return length


class StreakEngine:
    """Pure streak computation; persistence and delivery are the caller's concern."""

    def __init__(self, risk_cutoff: str = '18:00', default_timezone: str = 'UTC'):
        self.risk_cutoff = risk_cutoff
        self.cutoff_minutes = parse_hhmm(risk_cutoff)
        self.default_timezone = default_timezone

    @classmethod
    def from_settings(cls, settings) -> 'StreakEngine':
        return cls(risk_cutoff=settings.risk_cutoff, default_timezone=settings.default_timezone)

    def evaluate(self, user_id: str, calendar: List[ContributionDay], now: Optional[datetime] = None, timezone_name: Optional[str] = None, previous: Optional[StreakRecord] = None) -> Tuple[StreakRecord, bool]:
        """
        Compute the new StreakRecord and whether a streak-risk notification is needed.

        The returned record carries the previous version so the caller can compare-and-swap it.
        """
        tz = resolve_timezone(timezone_name, self.default_timezone)
        now_local = local_now(now, tz)
        today = now_local.date()
        counts = daily_counts(calendar, today)

        current = current_run(counts, today)
        contributed = [d for d, c in counts.items() if c > 0]
        last_contribution = max(contributed) if contributed else (previous.last_contribution_date if previous else None)

        minutes_now = now_local.hour * 60 + now_local.minute
        at_risk = current > 0 and counts.get(today, 0) == 0 and minutes_now >= self.cutoff_minutes

        if previous is None:
            longest = max(longest_run(counts), current)
        else:
            longest = max(previous.longest_streak, current)

        notification_needed = at_risk and not self._already_at_risk_today(previous, tz, today)

        record = StreakRecord(
            user_id=user_id,
            current_streak=current,
            longest_streak=longest,
            last_contribution_date=last_contribution,
            last_evaluated_at=now_local.astimezone(timezone.utc),
            is_at_risk=at_risk,
            version=previous.version if previous else 0,
        )
        logger.info("Evaluated streak for %s: current=%d longest=%d at_risk=%s notify=%s", user_id, current, longest, at_risk, notification_needed)
        return record, notification_needed

    @staticmethod
    def _already_at_risk_today(previous: Optional[StreakRecord], tz, today: date) -> bool:
        if previous is None or not previous.is_at_risk or previous.last_evaluated_at is None:
            return False
        return previous.last_evaluated_at.astimezone(tz).date() == today

    def analyze_risk(self, record: StreakRecord, now: Optional[datetime] = None, timezone_name: Optional[str] = None) -> Dict[str, Any]:
        """Grade how close the streak is to breaking, with hours left in the local day and suggestions."""
        tz = resolve_timezone(timezone_name, self.default_timezone)
        now_local = local_now(now, tz)
        today = now_local.date()
        remaining = hours_until_day_end(now_local, tz)

        if record.current_streak == 0 or record.last_contribution_date == today:
            level, severity, message = RISK_SAFE, 1, ('Your streak is safe' if record.current_streak else 'No active streak')
        else:
            elapsed = 24.0 - remaining
            level, severity, message = RISK_CRITICAL, 4, 'Your streak will end soon'
            for limit, lvl, sev, msg in RISK_THRESHOLDS:
                if elapsed <= limit:
                    level, severity, message = lvl, sev, msg
                    break

        return {
            'level': level,
            'severity': severity,
            'message': message,
            'hours_remaining': round(remaining, 1),
            'recommendations': _recommendations(level, record.current_streak, remaining),
        }


def _recommendations(level: str, current_streak: int, hours_remaining: float) -> List[str]:
    if level == RISK_SAFE:
        recs = ['Keep up the great work!']
        if current_streak > 0:
            recs.append(f"You're on a {current_streak}-day streak")
        return recs
    if level == RISK_WARNING:
        return ['Plan your next contribution', 'Set a reminder to contribute today']
    if level == RISK_DANGER:
        return ['Make a contribution as soon as possible', 'Even a small commit counts']
    recs = ['Make any contribution immediately', 'Quick fixes: update comments, fix typos, or add documentation']
    if hours_remaining > 0:
        recs.append(f"You have approximately {round(hours_remaining)} hours left")
    return recs


def streak_summary(record: StreakRecord, risk: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    summary = record.to_dict()
    summary['version'] = record.version
    if risk is not None:
        summary['risk'] = risk
    return summary


__all__ = ["StreakEngine", "resolve_timezone", "daily_counts", "longest_run", "current_run", "streak_summary"]
