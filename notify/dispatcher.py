"""
Notification dispatcher: preference gating, per-day dedup, rendering, delivery and failure bookkeeping.

A streak_risk or build_failure notification is sent at most once per (user, type, natural key, day):
the dispatcher claims that row in the store before sending and releases it again if delivery fails.
Failed deliveries are logged (never retried synchronously) and resolved by the next successful send.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from errors import DeliveryFailure
from normalize.models import DeliveryFailureLog, DeliveryResult, NotificationEvent, QuietHours, STREAK_RISK, BUILD_FAILURE
from report.renderer import render_notification
from scoring.streaks import local_now, resolve_timezone
from settings import parse_hhmm

logger = logging.getLogger(__name__)

DEDUP_TYPES = (STREAK_RISK, BUILD_FAILURE)
RECENT_FAILURES = 10


def in_quiet_hours(quiet: Optional[QuietHours], now: datetime, user_timezone: Optional[str] = None) -> bool:
    """True when `now` falls inside the quiet window; windows may wrap past midnight (22:00-08:00).

    The window is read in quiet.timezone, or in `user_timezone` when the preferences name none.
    """
    if quiet is None or not quiet.enabled:
        return False
    current = local_now(now, resolve_timezone(quiet.timezone, user_timezone or 'UTC'))
    minute = current.hour * 60 + current.minute
    start, end = parse_hhmm(quiet.start), parse_hhmm(quiet.end)
    if start == end:
        return False
    if start < end:
        return start <= minute < end
    return minute >= start or minute < end


class NotificationDispatcher:
    def __init__(self, store, transport, dashboard_url: str = '', default_timezone: str = 'UTC'):
        self.store = store
        self.transport = transport
        self.dashboard_url = dashboard_url
        self.default_timezone = default_timezone

    @classmethod
    def from_settings(cls, store, transport, settings) -> 'NotificationDispatcher':
        return cls(store, transport, dashboard_url=settings.dashboard_url, default_timezone=settings.default_timezone)

    def _dedup_day(self, event: NotificationEvent, user, now: datetime) -> str:
        # streak risk is a local-day condition; build failures are keyed on the UTC day
        if event.type == STREAK_RISK:
            tz = resolve_timezone(user.timezone if user else None, self.default_timezone)
            return local_now(now, tz).date().isoformat()
        return local_now(now, timezone.utc).date().isoformat()

    def has_delivered(self, event: NotificationEvent, now: Optional[datetime] = None) -> bool:
        """True when the dedup slot this event would claim today is already taken."""
        if event.type not in DEDUP_TYPES:
            return False
        now = now or datetime.now(timezone.utc)
        user = self.store.get_user(event.user_id)
        return self.store.has_delivery(event.user_id, event.type, event.payload.natural_key(), self._dedup_day(event, user, now))

    def dispatch(self, event: NotificationEvent, now: Optional[datetime] = None, extra: Optional[Dict[str, Any]] = None) -> DeliveryResult:
        """
        Deliver one notification. Returns sent, suppressed (with a reason) or failed (with the error).
        Storage errors propagate; transport errors become a failed result plus a failure log entry.
        """
        now = now or datetime.now(timezone.utc)
        user = self.store.get_user(event.user_id)
        if user is None or not user.email:
            logger.warning("No recipient for %s notification to %s", event.type, event.user_id)
            return DeliveryResult(DeliveryResult.SUPPRESSED, reason='no_recipient')

        prefs = self.store.get_or_create_preferences(event.user_id)
        if not prefs.allows(event.type):
            return DeliveryResult(DeliveryResult.SUPPRESSED, reason='disabled')
        if prefs.email_frequency == 'never':
            return DeliveryResult(DeliveryResult.SUPPRESSED, reason='frequency_never')
        if in_quiet_hours(prefs.quiet_hours, now, user.timezone or self.default_timezone):
            logger.info("Quiet hours: holding %s notification for %s", event.type, event.user_id)
            return DeliveryResult(DeliveryResult.SUPPRESSED, reason='quiet_hours')

        subject, text, html = render_notification(event, user, self.dashboard_url, extra)

        claim = None
        if event.type in DEDUP_TYPES:
            claim = (event.user_id, event.type, event.payload.natural_key(), self._dedup_day(event, user, now))
            if not self.store.claim_delivery(*claim, claimed_at=now):
                logger.info("Duplicate %s notification for %s (%s) suppressed", event.type, event.user_id, claim[2])
                return DeliveryResult(DeliveryResult.SUPPRESSED, reason='duplicate')

        try:
            self.transport.send(user.email, subject, text, html=html)
        except DeliveryFailure as ex:
            if claim is not None:
                self.store.release_delivery(*claim)
            self.store.append_failure(DeliveryFailureLog(
                user_id=event.user_id,
                notification_type=event.type,
                error=str(ex),
                occurred_at=now,
                failure_type=ex.failure_type,
            ))
            logger.error("Delivery of %s to %s failed (%s): %s", event.type, event.user_id, ex.failure_type, ex)
            return DeliveryResult(DeliveryResult.FAILED, error=str(ex))

        resolved = self.store.resolve_failures(event.user_id, event.type)
        if resolved:
            logger.info("Resolved %d earlier %s failure(s) for %s", resolved, event.type, event.user_id)
        logger.info("Sent %s notification to %s", event.type, event.user_id)
        return DeliveryResult(DeliveryResult.SENT)

    def get_failure_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Counts by status, type and age (last_24h / last_7d / older, disjoint) plus the most recent entries."""
        now = now or datetime.now(timezone.utc)
        logs = self.store.list_failures()
        day_ago = now - timedelta(hours=24)
        week_ago = now - timedelta(days=7)

        by_type: Dict[str, Dict[str, int]] = {}
        by_age = {'last_24h': 0, 'last_7d': 0, 'older': 0}
        for log in logs:
            entry = by_type.setdefault(log.notification_type, {'total': 0, 'unresolved': 0, 'resolved': 0})
            entry['total'] += 1
            entry['resolved' if log.resolved else 'unresolved'] += 1
            if log.occurred_at >= day_ago:
                by_age['last_24h'] += 1
            elif log.occurred_at >= week_ago:
                by_age['last_7d'] += 1
            else:
                by_age['older'] += 1

        resolved = sum(1 for log in logs if log.resolved)
        return {
            'total': len(logs),
            'unresolved': len(logs) - resolved,
            'resolved': resolved,
            'by_type': by_type,
            'by_age': by_age,
            'recent': [log.to_dict() for log in logs[:RECENT_FAILURES]],
        }

    def clear_old_failures(self, older_than_days: int, now: Optional[datetime] = None) -> int:
        """Delete failure log entries older than the given number of days; an entry exactly that old is kept.
        Dedup claims past the same window are pruned too.
        """
        if older_than_days < 0:
            raise ValueError('older_than_days must be non-negative')
        now = now or datetime.now(timezone.utc)
        removed = self.store.delete_failures_older_than(now - timedelta(days=older_than_days))
        logger.info("Cleared %d delivery failure log entries older than %d days", removed, older_than_days)
        self.prune_claims(older_than_days, now)
        return removed

    def prune_claims(self, older_than_days: int, now: Optional[datetime] = None) -> int:
        """Delete dedup claims for days older than the retention window. Returns rows deleted."""
        now = now or datetime.now(timezone.utc)
        # one extra day so a claim on a local day behind UTC is never dropped while still current
        cutoff = (now - timedelta(days=max(0, older_than_days) + 1)).date().isoformat()
        removed = self.store.delete_claims_before(cutoff)
        if removed:
            logger.info("Pruned %d delivery claims before %s", removed, cutoff)
        return removed


__all__ = ["NotificationDispatcher", "in_quiet_hours", "DEDUP_TYPES"]
