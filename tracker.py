"""
Activity tracker facade: wires gateway -> engines -> store -> dispatcher for the exposed operations
(streak evaluation, repository failure detection, workflow metrics, the scheduled sweep, the weekly digest
and security alerts).
"""
import hmac
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from errors import ConcurrentUpdate, GitFortError, MalformedData, Unauthorized, UnknownUser, UpstreamError
from normalize.models import (
    FailureEvent,
    NotificationEvent,
    SecurityAlertPayload,
    StreakRiskPayload,
    UserProfile,
    WeeklyDigestPayload,
    SECURITY_ALERT,
    WEEKLY_DIGEST,
)
from scoring.streaks import StreakEngine, daily_counts, local_now, resolve_timezone, streak_summary
from scoring.workflows import annotate_failure, calculate_metrics, detect_failures
from settings import Settings

logger = logging.getLogger(__name__)


def split_repository(full_name: str) -> Tuple[str, str]:
    """'owner/name' -> ('owner', 'name'); raises ValueError otherwise."""
    owner, sep, repo = (full_name or '').strip().partition('/')
    if not sep or not owner or not repo or '/' in repo:
        raise ValueError(f"Expected OWNER/REPO, got {full_name!r}")
    return owner, repo


class ActivityTracker:
    def __init__(self, gateway, store, dispatcher, settings: Optional[Settings] = None, engine: Optional[StreakEngine] = None):
        self.gateway = gateway
        self.store = store
        self.dispatcher = dispatcher
        self.settings = settings or Settings()
        self.engine = engine or StreakEngine.from_settings(self.settings)

    def _user(self, user_id: str) -> UserProfile:
        user = self.store.get_user(user_id)
        if user is None:
            raise UnknownUser(f"unknown user {user_id!r}")
        return user

    def evaluate_user_streak(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Fetch the calendar, recompute the streak, persist it with compare-and-swap and send a
        streak-risk email on the first transition into risk today.

        Gateway errors surface before anything is written. A failed delivery does not undo the record;
        while the streak stays at risk and today's alert has not gone out, later evaluations send it again.
        """
        now = now or datetime.now(timezone.utc)
        user = self._user(user_id)
        tz = resolve_timezone(user.timezone, self.settings.default_timezone)
        today = local_now(now, tz).date()
        since = today - timedelta(days=self.settings.calendar_lookback_days)
        calendar = self.gateway.fetch_contribution_calendar(user.username, since, today)

        attempts = max(1, int(self.settings.cas_retries))
        for attempt in range(1, attempts + 1):
            previous = self.store.get_streak_record(user_id)
            record, notification_needed = self.engine.evaluate(user_id, calendar, now, user.timezone, previous)
            try:
                record = self.store.put_streak_record(record, previous.version if previous else 0)
                break
            except ConcurrentUpdate:
                if attempt == attempts:
                    raise
                logger.warning("Streak record for %s changed concurrently, recomputing (attempt %d/%d)", user_id, attempt, attempts)

        risk = self.engine.analyze_risk(record, now, user.timezone)
        delivery = None
        if record.is_at_risk:
            payload = StreakRiskPayload(record.current_streak, record.longest_streak, today, risk['hours_remaining'])
            event = NotificationEvent.streak_risk(user_id, payload, now)
            if not notification_needed and not self.dispatcher.has_delivered(event, now):
                logger.info("Streak alert for %s was not delivered earlier today, sending again", user_id)
                notification_needed = True
        if notification_needed:
            result = self.dispatcher.dispatch(
                event,
                now=now,
                extra={'risk_level': risk['level'], 'recommendations': risk['recommendations']},
            )
            delivery = result.to_dict()
        return {
            'streak': streak_summary(record, risk),
            'notification_sent': bool(delivery and delivery['status'] == 'sent'),
            'delivery': delivery,
        }

    def detect_repository_failures(self, owner: str, repo: str, lookback_days: Optional[int] = None, now: Optional[datetime] = None) -> List[FailureEvent]:
        """Failure events for the window; active events are annotated with the failed job, step and cause."""
        lookback = lookback_days if lookback_days is not None else self.settings.workflow_lookback_days
        runs = self.gateway.fetch_recent_workflow_runs(owner, repo, lookback, now=now)
        events = detect_failures(owner, repo, runs, lookback, now=now, flip_threshold=self.settings.flaky_flip_threshold)
        for event in events:
            if not event.active:
                continue
            try:
                jobs = self.gateway.fetch_workflow_run_jobs(owner, repo, event.first_failure_run.id)
            except (UpstreamError, MalformedData) as ex:
                # the event is still reported, only without a cause
                logger.warning("Could not analyze run %s in %s/%s (%s): %s", event.first_failure_run.id, owner, repo, ex.kind, ex)
                continue
            annotate_failure(event, jobs)
        return events

    def get_workflow_metrics(self, owner: str, repo: str, lookback_days: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        lookback = lookback_days if lookback_days is not None else self.settings.workflow_lookback_days
        runs = self.gateway.fetch_recent_workflow_runs(owner, repo, lookback, now=now)
        return calculate_metrics(owner, repo, runs, lookback, now=now)

    def _check_secret(self, secret: Optional[str]):
        expected = self.settings.cron_secret or ''
        if not expected or not secret or not hmac.compare_digest(str(secret).encode('utf-8'), expected.encode('utf-8')):
            raise Unauthorized('invalid cron secret')

    def _notify_build_failures(self, user: UserProfile, events: List[FailureEvent], now: datetime) -> int:
        sent = 0
        for event in events:
            if not event.active:
                continue
            result = self.dispatcher.dispatch(NotificationEvent.build_failure(user.user_id, event, now), now=now)
            if result.sent:
                sent += 1
        return sent

    def _sweep_user(self, user: UserProfile, now: datetime) -> Dict[str, Any]:
        entry: Dict[str, Any] = {'user_id': user.user_id, 'success': True, 'updated': False, 'notifications_sent': 0, 'failures': []}
        try:
            outcome = self.evaluate_user_streak(user.user_id, now)
            entry['updated'] = True
            entry['streak'] = outcome['streak']
            if outcome['notification_sent']:
                entry['notifications_sent'] += 1
            for full_name in user.repositories:
                try:
                    owner, repo = split_repository(full_name)
                except ValueError as ex:
                    logger.warning("Skipping watched repository for %s: %s", user.user_id, ex)
                    continue
                events = self.detect_repository_failures(owner, repo, now=now)
                entry['failures'].extend(e.to_dict() for e in events if e.active)
                entry['notifications_sent'] += self._notify_build_failures(user, events, now)
        except GitFortError as ex:
            logger.error("Sweep failed for %s (%s): %s", user.user_id, ex.kind, ex)
            entry.update(success=False, error=str(ex), error_kind=ex.kind, retryable=ex.retryable)
        except Exception as ex:
            logger.exception("Unexpected sweep failure for %s", user.user_id)
            entry.update(success=False, error=str(ex), error_kind='internal', retryable=False)
        return entry

    def run_scheduled_sweep(self, secret: Optional[str], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Evaluate every known user on a bounded worker pool; one user's failure never stops the rest."""
        self._check_secret(secret)
        now = now or datetime.now(timezone.utc)
        users = self.store.list_users()
        workers = max(1, int(self.settings.sweep_max_workers))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._sweep_user, user, now) for user in users]
            results = [f.result() for f in futures]
        claims_pruned = self.dispatcher.prune_claims(self.settings.failure_retention_days, now)

        errors = [{k: r.get(k) for k in ('user_id', 'error', 'error_kind', 'retryable')} for r in results if not r['success']]
        summary = {
            'processed': len(results),
            'successful': sum(1 for r in results if r['success']),
            'updated': sum(1 for r in results if r['updated']),
            'notifications_sent': sum(r['notifications_sent'] for r in results),
            'errors': errors,
            'results': results,
            'claims_pruned': claims_pruned,
        }
        logger.info("Sweep processed %d users: %d ok, %d failed, %d notifications", summary['processed'], summary['successful'], len(errors), summary['notifications_sent'])
        return summary

    def send_weekly_digest(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Summarize the last 7 local days for one user and dispatch a weekly_digest email."""
        now = now or datetime.now(timezone.utc)
        user = self._user(user_id)
        tz = resolve_timezone(user.timezone, self.settings.default_timezone)
        today = local_now(now, tz).date()
        week_start = today - timedelta(days=6)
        counts = daily_counts(self.gateway.fetch_contribution_calendar(user.username, week_start, today), today)
        commits = sum(c for d, c in counts.items() if d >= week_start)

        cicd_runs = 0
        active_repos = 0
        for full_name in user.repositories:
            try:
                owner, repo = split_repository(full_name)
            except ValueError as ex:
                logger.warning("Skipping watched repository for %s: %s", user_id, ex)
                continue
            runs = self.gateway.fetch_recent_workflow_runs(owner, repo, 7, now=now)
            cicd_runs += len(runs)
            if runs:
                active_repos += 1

        record = self.store.get_streak_record(user_id)
        payload = WeeklyDigestPayload(
            commits=commits,
            active_repos=active_repos,
            current_streak=record.current_streak if record else 0,
            cicd_runs=cicd_runs,
        )
        result = self.dispatcher.dispatch(NotificationEvent(WEEKLY_DIGEST, user_id, payload, now), now=now)
        return {'digest': payload.to_dict(), 'delivery': result.to_dict()}


    def send_security_alert(self, user_id: str, repository: str, risk_score: float, vulnerabilities: List[Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Dispatch a security_alert for findings produced by an external scanner.
        risk_score is on a 0-10 scale; an empty finding list sends nothing.
        """
        self._user(user_id)
        split_repository(repository)
        score = float(risk_score)
        if not 0.0 <= score <= 10.0:
            raise ValueError(f"risk_score must be within 0-10, got {risk_score!r}")
        if not vulnerabilities:
            logger.info("No vulnerabilities reported for %s, no security alert sent", repository)
            return {'alert': None, 'delivery': None}
        payload = SecurityAlertPayload(repository, score, vulnerabilities)
        result = self.dispatcher.dispatch(NotificationEvent(SECURITY_ALERT, user_id, payload, now), now=now)
        return {'alert': payload.to_dict(), 'delivery': result.to_dict()}


__all__ = ["ActivityTracker", "split_repository"]
