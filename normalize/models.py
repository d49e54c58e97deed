"""
Unified data models for contribution calendars, workflow runs, streak state and notifications.
"""

from datetime import date, datetime, timezone
from typing import List, Optional, Dict, Any

SEVERITY_NEW = 'new-failure'
SEVERITY_RECURRING = 'recurring-failure'
SEVERITY_FLAKY = 'flaky'

STREAK_RISK = 'streak_risk'
BUILD_FAILURE = 'build_failure'
WEEKLY_DIGEST = 'weekly_digest'
SECURITY_ALERT = 'security_alert'
NOTIFICATION_TYPES = (STREAK_RISK, BUILD_FAILURE, WEEKLY_DIGEST, SECURITY_ALERT)

EMAIL_FREQUENCIES = ('immediate', 'daily', 'weekly', 'never')


def to_iso(value: Optional[Any]) -> Optional[str]:
    """Serialize a date/datetime to ISO text; aware datetimes are normalized to UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return value.isoformat()


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO-8601 text (GitHub uses a trailing 'Z') into an aware UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class ContributionDay:
    """
    One day of a contribution calendar.
    """
    __slots__ = ('date', 'count')

    def __init__(self, date: date, count: int):
        if count < 0:
            raise ValueError(f"contribution count must be non-negative, got {count}")
        object.__setattr__(self, 'date', date)
        object.__setattr__(self, 'count', int(count))

    def __setattr__(self, name, value):
        raise AttributeError('ContributionDay is immutable')

    def __eq__(self, other):
        return isinstance(other, ContributionDay) and (self.date, self.count) == (other.date, other.count)

    def __hash__(self):
        return hash((self.date, self.count))

    def __repr__(self):
        return f"ContributionDay({self.date.isoformat()}, {self.count})"


class StreakRecord:
    """
    Persisted per-user streak state. `version` is the compare-and-swap counter (0 = never stored).
    """
    def __init__(self, user_id: str, current_streak: int = 0, longest_streak: int = 0, last_contribution_date: Optional[date] = None, last_evaluated_at: Optional[datetime] = None, is_at_risk: bool = False, version: int = 0):
        if current_streak < 0 or longest_streak < 0:
            raise ValueError('streak lengths must be non-negative')
        if longest_streak < current_streak:
            raise ValueError(f"longest_streak ({longest_streak}) < current_streak ({current_streak})")
        if current_streak == 0 and is_at_risk:
            raise ValueError('a zero-length streak cannot be at risk')
        self.user_id = user_id
        self.current_streak = current_streak
        self.longest_streak = longest_streak
        self.last_contribution_date = last_contribution_date
        self.last_evaluated_at = last_evaluated_at
        self.is_at_risk = is_at_risk
        self.version = version

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'current_streak': self.current_streak,
            'longest_streak': self.longest_streak,
            'last_contribution_date': to_iso(self.last_contribution_date),
            'last_evaluated_at': to_iso(self.last_evaluated_at),
            'is_at_risk': self.is_at_risk,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], version: int = 0) -> 'StreakRecord':
        return cls(
            user_id=data['user_id'],
            current_streak=int(data.get('current_streak', 0)),
            longest_streak=int(data.get('longest_streak', 0)),
            last_contribution_date=parse_date(data.get('last_contribution_date')),
            last_evaluated_at=parse_datetime(data.get('last_evaluated_at')),
            is_at_risk=bool(data.get('is_at_risk', False)),
            version=version,
        )

    def __repr__(self):
        return (f"StreakRecord(user_id={self.user_id!r}, current={self.current_streak}, longest={self.longest_streak}, "
                f"at_risk={self.is_at_risk}, version={self.version})")


class WorkflowRun:
    """
    Read-only snapshot of a GitHub Actions run. `workflow_id` identifies the workflow definition.
    """
    def __init__(self, id: int, repository: str, workflow_id: Any, workflow_name: str, status: str, conclusion: Optional[str], branch: str, created_at: datetime, updated_at: datetime, started_at: Optional[datetime] = None, html_url: Optional[str] = None):
        self.id = id
        self.repository = repository
        self.workflow_id = workflow_id
        self.workflow_name = workflow_name
        self.status = status  # queued/in_progress/completed
        self.conclusion = conclusion  # success/failure/cancelled/... or None until completed
        self.branch = branch
        self.created_at = created_at
        self.updated_at = updated_at
        self.started_at = started_at
        self.html_url = html_url

    @property
    def is_completed(self) -> bool:
        return self.status == 'completed'

    def duration_seconds(self) -> Optional[float]:
        if not self.is_completed or not self.updated_at:
            return None
        start = self.started_at or self.created_at
        if not start:
            return None
        return max(0.0, (self.updated_at - start).total_seconds())

    def __repr__(self):
        return f"WorkflowRun(id={self.id}, workflow={self.workflow_name!r}, branch={self.branch!r}, conclusion={self.conclusion!r})"


class JobStep:
    def __init__(self, name: str, status: str, conclusion: Optional[str], number: Optional[int] = None):
        self.name = name
        self.status = status
        self.conclusion = conclusion
        self.number = number


class WorkflowJob:
    """
    One job of a workflow run, with its steps in execution order.
    """
    def __init__(self, id: Any, name: str, status: str, conclusion: Optional[str], steps: Optional[List[JobStep]] = None):
        self.id = id
        self.name = name
        self.status = status
        self.conclusion = conclusion
        self.steps = list(steps or [])

    def __repr__(self):
        return f"WorkflowJob(id={self.id}, name={self.name!r}, conclusion={self.conclusion!r})"


class FailureEvent:
    """
    A failure streak detected in one (workflow, branch) group.
    """
    def __init__(self, repository: str, workflow_id: Any, workflow_name: str, branch: str, first_failure_run: WorkflowRun, consecutive_failure_count: int, detected_at: datetime, severity: str = SEVERITY_NEW, flip_count: int = 0, active: bool = True, failed_job: Optional[str] = None, failed_step: Optional[str] = None, failure_type: Optional[str] = None, suggested_fix: Optional[str] = None):
        self.repository = repository
        self.workflow_id = workflow_id
        self.workflow_name = workflow_name
        self.branch = branch
        self.first_failure_run = first_failure_run
        self.consecutive_failure_count = consecutive_failure_count
        self.detected_at = detected_at
        self.severity = severity
        self.flip_count = flip_count
        self.active = active
        # filled in by failure analysis of the first failing run's jobs
        self.failed_job = failed_job
        self.failed_step = failed_step
        self.failure_type = failure_type
        self.suggested_fix = suggested_fix

    def to_dict(self) -> Dict[str, Any]:
        return {
            'repository': self.repository,
            'workflow_id': self.workflow_id,
            'workflow_name': self.workflow_name,
            'branch': self.branch,
            'first_failure_run_id': self.first_failure_run.id,
            'first_failure_run_url': self.first_failure_run.html_url,
            'consecutive_failure_count': self.consecutive_failure_count,
            'detected_at': to_iso(self.detected_at),
            'severity': self.severity,
            'flip_count': self.flip_count,
            'active': self.active,
            'failed_job': self.failed_job,
            'failed_step': self.failed_step,
            'failure_type': self.failure_type,
            'suggested_fix': self.suggested_fix,
        }

    def __repr__(self):
        return f"FailureEvent({self.workflow_name!r}@{self.branch!r}, severity={self.severity}, count={self.consecutive_failure_count})"


# --- notification payloads: one class per notification type ---

class StreakRiskPayload:
    type = STREAK_RISK

    def __init__(self, current_streak: int, longest_streak: int, date: date, hours_remaining: float):
        self.current_streak = current_streak
        self.longest_streak = longest_streak
        self.date = date
        self.hours_remaining = hours_remaining

    def natural_key(self) -> Optional[str]:
        return self.date.isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {'current_streak': self.current_streak, 'longest_streak': self.longest_streak, 'date': self.date.isoformat(), 'hours_remaining': self.hours_remaining}


class BuildFailurePayload:
    type = BUILD_FAILURE

    def __init__(self, repository: str, workflow_id: Any, workflow_name: str, branch: str, severity: str, consecutive_failure_count: int, run_url: Optional[str] = None, failed_job: Optional[str] = None, failed_step: Optional[str] = None, failure_type: Optional[str] = None, suggested_fix: Optional[str] = None):
        self.repository = repository
        self.workflow_id = workflow_id
        self.workflow_name = workflow_name
        self.branch = branch
        self.severity = severity
        self.consecutive_failure_count = consecutive_failure_count
        self.run_url = run_url
        self.failed_job = failed_job
        self.failed_step = failed_step
        self.failure_type = failure_type
        self.suggested_fix = suggested_fix

    @classmethod
    def from_failure(cls, event: FailureEvent) -> 'BuildFailurePayload':
        return cls(
            event.repository, event.workflow_id, event.workflow_name, event.branch, event.severity, event.consecutive_failure_count,
            event.first_failure_run.html_url, event.failed_job, event.failed_step, event.failure_type, event.suggested_fix,
        )

    def natural_key(self) -> Optional[str]:
        return f"{self.repository}:{self.workflow_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'repository': self.repository,
            'workflow_id': self.workflow_id,
            'workflow_name': self.workflow_name,
            'branch': self.branch,
            'severity': self.severity,
            'consecutive_failure_count': self.consecutive_failure_count,
            'run_url': self.run_url,
            'failed_job': self.failed_job,
            'failed_step': self.failed_step,
            'failure_type': self.failure_type,
            'suggested_fix': self.suggested_fix,
        }


class WeeklyDigestPayload:
    type = WEEKLY_DIGEST

    def __init__(self, commits: int, active_repos: int, current_streak: int, cicd_runs: int = 0, security_scans: int = 0):
        self.commits = commits
        self.active_repos = active_repos
        self.current_streak = current_streak
        self.cicd_runs = cicd_runs
        self.security_scans = security_scans

    def natural_key(self) -> Optional[str]:
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {'commits': self.commits, 'active_repos': self.active_repos, 'current_streak': self.current_streak, 'cicd_runs': self.cicd_runs, 'security_scans': self.security_scans}


class SecurityAlertPayload:
    type = SECURITY_ALERT

    def __init__(self, repository: str, risk_score: float, vulnerabilities: List[Dict[str, Any]]):
        self.repository = repository
        self.risk_score = risk_score
        self.vulnerabilities = list(vulnerabilities or [])

    def natural_key(self) -> Optional[str]:
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {'repository': self.repository, 'risk_score': self.risk_score, 'vulnerabilities': self.vulnerabilities}


PAYLOAD_CLASSES = {
    STREAK_RISK: StreakRiskPayload,
    BUILD_FAILURE: BuildFailurePayload,
    WEEKLY_DIGEST: WeeklyDigestPayload,
    SECURITY_ALERT: SecurityAlertPayload,
}


class NotificationEvent:
    """
    A notification about to be dispatched. The payload class must match the type.
    """
    def __init__(self, type: str, user_id: str, payload: Any, timestamp: Optional[datetime] = None):
        if type not in PAYLOAD_CLASSES:
            raise ValueError(f"Unknown notification type: {type}")
        expected = PAYLOAD_CLASSES[type]
        if not isinstance(payload, expected):
            raise TypeError(f"{type} notifications require a {expected.__name__}, got {payload.__class__.__name__}")
        self.type = type
        self.user_id = user_id
        self.payload = payload
        self.timestamp = timestamp or datetime.now(timezone.utc)

    @classmethod
    def streak_risk(cls, user_id: str, payload: StreakRiskPayload, timestamp: Optional[datetime] = None) -> 'NotificationEvent':
        return cls(STREAK_RISK, user_id, payload, timestamp)

    @classmethod
    def build_failure(cls, user_id: str, event: FailureEvent, timestamp: Optional[datetime] = None) -> 'NotificationEvent':
        return cls(BUILD_FAILURE, user_id, BuildFailurePayload.from_failure(event), timestamp)

    def __repr__(self):
        return f"NotificationEvent({self.type}, user={self.user_id!r})"


class DeliveryResult:
    SENT = 'sent'
    SUPPRESSED = 'suppressed'
    FAILED = 'failed'

    def __init__(self, status: str, reason: Optional[str] = None, error: Optional[str] = None):
        self.status = status
        self.reason = reason
        self.error = error

    @property
    def sent(self) -> bool:
        return self.status == self.SENT

    def to_dict(self) -> Dict[str, Any]:
        return {'status': self.status, 'reason': self.reason, 'error': self.error}

    def __repr__(self):
        return f"DeliveryResult({self.status}, reason={self.reason!r})"


class DeliveryFailureLog:
    """
    A failed delivery attempt; `resolved` flips once a later send of the same type succeeds.
    """
    def __init__(self, user_id: str, notification_type: str, error: str, occurred_at: datetime, failure_type: str = 'unknown', resolved: bool = False, id: Optional[int] = None):
        self.id = id
        self.user_id = user_id
        self.notification_type = notification_type
        self.error = error
        self.failure_type = failure_type
        self.occurred_at = occurred_at
        self.resolved = resolved

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'notification_type': self.notification_type,
            'error': self.error,
            'failure_type': self.failure_type,
            'occurred_at': to_iso(self.occurred_at),
            'resolved': self.resolved,
        }


class QuietHours:
    """Quiet window; a timezone of None means the user's own zone."""
    def __init__(self, enabled: bool = False, start: str = '22:00', end: str = '08:00', timezone: Optional[str] = None):
        self.enabled = enabled
        self.start = start
        self.end = end
        self.timezone = timezone

    def to_dict(self) -> Dict[str, Any]:
        return {'enabled': self.enabled, 'start': self.start, 'end': self.end, 'timezone': self.timezone}


class NotificationPreferences:
    """
    Per-user notification toggles. Records are created lazily with these defaults.
    """
    def __init__(self, user_id: str, streak_risk: bool = True, build_failure: bool = True, weekly_digest: bool = False, security_alert: bool = True, email_frequency: str = 'immediate', quiet_hours: Optional[QuietHours] = None):
        if email_frequency not in EMAIL_FREQUENCIES:
            raise ValueError(f"email_frequency must be one of {EMAIL_FREQUENCIES}")
        self.user_id = user_id
        self.streak_risk = streak_risk
        self.build_failure = build_failure
        self.weekly_digest = weekly_digest
        self.security_alert = security_alert
        self.email_frequency = email_frequency
        self.quiet_hours = quiet_hours or QuietHours()

    def allows(self, notification_type: str) -> bool:
        return bool(getattr(self, notification_type, False))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'streak_risk': self.streak_risk,
            'build_failure': self.build_failure,
            'weekly_digest': self.weekly_digest,
            'security_alert': self.security_alert,
            'email_frequency': self.email_frequency,
            'quiet_hours': self.quiet_hours.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationPreferences':
        qh = data.get('quiet_hours') or {}
        return cls(
            user_id=data['user_id'],
            streak_risk=bool(data.get('streak_risk', True)),
            build_failure=bool(data.get('build_failure', True)),
            weekly_digest=bool(data.get('weekly_digest', False)),
            security_alert=bool(data.get('security_alert', True)),
            email_frequency=data.get('email_frequency', 'immediate'),
            quiet_hours=QuietHours(**qh) if qh else None,
        )


class UserProfile:
    """
    A known user: GitHub login, email recipient, local timezone and watched repositories ("owner/name").
    """
    def __init__(self, user_id: str, username: str, email: Optional[str] = None, timezone: Optional[str] = None, repositories: Optional[List[str]] = None):
        self.user_id = user_id
        self.username = username
        self.email = email
        self.timezone = timezone
        self.repositories = list(repositories or [])

    def to_dict(self) -> Dict[str, Any]:
        return {'user_id': self.user_id, 'username': self.username, 'email': self.email, 'timezone': self.timezone, 'repositories': self.repositories}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserProfile':
        return cls(data['user_id'], data.get('username') or data['user_id'], data.get('email'), data.get('timezone'), data.get('repositories'))
