import sys
import os
from datetime import date, datetime, timedelta, timezone

import pytest

# Add project root to sys.path so tests can import top-level modules like 'storage', 'scoring', 'normalize', etc.
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from normalize.models import ContributionDay, JobStep, WorkflowJob, WorkflowRun  # noqa: E402
from storage.store import Store  # noqa: E402


class FakeTransport:
    """Records sends; raises `fail_with` (once per call) while it is set."""

    def __init__(self, fail_with=None):
        self.sent = []
        self.fail_with = fail_with

    def send(self, recipient, subject, body, html=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({'recipient': recipient, 'subject': subject, 'body': body, 'html': html})


class FakeGateway:
    def __init__(self, calendars=None, runs=None, errors=None, jobs=None):
        self.calendars = calendars or {}
        self.runs = runs or {}
        self.errors = errors or {}
        self.jobs = jobs or {}
        self.calendar_calls = []
        self.job_calls = []

    def fetch_contribution_calendar(self, username, since_date, until_date=None):
        self.calendar_calls.append((username, since_date, until_date))
        if username in self.errors:
            raise self.errors[username]
        return list(self.calendars.get(username, []))

    def fetch_recent_workflow_runs(self, owner, repo, lookback_days, per_page=100, now=None):
        key = f"{owner}/{repo}"
        if key in self.errors:
            raise self.errors[key]
        return list(self.runs.get(key, []))

    def fetch_workflow_run_jobs(self, owner, repo, run_id):
        self.job_calls.append(run_id)
        key = f"{owner}/{repo}#{run_id}"
        if key in self.errors:
            raise self.errors[key]
        return list(self.jobs.get(run_id, []))


def make_calendar(last_day, counts):
    """Consecutive ContributionDays ending at last_day; counts are oldest -> newest."""
    first = last_day - timedelta(days=len(counts) - 1)
    return [ContributionDay(first + timedelta(days=i), c) for i, c in enumerate(counts)]


def make_runs(conclusions, start=None, workflow_id=1, workflow_name='CI', branch='main', repository='octo/app', status='completed'):
    """One run per conclusion, an hour apart, ids 1..n."""
    start = start or datetime(2026, 3, 10, 0, 0, tzinfo=timezone.utc)
    runs = []
    for i, conclusion in enumerate(conclusions):
        created = start + timedelta(hours=i)
        runs.append(WorkflowRun(
            id=i + 1,
            repository=repository,
            workflow_id=workflow_id,
            workflow_name=workflow_name,
            status=status,
            conclusion=conclusion,
            branch=branch,
            created_at=created,
            updated_at=created + timedelta(minutes=5),
            started_at=created + timedelta(seconds=30),
            html_url=f"https://github.com/{repository}/actions/runs/{i + 1}",
        ))
    return runs


def make_job(name, conclusion='failure', steps=(), job_id=1):
    """A WorkflowJob whose steps are (name, conclusion) pairs, numbered in order."""
    return WorkflowJob(job_id, name, 'completed', conclusion, [JobStep(n, 'completed', c, i + 1) for i, (n, c) in enumerate(steps)])


@pytest.fixture
def store():
    s = Store(':memory:')
    yield s
    s.close()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def today():
    return date(2026, 3, 10)
