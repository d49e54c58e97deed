"""
GitHub gateway: contribution calendars (GraphQL), workflow runs and their jobs (REST).
HTTP failures are mapped to the upstream error kinds in errors.py; malformed records are skipped by normalize.util.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Dict, Any, Optional

from errors import MalformedData, UpstreamAuthExpired, UpstreamError, UpstreamNotFound, UpstreamRateLimited, UpstreamUnavailable
from ingest.retry import send_with_retries, is_rate_limited, parse_rate_headers, seconds_until_reset
from normalize.models import ContributionDay, WorkflowJob, WorkflowRun
from normalize.util import normalize_calendar, normalize_workflow_jobs, normalize_workflow_runs

logger = logging.getLogger(__name__)

CALENDAR_QUERY = """
query($username: String!, $from: DateTime!, $to: DateTime!) {
  user(login: $username) {
    contributionsCollection(from: $from, to: $to) {
      contributionCalendar {
        totalContributions
        weeks {
          contributionDays {
            date
            contributionCount
          }
        }
      }
    }
  }
}
"""

# GitHub rejects contributionsCollection ranges longer than a year
MAX_CALENDAR_SPAN_DAYS = 365


def _raise_for_response(resp, what: str):
    """Map a non-success HTTP response to an upstream error."""
    status = getattr(resp, 'status_code', 0)
    if is_rate_limited(resp):
        retry_after = seconds_until_reset(parse_rate_headers(resp))
        raise UpstreamRateLimited(f"{what}: rate limited (HTTP {status})", retry_after=retry_after)
    if status == 401:
        raise UpstreamAuthExpired(f"{what}: token rejected (HTTP 401)")
    if status == 403:
        raise UpstreamAuthExpired(f"{what}: token lacks access (HTTP 403)")
    if status == 404:
        raise UpstreamNotFound(f"{what}: not found (HTTP 404)")
    if status >= 500 or status == 0:
        raise UpstreamUnavailable(f"{what}: HTTP {status}")
    # remaining 4xx: the request itself is wrong, repeating it cannot help
    raise UpstreamError(f"{what}: unexpected HTTP {status}")


def _json_body(resp, what: str) -> Any:
    try:
        return resp.json()
    except ValueError:
        raise MalformedData(f"{what}: response body is not JSON")


class GitHubGateway:
    """Thin GitHub client returning normalized models."""

    def __init__(self, token: str, base_url: str = None, graphql_url: str = None, timeout: float = 10.0, max_pages: int = 10):
        self.token = token
        self.base_url = (base_url or "https://api.github.com").rstrip('/')
        self.graphql_url = graphql_url or f"{self.base_url}/graphql"
        self.timeout = timeout
        self.max_pages = max_pages
        self.headers = {
            "Authorization": f"Bearer {self.token}" if self.token else "",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _graphql(self, query: str, variables: Dict[str, Any], what: str) -> Dict[str, Any]:
        resp = send_with_retries('POST', self.graphql_url, headers=self.headers, json_body={'query': query, 'variables': variables}, timeout=self.timeout)
        if resp.status_code != 200:
            _raise_for_response(resp, what)
        body = _json_body(resp, what)
        errors = body.get('errors') if isinstance(body, dict) else None
        if errors:
            types = {e.get('type') for e in errors if isinstance(e, dict)}
            if 'RATE_LIMITED' in types:
                raise UpstreamRateLimited(f"{what}: GraphQL rate limit")
            if 'NOT_FOUND' in types:
                raise MalformedData(f"{what}: {errors[0].get('message', 'not found')}")
            raise UpstreamUnavailable(f"{what}: GraphQL errors {errors}")
        data = body.get('data') if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise MalformedData(f"{what}: response has no data object")
        return data

    def fetch_contribution_calendar(self, username: str, since_date: date, until_date: Optional[date] = None) -> List[ContributionDay]:
        """Return the user's contribution days from since_date through until_date (default: today UTC), ascending."""
        until_date = until_date or datetime.now(timezone.utc).date()
        # the user's local "today" can be a day ahead of UTC
        until_date = until_date + timedelta(days=1)
        if (until_date - since_date).days > MAX_CALENDAR_SPAN_DAYS:
            since_date = until_date - timedelta(days=MAX_CALENDAR_SPAN_DAYS)
        variables = {
            'username': username,
            'from': datetime.combine(since_date, time.min, tzinfo=timezone.utc).isoformat(),
            'to': datetime.combine(until_date, time.max, tzinfo=timezone.utc).replace(microsecond=0).isoformat(),
        }
        what = f"contribution calendar for {username}"
        data = self._graphql(CALENDAR_QUERY, variables, what)
        user = data.get('user')
        if not isinstance(user, dict):
            raise MalformedData(f"{what}: unknown user")
        calendar = (user.get('contributionsCollection') or {}).get('contributionCalendar')
        days = normalize_calendar(calendar)
        days.sort(key=lambda d: d.date)
        logger.debug("Fetched %d calendar days for %s", len(days), username)
        return days

    def fetch_workflow_runs(self, owner: str, repo: str, per_page: int = 100, status: Optional[str] = None, branch: Optional[str] = None, page: int = 1, created: Optional[str] = None) -> Dict[str, Any]:
        """Fetch one page of workflow runs. Returns {'runs': [WorkflowRun], 'total_count': int}."""
        url = f"{self.base_url}/repos/{owner}/{repo}/actions/runs"
        params: Dict[str, Any] = {'per_page': per_page, 'page': page}
        if status:
            params['status'] = status
        if branch:
            params['branch'] = branch
        if created:
            params['created'] = created
        what = f"workflow runs for {owner}/{repo}"
        resp = send_with_retries('GET', url, headers=self.headers, params=params, timeout=self.timeout)
        if resp.status_code != 200:
            _raise_for_response(resp, what)
        body = _json_body(resp, what)
        if not isinstance(body, dict) or not isinstance(body.get('workflow_runs'), list):
            raise MalformedData(f"{what}: missing workflow_runs list")
        runs = normalize_workflow_runs(body['workflow_runs'], repository=f"{owner}/{repo}")
        return {'runs': runs, 'total_count': int(body.get('total_count') or 0), 'fetched': len(body['workflow_runs'])}

    def fetch_recent_workflow_runs(self, owner: str, repo: str, lookback_days: int, per_page: int = 100, now: Optional[datetime] = None) -> List[WorkflowRun]:
        """Page through runs created within the lookback window (bounded by max_pages)."""
        now = now or datetime.now(timezone.utc)
        since = (now - timedelta(days=lookback_days)).date()
        created = f">={since.isoformat()}"
        runs: List[WorkflowRun] = []
        page = 1
        while page <= self.max_pages:
            result = self.fetch_workflow_runs(owner, repo, per_page=per_page, page=page, created=created)
            runs.extend(result['runs'])
            if result['fetched'] < per_page or page * per_page >= result['total_count']:
                break
            page += 1
        else:
            logger.warning("Stopped paging %s/%s after %d pages; older runs in the window were not fetched", owner, repo, self.max_pages)
        return runs

    def fetch_workflow_run_jobs(self, owner: str, repo: str, run_id: Any) -> List[WorkflowJob]:
        """Jobs (with their steps) of the latest attempt of one run."""
        url = f"{self.base_url}/repos/{owner}/{repo}/actions/runs/{run_id}/jobs"
        what = f"jobs of run {run_id} in {owner}/{repo}"
        resp = send_with_retries('GET', url, headers=self.headers, params={'per_page': 100, 'filter': 'latest'}, timeout=self.timeout)
        if resp.status_code != 200:
            _raise_for_response(resp, what)
        body = _json_body(resp, what)
        if not isinstance(body, dict) or not isinstance(body.get('jobs'), list):
            raise MalformedData(f"{what}: missing jobs list")
        return normalize_workflow_jobs(body['jobs'])


__all__ = ["GitHubGateway", "CALENDAR_QUERY"]
