"""
Normalization utility helpers.
Small helpers to normalize raw GitHub payloads into normalize.models entities.
Malformed records are skipped (and logged) so one bad entry never aborts a whole evaluation.
"""
import logging
from typing import Dict, Any, List, Optional

from errors import MalformedData
from normalize.models import ContributionDay, JobStep, WorkflowJob, WorkflowRun, parse_date, parse_datetime

logger = logging.getLogger(__name__)


def normalize_contribution_day(raw: Dict[str, Any]) -> ContributionDay:
    """Create a ContributionDay from a GraphQL `contributionDays` entry.
    Raises MalformedData when the date or count is missing or unusable.
    """
    if not isinstance(raw, dict):
        raise MalformedData(f"contribution day is not an object: {raw!r}")
    raw_date = raw.get('date')
    raw_count = raw.get('contributionCount', raw.get('count'))
    if not raw_date or raw_count is None:
        raise MalformedData(f"contribution day missing date or count: {raw!r}")
    try:
        day = parse_date(raw_date)
        count = int(raw_count)
    except (TypeError, ValueError) as ex:
        raise MalformedData(f"contribution day has invalid fields: {raw!r} ({ex})")
    if count < 0:
        raise MalformedData(f"negative contribution count: {raw!r}")
    return ContributionDay(day, count)


def normalize_calendar(calendar: Dict[str, Any]) -> List[ContributionDay]:
    """Flatten a GraphQL `contributionCalendar` (weeks -> contributionDays), skipping malformed days."""
    if not isinstance(calendar, dict) or not isinstance(calendar.get('weeks'), list):
        raise MalformedData('contribution calendar has no weeks list')
    days: List[ContributionDay] = []
    for week in calendar['weeks']:
        entries = week.get('contributionDays') if isinstance(week, dict) else None
        if not isinstance(entries, list):
            logger.warning("Skipping malformed calendar week: %r", week)
            continue
        for raw in entries:
            try:
                days.append(normalize_contribution_day(raw))
            except MalformedData as ex:
                logger.warning("Skipping malformed contribution day: %s", ex)
    return days


def _repository_name(raw: Dict[str, Any], fallback: Optional[str]) -> str:
    repo = raw.get('repository')
    if isinstance(repo, dict) and repo.get('full_name'):
        return repo['full_name']
    return fallback or ''


def normalize_workflow_run(raw: Dict[str, Any], repository: Optional[str] = None) -> WorkflowRun:
    """Create a WorkflowRun from a REST `workflow_runs` entry. Raises MalformedData on missing identity or timestamps."""
    if not isinstance(raw, dict):
        raise MalformedData(f"workflow run is not an object: {raw!r}")
    run_id = raw.get('id')
    created = raw.get('created_at')
    status = raw.get('status')
    if run_id is None or not created or not status:
        raise MalformedData(f"workflow run missing id, status or created_at: id={run_id!r}")
    try:
        created_at = parse_datetime(created)
        updated_at = parse_datetime(raw.get('updated_at')) or created_at
        started_at = parse_datetime(raw.get('run_started_at'))
    except (TypeError, ValueError) as ex:
        raise MalformedData(f"workflow run {run_id} has invalid timestamps ({ex})")
    workflow_id = raw.get('workflow_id')
    workflow_name = raw.get('name') or raw.get('workflow_name') or ''
    if workflow_id is None:
        # fall back to the workflow name so grouping still targets the definition, not the run
        workflow_id = workflow_name or raw.get('path')
    return WorkflowRun(
        id=run_id,
        repository=_repository_name(raw, repository),
        workflow_id=workflow_id,
        workflow_name=workflow_name or str(workflow_id),
        status=status,
        conclusion=raw.get('conclusion'),
        branch=raw.get('head_branch') or '',
        created_at=created_at,
        updated_at=updated_at,
        started_at=started_at,
        html_url=raw.get('html_url'),
    )


def normalize_workflow_runs(items: List[Dict[str, Any]], repository: Optional[str] = None) -> List[WorkflowRun]:
    runs: List[WorkflowRun] = []
    for raw in items or []:
        try:
            runs.append(normalize_workflow_run(raw, repository))
        except MalformedData as ex:
            logger.warning("Skipping malformed workflow run: %s", ex)
    return runs


def normalize_workflow_job(raw: Dict[str, Any]) -> WorkflowJob:
    """Create a WorkflowJob from a REST `jobs` entry; steps without a name are dropped."""
    if not isinstance(raw, dict) or raw.get('id') is None:
        raise MalformedData(f"workflow job missing id: {raw!r}")
    steps = []
    for step in raw.get('steps') or []:
        if isinstance(step, dict) and step.get('name'):
            steps.append(JobStep(step['name'], step.get('status') or '', step.get('conclusion'), step.get('number')))
    steps.sort(key=lambda s: s.number if s.number is not None else 0)
    return WorkflowJob(raw['id'], raw.get('name') or str(raw['id']), raw.get('status') or '', raw.get('conclusion'), steps)


def normalize_workflow_jobs(items: List[Dict[str, Any]]) -> List[WorkflowJob]:
    jobs: List[WorkflowJob] = []
    for raw in items or []:
        try:
            jobs.append(normalize_workflow_job(raw))
        except MalformedData as ex:
            logger.warning("Skipping malformed workflow job: %s", ex)
    return jobs
