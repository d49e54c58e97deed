"""
Workflow failure engine: classify failure events and aggregate CI metrics from workflow runs.

Runs are grouped per (workflow_id, branch) and scanned once in creation order, keeping a few
counters per group (last decisive outcome, open event, flip count). Everything here is pure:
the caller supplies the runs and gets events/metrics back, nothing is persisted.

Failure analysis looks at the jobs of a failing run, finds the failed job and step and matches
their names against FAILURE_PATTERNS to name a failure type and a suggested fix.
"""
import logging
import statistics
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from normalize.models import FailureEvent, WorkflowJob, WorkflowRun, SEVERITY_FLAKY, SEVERITY_NEW, SEVERITY_RECURRING

logger = logging.getLogger(__name__)

SUCCESS = 'success'
FAILING_CONCLUSIONS = frozenset({'failure', 'timed_out', 'startup_failure'})

DEFAULT_FLIP_THRESHOLD = 3
TREND_MIN_RUNS = 10
TREND_THRESHOLD = 10.0

# checked in order against the failed step's (then the failed job's) name; the first match wins
FAILURE_PATTERNS = (
    ('timeout', ('timed out', 'timeout')),
    ('dependency', ('install', 'dependenc', 'module not found', 'package not found', 'restore cache')),
    ('deployment', ('deploy', 'release', 'publish')),
    ('test', ('test', 'assert', 'coverage')),
    ('build', ('build', 'compil', 'syntax error', 'lint')),
    ('infrastructure', ('runner', 'network', 'set up job', 'checkout')),
)
UNKNOWN_FAILURE = 'unknown'

SUGGESTED_FIXES = {
    'build': 'Check compilation errors and fix syntax issues',
    'test': 'Review failing tests and update test cases or fix implementation',
    'deployment': 'Verify deployment configuration and target environment',
    'dependency': 'Update dependencies or fix version conflicts',
    'timeout': 'Optimize performance or increase timeout limits',
    'infrastructure': 'Check runner availability and resource limits',
    UNKNOWN_FAILURE: 'Review logs and error messages for specific guidance',
}


def _outcome(run: WorkflowRun) -> Optional[str]:
    """'success', 'failure' or None for runs that say nothing about build health (cancelled, skipped, ...)."""
    if run.conclusion == SUCCESS:
        return SUCCESS
    if run.conclusion in FAILING_CONCLUSIONS:
        return 'failure'
    return None


def _window(runs: List[WorkflowRun], lookback_days: int, now: Optional[datetime]) -> Tuple[List[WorkflowRun], datetime]:
    now = now or datetime.now(timezone.utc)
    start = now - timedelta(days=lookback_days)
    return [r for r in runs or [] if r.created_at is not None and start <= r.created_at <= now], now


def _sort_key(run: WorkflowRun):
    return run.created_at, str(run.id)


def group_runs(runs: List[WorkflowRun]) -> Dict[Tuple[Any, str], List[WorkflowRun]]:
    groups: Dict[Tuple[Any, str], List[WorkflowRun]] = {}
    for run in runs:
        groups.setdefault((run.workflow_id, run.branch), []).append(run)
    for members in groups.values():
        members.sort(key=_sort_key)
    return groups


def _scan_group(repository: str, runs: List[WorkflowRun], detected_at: datetime, flip_threshold: int) -> List[FailureEvent]:
    events: List[FailureEvent] = []
    last: Optional[str] = None
    open_event: Optional[FailureEvent] = None
    flips = 0

    for run in runs:
        outcome = _outcome(run)
        if outcome is None:
            continue
        if last is not None and outcome != last:
            flips += 1
        if outcome == SUCCESS:
            open_event = None
        elif open_event is not None:
            open_event.consecutive_failure_count += 1
            open_event.severity = SEVERITY_RECURRING
        else:
            open_event = FailureEvent(
                repository=repository,
                workflow_id=run.workflow_id,
                workflow_name=run.workflow_name,
                branch=run.branch,
                first_failure_run=run,
                consecutive_failure_count=1,
                detected_at=detected_at,
                severity=SEVERITY_NEW,
                active=False,
            )
            events.append(open_event)
        last = outcome

    if open_event is not None:
        open_event.active = True

    if events and flips >= flip_threshold:
        latest = events[-1]
        return [FailureEvent(
            repository=repository,
            workflow_id=latest.workflow_id,
            workflow_name=latest.workflow_name,
            branch=latest.branch,
            first_failure_run=events[0].first_failure_run,
            consecutive_failure_count=latest.consecutive_failure_count,
            detected_at=detected_at,
            severity=SEVERITY_FLAKY,
            flip_count=flips,
            active=last == 'failure',
        )]
    return events


def detect_failures(owner: str, repo: str, runs: List[WorkflowRun], lookback_days: int, now: Optional[datetime] = None, flip_threshold: int = DEFAULT_FLIP_THRESHOLD) -> List[FailureEvent]:
    """Return failure events for completed runs created within [now - lookback_days, now]."""
    window, now = _window(runs, lookback_days, now)
    completed = [r for r in window if r.is_completed]
    repository = f"{owner}/{repo}"
    events: List[FailureEvent] = []
    for members in group_runs(completed).values():
        events.extend(_scan_group(repository, members, now, flip_threshold))
    events.sort(key=lambda e: _sort_key(e.first_failure_run))
    logger.info("Detected %d failure event(s) in %s from %d completed run(s)", len(events), repository, len(completed))
    return events


def _rate(part: int, whole: int) -> Optional[float]:
    return round(part / whole * 100.0, 2) if whole else None


def _trend(completed: List[WorkflowRun]) -> str:
    """Compare success rates of the older and newer half of the window."""
    if len(completed) < TREND_MIN_RUNS:
        return 'stable'
    ordered = sorted(completed, key=_sort_key)
    half = len(ordered) // 2
    first, second = ordered[:half], ordered[half:]
    first_rate = sum(1 for r in first if r.conclusion == SUCCESS) / len(first) * 100.0
    second_rate = sum(1 for r in second if r.conclusion == SUCCESS) / len(second) * 100.0
    diff = second_rate - first_rate
    if diff > TREND_THRESHOLD:
        return 'improving'
    if diff < -TREND_THRESHOLD:
        return 'declining'
    return 'stable'


def calculate_metrics(owner: str, repo: str, runs: List[WorkflowRun], lookback_days: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Aggregate metrics for the window.

    success_rate values are percentages; a workflow with no completed runs in the window is left
    out of failures_by_workflow instead of being reported as 0%.
    """
    window, now = _window(runs, lookback_days, now)
    completed = [r for r in window if r.is_completed]
    successes = [r for r in completed if r.conclusion == SUCCESS]
    failures = [r for r in completed if r.conclusion in FAILING_CONCLUSIONS]

    durations = [d for d in (r.duration_seconds() for r in completed) if d is not None]

    by_workflow: Dict[str, Dict[str, Any]] = {}
    for run in completed:
        entry = by_workflow.setdefault(run.workflow_name, {'total_runs': 0, 'successful_runs': 0, 'failed_runs': 0})
        entry['total_runs'] += 1
        if run.conclusion == SUCCESS:
            entry['successful_runs'] += 1
        elif run.conclusion in FAILING_CONCLUSIONS:
            entry['failed_runs'] += 1
    for entry in by_workflow.values():
        entry['success_rate'] = _rate(entry['successful_runs'], entry['total_runs'])

    by_branch: Dict[str, int] = {}
    for run in failures:
        by_branch[run.branch] = by_branch.get(run.branch, 0) + 1

    problematic = [(e['failed_runs'] / e['total_runs'], e['failed_runs'], name) for name, e in by_workflow.items() if e['failed_runs']]
    most_problematic = max(problematic)[2] if problematic else None

    return {
        'repository': f"{owner}/{repo}",
        'lookback_days': lookback_days,
        'total_runs': len(window),
        'completed_runs': len(completed),
        'success_rate': _rate(len(successes), len(completed)),
        'failure_rate': _rate(len(failures), len(completed)),
        'average_duration_seconds': round(sum(durations) / len(durations), 2) if durations else None,
        'median_duration_seconds': statistics.median(durations) if durations else None,
        'runs_per_day': round(len(window) / lookback_days, 2) if lookback_days else None,
        'failures_by_workflow': by_workflow,
        'failures_by_branch': by_branch,
        'most_problematic_workflow': most_problematic,
        'trend': _trend(completed),
    }


def match_failure_type(text: str) -> str:
    lowered = (text or '').lower()
    for failure_type, needles in FAILURE_PATTERNS:
        if any(n in lowered for n in needles):
            return failure_type
    return UNKNOWN_FAILURE


def analyze_failed_jobs(jobs: List[WorkflowJob]) -> Optional[Dict[str, Optional[str]]]:
    """
    Locate the first failed job and its failed step and classify the failure.

    Returns None when no job failed (e.g. the run was re-run since). The step name is matched
    first and the job name only when the step says nothing; a timed-out job or step is always a timeout.
    """
    job = next((j for j in jobs or [] if j.conclusion in FAILING_CONCLUSIONS), None)
    if job is None:
        return None
    step = next((s for s in job.steps if s.conclusion in FAILING_CONCLUSIONS), None)
    if job.conclusion == 'timed_out' or (step is not None and step.conclusion == 'timed_out'):
        failure_type = 'timeout'
    else:
        failure_type = match_failure_type(step.name) if step else UNKNOWN_FAILURE
        if failure_type == UNKNOWN_FAILURE:
            failure_type = match_failure_type(job.name)
    return {
        'failed_job': job.name,
        'failed_step': step.name if step else None,
        'failure_type': failure_type,
        'suggested_fix': SUGGESTED_FIXES[failure_type],
    }


def annotate_failure(event: FailureEvent, jobs: List[WorkflowJob]) -> FailureEvent:
    analysis = analyze_failed_jobs(jobs)
    if analysis is None:
        logger.debug("No failed job found for run %s", event.first_failure_run.id)
        return event
    event.failed_job = analysis['failed_job']
    event.failed_step = analysis['failed_step']
    event.failure_type = analysis['failure_type']
    event.suggested_fix = analysis['suggested_fix']
    return event


__all__ = ["detect_failures", "calculate_metrics", "group_runs", "analyze_failed_jobs", "annotate_failure", "match_failure_type", "FAILING_CONCLUSIONS", "FAILURE_PATTERNS"]
