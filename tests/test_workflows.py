from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_job, make_runs
from normalize.models import SEVERITY_FLAKY, SEVERITY_NEW, SEVERITY_RECURRING
from scoring.workflows import analyze_failed_jobs, annotate_failure, calculate_metrics, detect_failures, match_failure_type

NOW = datetime(2026, 3, 11, 0, 0, tzinfo=timezone.utc)


def detect(runs, **kwargs):
    return detect_failures('octo', 'app', runs, 7, now=NOW, **kwargs)


def test_consecutive_failures_form_one_event():
    runs = make_runs(['success', 'success', 'failure', 'failure', 'success'])
    events = detect(runs)
    assert len(events) == 1
    event = events[0]
    assert event.first_failure_run.id == 3
    assert event.consecutive_failure_count == 2
    assert event.severity == SEVERITY_RECURRING
    assert event.active is False
    assert event.repository == 'octo/app'


def test_single_failure_is_new_failure():
    events = detect(make_runs(['success', 'failure', 'success']))
    assert [e.severity for e in events] == [SEVERITY_NEW]
    assert events[0].consecutive_failure_count == 1


def test_first_decisive_run_failing_is_new_failure_and_active():
    events = detect(make_runs(['failure']))
    assert len(events) == 1
    assert events[0].severity == SEVERITY_NEW
    assert events[0].active is True


def test_recovery_run_emits_nothing():
    assert detect(make_runs(['success', 'success'])) == []


def test_flaky_workflow_collapses_events():
    events = detect(make_runs(['success', 'failure', 'success', 'failure']))
    assert len(events) == 1
    assert events[0].severity == SEVERITY_FLAKY
    assert events[0].flip_count == 3
    assert events[0].first_failure_run.id == 2
    assert events[0].active is True


def test_flip_threshold_is_configurable():
    events = detect(make_runs(['success', 'failure', 'success', 'failure']), flip_threshold=5)
    assert [e.severity for e in events] == [SEVERITY_NEW, SEVERITY_NEW]
    assert [e.active for e in events] == [False, True]


def test_non_decisive_conclusions_are_ignored():
    events = detect(make_runs(['failure', 'cancelled', 'skipped', 'timed_out']))
    assert len(events) == 1
    assert events[0].consecutive_failure_count == 2
    assert events[0].severity == SEVERITY_RECURRING


def test_groups_are_per_workflow_and_branch():
    runs = make_runs(['failure'], branch='main') + make_runs(['failure'], branch='dev') + make_runs(['failure'], workflow_id=2, workflow_name='Lint')
    for i, run in enumerate(runs):
        run.id = 100 + i
    events = detect(runs)
    assert len(events) == 3
    assert {(e.workflow_id, e.branch) for e in events} == {(1, 'main'), (1, 'dev'), (2, 'main')}


def test_runs_are_ordered_by_creation_time():
    runs = make_runs(['success', 'failure', 'failure'])
    events = detect(list(reversed(runs)))
    assert len(events) == 1
    assert events[0].first_failure_run.id == 2


def test_window_and_status_filters():
    old = make_runs(['failure'], start=NOW - timedelta(days=10))
    running = make_runs([None], status='in_progress', start=NOW - timedelta(hours=2))
    assert detect(old + running) == []


def test_metrics_basic():
    runs = make_runs(['success', 'failure', 'success', 'timed_out'])
    metrics = calculate_metrics('octo', 'app', runs, 7, now=NOW)
    assert metrics['total_runs'] == 4
    assert metrics['success_rate'] == 50.0
    assert metrics['average_duration_seconds'] == 270.0
    ci = metrics['failures_by_workflow']['CI']
    assert ci == {'total_runs': 4, 'successful_runs': 2, 'failed_runs': 2, 'success_rate': 50.0}
    assert metrics['failures_by_branch'] == {'main': 2}
    assert metrics['most_problematic_workflow'] == 'CI'
    assert metrics['trend'] == 'stable'


def test_workflow_without_completed_runs_is_omitted():
    runs = make_runs(['success']) + make_runs([None], status='in_progress', workflow_id=9, workflow_name='Deploy')
    runs[1].id = 50
    metrics = calculate_metrics('octo', 'app', runs, 7, now=NOW)
    assert 'Deploy' not in metrics['failures_by_workflow']
    assert metrics['total_runs'] == 2
    assert metrics['success_rate'] == 100.0


def test_metrics_with_no_completed_runs():
    metrics = calculate_metrics('octo', 'app', [], 7, now=NOW)
    assert metrics['success_rate'] is None
    assert metrics['average_duration_seconds'] is None
    assert metrics['failures_by_workflow'] == {}
    assert metrics['most_problematic_workflow'] is None


def test_trend_improving_and_declining():
    improving = make_runs(['failure'] * 5 + ['success'] * 5)
    declining = make_runs(['success'] * 5 + ['failure'] * 5)
    assert calculate_metrics('octo', 'app', improving, 7, now=NOW)['trend'] == 'improving'
    assert calculate_metrics('octo', 'app', declining, 7, now=NOW)['trend'] == 'declining'


@pytest.mark.parametrize('step, expected', [
    ('Run tests', 'test'),
    ('npm install', 'dependency'),
    ('Restore cache', 'dependency'),
    ('Deploy to staging', 'deployment'),
    ('Compile sources', 'build'),
    ('Set up job', 'infrastructure'),
    ('Wait for approval', 'unknown'),
])
def test_failed_step_is_classified(step, expected):
    jobs = [make_job('job', 'failure', [('Checkout', 'success'), (step, 'failure')])]
    analysis = analyze_failed_jobs(jobs)
    assert analysis['failed_step'] == step
    assert analysis['failure_type'] == expected


def test_job_name_used_when_step_is_unrecognized():
    analysis = analyze_failed_jobs([make_job('integration-tests', 'failure', [('Run script', 'failure')])])
    assert analysis['failure_type'] == 'test'
    assert analysis['failed_job'] == 'integration-tests'


def test_timed_out_job_is_timeout():
    analysis = analyze_failed_jobs([make_job('build', 'timed_out', [('Compile sources', 'cancelled')])])
    assert analysis['failure_type'] == 'timeout'
    assert analysis['failed_step'] is None
    assert analysis['suggested_fix'] == 'Optimize performance or increase timeout limits'


def test_first_failed_job_wins():
    jobs = [
        make_job('lint', 'success', [('Lint', 'success')], job_id=1),
        make_job('deploy', 'failure', [('Publish package', 'failure')], job_id=2),
        make_job('unit', 'failure', [('Run tests', 'failure')], job_id=3),
    ]
    assert analyze_failed_jobs(jobs)['failed_job'] == 'deploy'


def test_no_failed_job_leaves_event_untouched():
    assert analyze_failed_jobs([]) is None
    assert analyze_failed_jobs([make_job('unit', 'success', [('Run tests', 'success')])]) is None
    event = detect(make_runs(['failure']))[0]
    annotate_failure(event, [make_job('unit', 'cancelled')])
    assert event.failure_type is None
    assert event.suggested_fix is None


def test_annotate_failure_sets_fields():
    event = detect(make_runs(['failure']))[0]
    annotate_failure(event, [make_job('build', 'failure', [('Build', 'failure')])])
    assert (event.failed_job, event.failed_step, event.failure_type) == ('build', 'Build', 'build')
    assert event.to_dict()['suggested_fix'] == 'Check compilation errors and fix syntax issues'


def test_match_failure_type_is_case_insensitive():
    assert match_failure_type('MODULE NOT FOUND') == 'dependency'
    assert match_failure_type('') == 'unknown'
    assert match_failure_type(None) == 'unknown'
