from datetime import date, datetime, timezone

import pytest

from conftest import make_runs
from normalize.models import (
    ContributionDay,
    DeliveryFailureLog,
    NotificationEvent,
    NotificationPreferences,
    StreakRecord,
    StreakRiskPayload,
    WeeklyDigestPayload,
    to_iso,
    BUILD_FAILURE,
    STREAK_RISK,
)


def test_contribution_day_is_immutable_and_non_negative():
    day = ContributionDay(date(2026, 3, 10), 2)
    with pytest.raises(AttributeError):
        day.count = 5
    with pytest.raises(ValueError):
        ContributionDay(date(2026, 3, 10), -1)
    assert day == ContributionDay(date(2026, 3, 10), 2)


@pytest.mark.parametrize('kwargs', [
    {'current_streak': 5, 'longest_streak': 3},
    {'current_streak': -1, 'longest_streak': 0},
    {'current_streak': 0, 'longest_streak': 4, 'is_at_risk': True},
])
def test_streak_record_invariants(kwargs):
    with pytest.raises(ValueError):
        StreakRecord('u1', **kwargs)


def test_streak_record_dict_round_trip_keeps_version_separate():
    record = StreakRecord('u1', 3, 7, date(2026, 3, 9), datetime(2026, 3, 10, 12, tzinfo=timezone.utc), True, version=4)
    data = record.to_dict()
    assert 'version' not in data
    assert data['last_evaluated_at'] == '2026-03-10T12:00:00+00:00'
    restored = StreakRecord.from_dict(data, version=4)
    assert (restored.current_streak, restored.longest_streak, restored.is_at_risk, restored.version) == (3, 7, True, 4)
    assert restored.last_contribution_date == date(2026, 3, 9)


def test_notification_event_checks_payload_type():
    payload = StreakRiskPayload(3, 3, date(2026, 3, 10), 5.0)
    with pytest.raises(TypeError):
        NotificationEvent(BUILD_FAILURE, 'u1', payload)
    with pytest.raises(ValueError):
        NotificationEvent('carrier_pigeon', 'u1', payload)
    event = NotificationEvent(STREAK_RISK, 'u1', payload)
    assert event.timestamp.tzinfo is not None


def test_build_failure_event_from_failure():
    from normalize.models import FailureEvent
    run = make_runs(['failure'])[0]
    failure = FailureEvent('octo/app', 1, 'CI', 'main', run, 2, datetime(2026, 3, 10, tzinfo=timezone.utc))
    event = NotificationEvent.build_failure('u1', failure)
    assert event.payload.natural_key() == 'octo/app:1'
    assert event.payload.run_url == run.html_url
    assert WeeklyDigestPayload(1, 1, 1).natural_key() is None


def test_preferences_defaults_and_validation():
    prefs = NotificationPreferences('u1')
    assert prefs.allows(STREAK_RISK)
    assert not prefs.allows('weekly_digest')
    assert not prefs.allows('unknown')
    with pytest.raises(ValueError):
        NotificationPreferences('u1', email_frequency='hourly')
    restored = NotificationPreferences.from_dict(prefs.to_dict())
    assert restored.quiet_hours.start == '22:00'


def test_to_iso_normalizes_to_utc():
    naive = datetime(2026, 3, 10, 8, 0)
    assert to_iso(naive) == '2026-03-10T08:00:00+00:00'
    log = DeliveryFailureLog('u1', STREAK_RISK, 'boom', naive)
    assert log.to_dict()['resolved'] is False
