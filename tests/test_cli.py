import json
from datetime import datetime, timedelta, timezone

import pytest

import cli
from normalize.models import DeliveryFailureLog, STREAK_RISK
from storage.store import Store


@pytest.fixture
def db(tmp_path, monkeypatch):
    for name in ('GITFORT_CRON_SECRET', 'CRON_SECRET', 'GITFORT_DB_PATH'):
        monkeypatch.delenv(name, raising=False)
    return str(tmp_path / 'gitfort.db')


def _run(capsys, *argv):
    code = cli.main(list(argv))
    return code, json.loads(capsys.readouterr().out)


def test_add_user_creates_profile_and_preferences(db, capsys):
    code, out = _run(capsys, '--db', db, '--add-user', 'u1', '--username', 'octocat', '--email', 'octo@example.com', '--repo', 'octo/app')
    assert code == 0
    assert out['added']['repositories'] == ['octo/app']
    with Store(db) as store:
        assert store.get_user('u1').email == 'octo@example.com'
        assert store.get_preferences('u1') is not None


def test_add_user_keeps_existing_fields(db, capsys):
    _run(capsys, '--db', db, '--add-user', 'u1', '--username', 'octocat', '--email', 'octo@example.com', '--timezone', 'Europe/Paris')
    _, out = _run(capsys, '--db', db, '--add-user', 'u1', '--username', 'octo-renamed')
    assert out['added']['email'] == 'octo@example.com'
    assert out['added']['timezone'] == 'Europe/Paris'


def test_add_user_rejects_bad_repository(db):
    with pytest.raises(SystemExit):
        cli.main(['--db', db, '--add-user', 'u1', '--username', 'octocat', '--repo', 'not-a-repo'])


def test_failures_rejects_bad_repository(db):
    with pytest.raises(SystemExit):
        cli.main(['--db', db, '--failures', 'octo/app/extra'])


def test_failure_stats_and_clear(db, capsys):
    now = datetime.now(timezone.utc)
    with Store(db) as store:
        store.append_failure(DeliveryFailureLog('u1', STREAK_RISK, 'smtp down', now - timedelta(days=30), 'network'))
        store.append_failure(DeliveryFailureLog('u1', STREAK_RISK, 'smtp down', now - timedelta(hours=1), 'network'))

    code, stats = _run(capsys, '--db', db, '--failure-stats')
    assert code == 0
    assert stats['total'] == 2
    assert stats['by_age']['last_24h'] == 1

    code, cleared = _run(capsys, '--db', db, '--clear-failures')
    assert cleared == {'deleted': 1}

    code, cleared = _run(capsys, '--db', db, '--clear-failures', '0')
    assert cleared == {'deleted': 1}


def test_sweep_without_secret_fails(db, capsys):
    code, out = _run(capsys, '--db', db, '--sweep')
    assert code == 1
    assert out['error_kind'] == 'unauthorized'
    assert out['retryable'] is False


def test_unknown_user_reports_error(db, capsys):
    code, out = _run(capsys, '--db', db, '--evaluate-user', 'ghost')
    assert code == 1
    assert out['error_kind'] == 'unknown_user'


def test_show_config_redacts_secrets(db, capsys):
    code, out = _run(capsys, '--db', db, '--cron-secret', 'topsecret', '--show-config')
    assert code == 0
    assert out['cron_secret'] == '***'
    assert out['db_path'] == db


def test_no_action_is_usage_error(db):
    with pytest.raises(SystemExit):
        cli.main(['--db', db])
