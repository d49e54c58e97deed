import pytest

from settings import DEFAULT_SETTINGS, Settings, load_settings, parse_hhmm


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in DEFAULT_SETTINGS:
        monkeypatch.delenv('GITFORT_' + key.upper(), raising=False)
    monkeypatch.delenv('GITHUB_TOKEN', raising=False)
    monkeypatch.delenv('CRON_SECRET', raising=False)


def test_defaults_when_file_missing(tmp_path):
    settings = load_settings(str(tmp_path / 'missing.yaml'))
    assert settings.risk_cutoff == '18:00'
    assert settings.risk_cutoff_minutes == 18 * 60
    assert settings.flaky_flip_threshold == 3


def test_yaml_then_env_then_overrides(tmp_path, monkeypatch):
    path = tmp_path / 'settings.yaml'
    path.write_text('risk_cutoff: "20:30"\nsweep_max_workers: 8\ncas_retries: 5\n', encoding='utf-8')
    monkeypatch.setenv('GITFORT_SWEEP_MAX_WORKERS', '2')
    monkeypatch.setenv('GITFORT_SMTP_STARTTLS', 'false')
    monkeypatch.setenv('CRON_SECRET', 'from-env')
    settings = load_settings(str(path), overrides={'cas_retries': 9, 'db_path': None})
    assert settings.risk_cutoff_minutes == 20 * 60 + 30
    assert settings.sweep_max_workers == 2
    assert settings.smtp_starttls is False
    assert settings.cron_secret == 'from-env'
    assert settings.cas_retries == 9
    assert settings.db_path == 'gitfort.db'


def test_non_mapping_yaml_is_rejected(tmp_path):
    path = tmp_path / 'settings.yaml'
    path.write_text('- just\n- a list\n', encoding='utf-8')
    with pytest.raises(ValueError):
        load_settings(str(path))


@pytest.mark.parametrize('value', ['25:00', '18', 'six pm', '18:60'])
def test_invalid_risk_cutoff(value):
    with pytest.raises(ValueError):
        Settings({'risk_cutoff': value})


def test_unknown_keys_are_ignored():
    settings = Settings({'not_a_setting': 1})
    with pytest.raises(AttributeError):
        settings.not_a_setting


def test_as_dict_redacts_secrets():
    settings = Settings({'cron_secret': 'abc', 'github_token': 'ghp_x'})
    shown = settings.as_dict()
    assert shown['cron_secret'] == '***'
    assert shown['github_token'] == '***'
    assert shown['smtp_password'] == ''
    assert settings.as_dict(redact=False)['cron_secret'] == 'abc'


def test_parse_hhmm():
    assert parse_hhmm('00:00') == 0
    assert parse_hhmm('23:59') == 23 * 60 + 59
