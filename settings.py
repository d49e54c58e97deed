"""
Configuration loading.
Defaults live here; config/settings.yaml overrides them and GITFORT_* environment variables override both.
"""
from typing import Dict, Any, Optional
import logging
import os

import yaml

logger = logging.getLogger(__name__)

# filename used for the YAML configuration
SETTINGS_FILENAME = 'settings.yaml'
ENV_PREFIX = 'GITFORT_'

DEFAULT_SETTINGS: Dict[str, Any] = {
    # streak policy
    'risk_cutoff': '18:00',  # local time after which a zero-contribution day puts a live streak at risk
    'default_timezone': 'UTC',
    'calendar_lookback_days': 365,
    # workflow policy
    'workflow_lookback_days': 7,
    'flaky_flip_threshold': 3,
    'max_pages': 10,
    # sweep / storage
    'sweep_max_workers': 4,
    'cas_retries': 3,
    'failure_retention_days': 7,
    'db_path': 'gitfort.db',
    'cron_secret': '',
    # github
    'github_api_url': 'https://api.github.com',
    'github_graphql_url': 'https://api.github.com/graphql',
    'github_token': '',
    'request_timeout': 10.0,
    # email
    'dashboard_url': 'http://localhost:3000/dashboard',
    'smtp_host': 'localhost',
    'smtp_port': 587,
    'smtp_user': '',
    'smtp_password': '',
    'smtp_from': 'GitFort <noreply@gitfort.local>',
    'smtp_timeout': 30.0,
    'smtp_starttls': True,
}


def default_settings_path() -> str:
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), 'config', SETTINGS_FILENAME)


def _coerce(value: Any, default: Any) -> Any:
    """Coerce a raw (string) override to the type of its default."""
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return '' if value is None else str(value)


class Settings:
    """
    Resolved configuration. Attribute access mirrors the DEFAULT_SETTINGS keys.
    """
    def __init__(self, values: Optional[Dict[str, Any]] = None):
        merged = DEFAULT_SETTINGS.copy()
        for k, v in (values or {}).items():
            if k in DEFAULT_SETTINGS:
                merged[k] = _coerce(v, DEFAULT_SETTINGS[k])
            else:
                logger.warning("Ignoring unknown setting %r", k)
        self._values = merged
        parse_hhmm(merged['risk_cutoff'])

    def __getattr__(self, name: str) -> Any:
        try:
            return self.__dict__['_values'][name]
        except KeyError:
            raise AttributeError(name)

    @property
    def risk_cutoff_minutes(self) -> int:
        return parse_hhmm(self._values['risk_cutoff'])

    def as_dict(self, redact: bool = True) -> Dict[str, Any]:
        out = dict(self._values)
        if redact:
            for k in ('cron_secret', 'github_token', 'smtp_password'):
                if out.get(k):
                    out[k] = '***'
        return out


def parse_hhmm(text: str) -> int:
    """Return minutes past midnight for an 'HH:MM' string."""
    try:
        hours, minutes = str(text).split(':')
        h, m = int(hours), int(minutes)
    except ValueError:
        raise ValueError(f"Expected HH:MM, got {text!r}")
    if not (0 <= h <= 23 and 0 <= m <= 59):
        raise ValueError(f"Expected HH:MM, got {text!r}")
    return h * 60 + m


def _load_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping")
    return data


def _env_overrides() -> Dict[str, Any]:
    overrides = {}
    for key in DEFAULT_SETTINGS:
        raw = os.getenv(ENV_PREFIX + key.upper())
        if raw is not None and raw != '':
            overrides[key] = raw
    # conventional names used by deployment tooling
    if 'github_token' not in overrides and os.getenv('GITHUB_TOKEN'):
        overrides['github_token'] = os.getenv('GITHUB_TOKEN')
    if 'cron_secret' not in overrides and os.getenv('CRON_SECRET'):
        overrides['cron_secret'] = os.getenv('CRON_SECRET')
    return overrides


def load_settings(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Settings:
    """
    Load settings from YAML (if present) and the environment.
    Explicit `overrides` (e.g. from CLI flags) take precedence over everything else.
    """
    values: Dict[str, Any] = {}
    values.update(_load_yaml(path or default_settings_path()))
    values.update(_env_overrides())
    values.update({k: v for k, v in (overrides or {}).items() if v is not None})
    return Settings(values)


__all__ = ["Settings", "load_settings", "parse_hhmm", "DEFAULT_SETTINGS"]
