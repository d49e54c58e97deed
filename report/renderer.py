"""
Notification renderer: subject, plain-text and HTML bodies for each notification type.
Bodies come from report/templates/<type>.txt.j2 and <type>.html.j2; HTML templates are autoescaped.
"""

from typing import Optional, Dict, Any, Tuple
import os
import logging

from jinja2 import Environment, FileSystemLoader, select_autoescape

from normalize.models import NotificationEvent, UserProfile, STREAK_RISK, BUILD_FAILURE, WEEKLY_DIGEST, SECURITY_ALERT

logger = logging.getLogger(__name__)

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), 'templates')

SUBJECTS = {
    STREAK_RISK: "GitHub Streak {{ 'URGENT' if risk_level == 'critical' else 'Alert' }}: "
                 "{{ payload.current_streak }}-day streak {{ 'ending soon' if risk_level == 'critical' else 'at risk' }}",
    BUILD_FAILURE: "GitFort CI/CD Alert: {{ payload.workflow_name }} "
                   "{{ 'is flaky' if payload.severity == 'flaky' else 'failed' }} in {{ payload.repository }}",
    WEEKLY_DIGEST: "GitFort Weekly Digest: {{ payload.commits }} contributions, {{ payload.current_streak }}-day streak",
    SECURITY_ALERT: "GitFort Security Alert: {{ payload.vulnerabilities | length }} vulnerabilities in {{ payload.repository }}",
}

_env: Optional[Environment] = None


def get_environment() -> Environment:
    """Lazily build the shared Jinja2 environment."""
    global _env
    if _env is None:
        _env = Environment(
            loader=FileSystemLoader(TEMPLATES_DIR),
            autoescape=select_autoescape(['html', 'xml', 'html.j2'], default_for_string=False),
            trim_blocks=True,
            lstrip_blocks=True,
        )
    return _env


def _display_name(user: Optional[UserProfile]) -> str:
    if user is None:
        return 'there'
    return user.username or user.user_id


def build_context(event: NotificationEvent, user: Optional[UserProfile], dashboard_url: str = '', extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    context = {
        'type': event.type,
        'username': _display_name(user),
        'payload': event.payload.to_dict(),
        'timestamp': event.timestamp,
        'dashboard_url': dashboard_url,
        'risk_level': None,
        'recommendations': [],
    }
    context.update(extra or {})
    return context


def render_notification(event: NotificationEvent, user: Optional[UserProfile] = None, dashboard_url: str = '', extra: Optional[Dict[str, Any]] = None) -> Tuple[str, str, str]:
    """Render (subject, text, html) for an event.

    `extra` is merged into the template context (e.g. risk_level and recommendations for streak alerts).
    """
    env = get_environment()
    context = build_context(event, user, dashboard_url, extra)
    subject = env.from_string(SUBJECTS[event.type]).render(**context).strip()
    text = env.get_template(f"{event.type}.txt.j2").render(**context).strip() + "\n"
    html = env.get_template(f"{event.type}.html.j2").render(**context)
    logger.debug("Rendered %s notification for %s", event.type, event.user_id)
    return subject, text, html


__all__ = ["render_notification", "build_context", "get_environment", "SUBJECTS"]
