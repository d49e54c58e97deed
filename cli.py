"""
CLI entry point for gitfort. Wires the engine: gateway -> streak/workflow engines -> store -> notifications
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional, List

from errors import GitFortError
from ingest.github import GitHubGateway
from ingest.retry import configure_retry
from normalize.models import UserProfile
from notify.dispatcher import NotificationDispatcher
from notify.transport import SmtpTransport
from settings import Settings, load_settings
from storage.store import Store
from tracker import ActivityTracker, split_repository

logger = logging.getLogger(__name__)

RETENTION_DEFAULT = "retention"


def _print_json(obj):
    print(json.dumps(obj, indent=2, default=str))


def build_tracker(settings: Settings, store: Store) -> ActivityTracker:
    gateway = GitHubGateway(
        settings.github_token,
        base_url=settings.github_api_url,
        graphql_url=settings.github_graphql_url,
        timeout=settings.request_timeout,
        max_pages=settings.max_pages,
    )
    dispatcher = NotificationDispatcher.from_settings(store, SmtpTransport.from_settings(settings), settings)
    return ActivityTracker(gateway, store, dispatcher, settings)


def _add_user(args, store: Store, parser):
    if not args.username:
        parser.error("--add-user requires --username")
    existing = store.get_user(args.add_user)
    user = UserProfile(
        user_id=args.add_user,
        username=args.username,
        email=args.email or (existing.email if existing else None),
        timezone=args.timezone or (existing.timezone if existing else None),
        repositories=args.repo or (existing.repositories if existing else None),
    )
    for full_name in user.repositories:
        try:
            split_repository(full_name)
        except ValueError as ex:
            parser.error(str(ex))
    store.put_user(user)
    store.get_or_create_preferences(user.user_id)
    return {'added': user.to_dict()}


def _repo_arg(value: str, parser):
    try:
        return split_repository(value)
    except ValueError as ex:
        parser.error(str(ex))


def run_command(args, tracker: ActivityTracker, store: Store, parser):
    """Execute the action selected by the flags and return a JSON-serializable result."""
    if args.add_user:
        return _add_user(args, store, parser)
    if args.evaluate_user:
        return tracker.evaluate_user_streak(args.evaluate_user)
    if args.weekly_digest:
        return tracker.send_weekly_digest(args.weekly_digest)
    if args.failures:
        owner, repo = _repo_arg(args.failures, parser)
        return [e.to_dict() for e in tracker.detect_repository_failures(owner, repo, args.lookback_days)]
    if args.metrics:
        owner, repo = _repo_arg(args.metrics, parser)
        return tracker.get_workflow_metrics(owner, repo, args.lookback_days)
    if args.sweep:
        return tracker.run_scheduled_sweep(args.cron_secret or tracker.settings.cron_secret)
    if args.failure_stats:
        return tracker.dispatcher.get_failure_stats()
    if args.clear_failures is not None:
        days = tracker.settings.failure_retention_days if args.clear_failures == RETENTION_DEFAULT else args.clear_failures
        return {'deleted': tracker.dispatcher.clear_old_failures(days)}
    if args.show_config:
        return tracker.settings.as_dict(redact=True)
    parser.error("no action given (see --help)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="GitFort activity tracking and alerting")
    parser.add_argument("--db", type=str, default=None, help="Path to SQLite database (overrides db_path setting)")
    parser.add_argument("--config", type=str, default=None, help="Path to settings YAML (default: config/settings.yaml)")
    parser.add_argument("--log-level", type=str, default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("--github-token", type=str, default=None, help="GitHub token (overrides GITHUB_TOKEN env)")
    parser.add_argument("--evaluate-user", type=str, default="", help="Evaluate the streak of a known user id")
    parser.add_argument("--weekly-digest", type=str, default="", help="Send the weekly digest to a known user id")
    parser.add_argument("--failures", type=str, default="", help="Detect workflow failures for OWNER/REPO")
    parser.add_argument("--metrics", type=str, default="", help="Workflow metrics for OWNER/REPO")
    parser.add_argument("--lookback-days", type=int, default=None, help="Workflow lookback window in days (default from settings)")
    parser.add_argument("--sweep", action="store_true", help="Run the scheduled sweep over all known users")
    parser.add_argument("--cron-secret", type=str, default=None, help="Shared secret for --sweep (overrides GITFORT_CRON_SECRET env)")
    parser.add_argument("--failure-stats", action="store_true", help="Show delivery failure statistics")
    parser.add_argument("--clear-failures", type=int, nargs="?", const=RETENTION_DEFAULT, default=None, metavar="DAYS", help="Delete delivery failure logs older than DAYS (default: failure_retention_days)")
    parser.add_argument("--show-config", action="store_true", help="Print resolved settings (secrets redacted)")
    parser.add_argument("--add-user", type=str, default="", metavar="USER_ID", help="Register or update a known user")
    parser.add_argument("--username", type=str, default="", help="GitHub login for --add-user")
    parser.add_argument("--email", type=str, default="", help="Notification email for --add-user")
    parser.add_argument("--timezone", type=str, default="", help="IANA timezone for --add-user (default UTC)")
    parser.add_argument("--repo", type=str, action="append", default=[], help="Watched OWNER/REPO for --add-user (repeatable)")
    # retry/backoff knobs: optional CLI overrides. Environment variables GITFORT_MAX_RETRIES, GITFORT_BACKOFF_BASE,
    # GITFORT_BACKOFF_JITTER, GITFORT_MAX_BACKOFF may also be used to set defaults.
    parser.add_argument("--max-retries", type=int, default=None, help="Maximum retry attempts for HTTP requests (overrides GITFORT_MAX_RETRIES env)")
    parser.add_argument("--backoff-base", type=float, default=None, help="Base backoff seconds (overrides GITFORT_BACKOFF_BASE env)")
    parser.add_argument("--backoff-jitter", type=float, default=None, help="Jitter seconds added to backoff (overrides GITFORT_BACKOFF_JITTER env)")
    parser.add_argument("--max-backoff", type=float, default=None, help="Maximum backoff cap in seconds (overrides GITFORT_MAX_BACKOFF env)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    # CLI flags take precedence over environment variables
    configure_retry(max_retries=args.max_retries, backoff_base=args.backoff_base, backoff_jitter=args.backoff_jitter, max_backoff=args.max_backoff)

    settings = load_settings(args.config, overrides={'db_path': args.db, 'github_token': args.github_token, 'cron_secret': args.cron_secret})

    try:
        with Store(settings.db_path) as store:
            tracker = build_tracker(settings, store)
            result = run_command(args, tracker, store, parser)
    except GitFortError as ex:
        logger.error("%s: %s", ex.kind, ex)
        _print_json({'error': str(ex), 'error_kind': ex.kind, 'retryable': ex.retryable, 'at': datetime.now(timezone.utc).isoformat()})
        return 1
    _print_json(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
