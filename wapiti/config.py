"""Runtime configuration for the Wapiti reminder service.

Settings are read from environment variables at import time so the same
code can run in development, tests and production without edits.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


# SQLAlchemy async URL of the registration/task store.
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./wapiti.db')

# VAPID credentials used to sign push requests. The private key may be a
# base64url-encoded raw key, a DER blob or a path to a PEM file (anything
# pywebpush accepts). Never log these values.
VAPID_PUBLIC_KEY = os.getenv('VAPID_PUBLIC_KEY', '')
VAPID_PRIVATE_KEY = os.getenv('VAPID_PRIVATE_KEY', '')
VAPID_SUBJECT = os.getenv('VAPID_SUBJECT', 'mailto:admin@example.com')

# Reminders up to this many minutes in the future are treated as due, to
# absorb clock skew and scan granularity.
REMINDER_FUTURE_WINDOW_MINUTES = _int_env('REMINDER_FUTURE_WINDOW_MINUTES', 5)

# Reminders older than this are stale: they are no longer pushed but are
# acknowledged so they stop being retried.
REMINDER_STALE_CEILING_MINUTES = _int_env('REMINDER_STALE_CEILING_MINUTES', 30)

# Window used for the device-side upcoming snapshot.
UPCOMING_HORIZON_HOURS = _int_env('UPCOMING_HORIZON_HOURS', 24)

# Server-side scan loop. Disable with REMINDER_SCAN_ENABLE=0 when an
# external cron job calls scripts/run_reminder_scan.py instead.
REMINDER_SCAN_ENABLE = _trueish(os.getenv('REMINDER_SCAN_ENABLE', '1'))
REMINDER_SCAN_INTERVAL_SECONDS = _int_env('REMINDER_SCAN_INTERVAL_SECONDS', 60)

# Shared secret that lets a scheduled job hit POST /reminders/run without a
# user token. Empty disables token-based triggering.
REMINDER_TRIGGER_TOKEN = os.getenv('REMINDER_TRIGGER_TOKEN', '')

# Push transport settings.
PUSH_TTL_SECONDS = _int_env('PUSH_TTL_SECONDS', 86400)
PUSH_TIMEOUT_SECONDS = _float_env('PUSH_TIMEOUT_SECONDS', 10.0)
# Total attempts for a push call that fails before any response arrives.
PUSH_CONNECT_RETRIES = _int_env('PUSH_CONNECT_RETRIES', 2)

DEFAULT_SNOOZE_MINUTES = _int_env('DEFAULT_SNOOZE_MINUTES', 15)

# +/- fraction applied to every scheduled interval.
SCHEDULE_JITTER = _float_env('SCHEDULE_JITTER', 0.1)

# Optional local overrides: define variables in wapiti/local_config.py to
# extend or override the defaults above. Keep that file out of git.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    pass
