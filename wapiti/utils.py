import re
from datetime import datetime, timezone
from urllib.parse import urlsplit


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Tag a naive datetime as UTC, or convert an aware one to UTC.

    SQLite drops tzinfo on the way back out, so every datetime read from the
    store passes through here before it is compared with now_utc().
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_or_none(dt: datetime | None) -> str | None:
    dt = as_utc(dt)
    return dt.isoformat() if dt else None


def endpoint_host(endpoint: str | None) -> str:
    """Short, log-safe form of a push endpoint (scheme + host only).

    The path of a push endpoint is a bearer capability for that device, so it
    is never written to logs.
    """
    if not endpoint:
        return '?'
    try:
        parts = urlsplit(endpoint)
        if parts.scheme and parts.netloc:
            return f'{parts.scheme}://{parts.netloc}'
    except ValueError:
        pass
    return '?'


def truncate_endpoint(endpoint: str | None, length: int = 50) -> str:
    if not endpoint:
        return ''
    if len(endpoint) <= length:
        return endpoint
    return endpoint[:length] + '...'


def classify_device(user_agent: str | None) -> str:
    """Best-effort device class from a user agent string. Display only."""
    ua = user_agent or ''
    if re.search(r'Mobile|Android|iPhone|iPad', ua):
        if 'Android' in ua:
            return 'Android Device'
        if 'iPhone' in ua:
            return 'iPhone'
        if 'iPad' in ua:
            return 'iPad'
        return 'Mobile Device'
    if 'Windows' in ua:
        return 'Windows Desktop'
    if 'Mac' in ua:
        return 'Mac Desktop'
    if 'Linux' in ua:
        return 'Linux Desktop'
    return 'Desktop'


def make_device_label(user_agent: str | None, when: datetime | None = None) -> str:
    when = as_utc(when) or now_utc()
    return f"{classify_device(user_agent)} {when.strftime('%Y-%m-%d %H:%M')}"
