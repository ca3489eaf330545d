import time
from datetime import datetime, timezone
from typing import Optional

# Stable UTC form used in the deployment log and the status document.
# Lexical order equals chronological order.
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def now_ts() -> int:
    return int(time.time())


def format_ts(ts: Optional[float] = None) -> str:
    """Format an epoch timestamp (default: now) as UTC 'YYYY-MM-DD HH:MM:SS'."""
    if ts is None:
        ts = time.time()
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_ts(value: str) -> Optional[datetime]:
    """Parse a log timestamp back into an aware UTC datetime, or None."""
    try:
        return datetime.strptime(value.strip(), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except (ValueError, AttributeError):
        return None


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 instant as returned by the GitHub API ('...Z')."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
