"""
Deployment log (operator-facing).

Plain text, one record per line:

    [2025-01-31 14:02:11] INFO | create-site | Starting step: Initiate Site Creation
    [2025-01-31 14:02:09] SUCCESS | Deployment completed successfully!

Timestamps are UTC so lexical and chronological order agree.
"""

import fcntl
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Collection, List, Optional, Union

from deploy_console.schemas.deployment import LogRecord
from deploy_console.utils.time_helpers import format_ts, parse_ts

logger = logging.getLogger(__name__)

LEVELS = ("INFO", "WARNING", "ERROR", "SUCCESS")

# Step keys never contain spaces, which keeps "LEVEL | message | with pipes"
# from being mistaken for a step column.
LOG_LINE_PATTERN = re.compile(
    r"^\[(?P<timestamp>[^\]]+)\]\s+(?P<level>\w+)"
    r"(?:\s+\|\s+(?P<step>[\w.-]+))?"
    r"\s+\|\s+(?P<message>.*)$"
)
TIMESTAMP_PATTERN = re.compile(r"^\[([^\]]+)\]")

Since = Union[datetime, int, float, str]


def format_line(level: str, message: str, step: Optional[str] = None, timestamp: Optional[str] = None) -> str:
    timestamp = timestamp or format_ts()
    step_info = f" | {step}" if step else ""
    # One record per line; embedded newlines would split it
    message = " ".join(str(message).splitlines())
    return f"[{timestamp}] {level.upper()}{step_info} | {message}\n"


def parse_line(line: str, step_keys: Optional[Collection[str]] = None) -> LogRecord:
    """
    Parse a log line; anything that doesn't fit the format becomes an INFO record.

    With step_keys, a step column that is not a known key is read back as the
    head of the message ("Done | ok" stays one message).
    """
    line = line.rstrip("\r\n")
    match = LOG_LINE_PATTERN.match(line)
    if match:
        step = match.group("step")
        message = match.group("message")
        if step is not None and step_keys is not None and step not in step_keys:
            message = f"{step} | {message}"
            step = None
        return LogRecord(
            timestamp=match.group("timestamp"),
            level=match.group("level"),
            step=step,
            message=message,
        )
    return LogRecord(timestamp=format_ts(), level="INFO", step=None, message=line.strip())


def _to_datetime(value: Since) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        value = value.strip()
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        parsed = parse_ts(value)
        if parsed:
            return parsed
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


class LogSink:
    def __init__(self, path: Path, step_keys: Optional[Collection[str]] = None):
        self.path = Path(path)
        # Known step keys; None accepts any word in the step column
        self.step_keys = frozenset(step_keys) if step_keys is not None else None

    def append(self, level: str, message: str, step: Optional[str] = None) -> None:
        """Append one record under an exclusive lock, in a single write."""
        line = format_line(level, message, step).encode("utf-8")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                os.write(fd, line)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def info(self, message: str, step: Optional[str] = None) -> None:
        self.append("INFO", message, step)

    def warning(self, message: str, step: Optional[str] = None) -> None:
        self.append("WARNING", message, step)

    def error(self, message: str, step: Optional[str] = None) -> None:
        self.append("ERROR", message, step)

    def success(self, message: str, step: Optional[str] = None) -> None:
        self.append("SUCCESS", message, step)

    def _read_lines(self) -> List[str]:
        """
        Complete, non-empty lines in append order. A trailing fragment without
        a newline is a write in progress and is left for the next read.
        """
        try:
            content = self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.error(f"Failed to read deployment log {self.path}: {e}")
            return []

        lines = content.split("\n")
        # The last element is either "" (file ends with newline) or a torn line
        lines = lines[:-1]
        return [line for line in lines if line.strip()]

    def tail(self, max_lines: int = 50) -> List[LogRecord]:
        """Last max_lines records, newest first."""
        if max_lines <= 0:
            return []
        lines = self._read_lines()[-max_lines:]
        return [parse_line(line, self.step_keys) for line in reversed(lines)]

    def since(self, since: Since) -> List[LogRecord]:
        """Records strictly newer than `since`, oldest first."""
        threshold = _to_datetime(since)
        if threshold is None:
            logger.warning(f"Unparseable log cursor {since!r}; returning nothing")
            return []

        records = []
        for line in self._read_lines():
            match = TIMESTAMP_PATTERN.match(line)
            if not match:
                continue
            line_time = parse_ts(match.group(1))
            if line_time is not None and line_time > threshold:
                records.append(parse_line(line, self.step_keys))
        return records

    def all(self) -> List[LogRecord]:
        """Every record, oldest first."""
        return [parse_line(line, self.step_keys) for line in self._read_lines()]

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
