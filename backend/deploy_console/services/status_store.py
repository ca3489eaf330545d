"""
Status Store

Durable JSON document describing the current deployment. The background runner
is the only writer during a run; web requests read it while it is being
rewritten, so every write goes to a temp file that is renamed over the target.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from deploy_console.schemas.deployment import (
    CORRELATION_FIELDS,
    DeploymentState,
    DeploymentStatus,
    StepState,
    StepTiming,
)
from deploy_console.utils.time_helpers import format_ts, now_ts

logger = logging.getLogger(__name__)

# The status document keeps a short trail of state changes for the UI
MAX_STATUS_LOGS = 50

_KNOWN_FIELDS = set(DeploymentStatus.model_fields)


class StatusReadError(Exception):
    """The status file exists but does not hold a valid document."""


class StatusStore:
    def __init__(self, path: Path):
        self.path = Path(path)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_document(self) -> Optional[Dict[str, Any]]:
        """
        Return the raw document, or None if the file does not exist.

        Raises:
            StatusReadError: if the file cannot be read or is not a JSON object
        """
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StatusReadError(f"Cannot read {self.path}: {e}") from e

        try:
            data = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise StatusReadError(f"Malformed status document: {e}") from e
        if not isinstance(data, dict):
            raise StatusReadError("Status document is not a JSON object")
        return data

    def read(self) -> DeploymentStatus:
        """
        Current status. Never raises: a missing file reads as idle, a corrupt
        one as status=error.
        """
        try:
            data = self.read_document()
        except StatusReadError as e:
            logger.error(f"Failed to read deployment status: {e}")
            return DeploymentStatus(
                status=DeploymentState.ERROR,
                message="Failed to read deployment status",
            )

        if data is None:
            return DeploymentStatus(
                status=DeploymentState.IDLE,
                message="No deployment in progress",
            )

        try:
            return DeploymentStatus.model_validate(data)
        except ValidationError as e:
            logger.error(f"Deployment status document failed validation: {e}")
            return DeploymentStatus(
                status=DeploymentState.ERROR,
                message="Failed to read deployment status",
            )

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def write(self, status: Union[DeploymentStatus, Dict[str, Any]]) -> None:
        """Atomically replace the document (temp file + fsync + rename)."""
        document = status.to_document() if isinstance(status, DeploymentStatus) else dict(status)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=4)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def write_preserving(self, status: Union[DeploymentStatus, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Overwrite the document, carrying forward correlation fields and
        unknown keys from the previous one when the new document lacks them.

        Returns the document actually written.
        """
        document = status.to_document() if isinstance(status, DeploymentStatus) else dict(status)

        try:
            previous = self.read_document() or {}
        except StatusReadError as e:
            logger.warning(f"Previous status unreadable, nothing to preserve: {e}")
            previous = {}

        for field in CORRELATION_FIELDS:
            old_value = previous.get(field)
            if field not in document and old_value not in (None, ""):
                document[field] = old_value
                logger.info(f"Preserving {field}={old_value!r} in deployment status")

        for key, value in previous.items():
            if key not in _KNOWN_FIELDS and key not in document:
                document[key] = value

        self.write(document)
        return document

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    # ------------------------------------------------------------------
    # Run / step transitions (used by the background runner)
    # ------------------------------------------------------------------

    def _load_for_update(self) -> DeploymentStatus:
        current = self.read()
        if current.status == DeploymentState.ERROR:
            # Start over rather than propagate a corrupt document
            return DeploymentStatus()
        return current

    def _save(self, status: DeploymentStatus, note: Optional[str] = None) -> DeploymentStatus:
        now = now_ts()
        status.timestamp = now
        status.last_update = format_ts(now)
        if note:
            status.logs = (status.logs + [note])[-MAX_STATUS_LOGS:]
        self.write_preserving(status)
        return status

    def start_run(self, deployment_id: Optional[str] = None) -> DeploymentStatus:
        status = self._load_for_update()
        status.status = DeploymentState.RUNNING
        if deployment_id and deployment_id != status.deployment_id:
            # A different run: timings of the previous one do not carry over
            status.deployment_id = deployment_id
            status.step_timings = {}
            status.deployment_start_time = None
            status.deployment_start_time_formatted = None
            status.deployment_end_time = None
            status.deployment_end_time_formatted = None
            status.total_duration = None
        if status.deployment_start_time is None:
            now = now_ts()
            status.deployment_start_time = now
            status.deployment_start_time_formatted = format_ts(now)
        status.message = "Deployment running"
        return self._save(status, "Background deployment process started")

    def start_step(self, step_key: str, step_name: str) -> DeploymentStatus:
        status = self._load_for_update()
        status.status = DeploymentState.RUNNING
        status.step = step_key
        status.current_step = step_key
        status.message = f"Running: {step_name}"
        if step_key not in status.step_timings:
            now = now_ts()
            status.step_timings[step_key] = StepTiming(
                start_time=now,
                start_time_formatted=format_ts(now),
                status=StepState.RUNNING,
            )
        return self._save(status, f"Started {step_name}")

    def _end_step(self, status: DeploymentStatus, step_key: str, state: StepState) -> None:
        timing = status.step_timings.get(step_key)
        if timing is None:
            return
        now = max(now_ts(), timing.start_time)
        timing.end_time = now
        timing.end_time_formatted = format_ts(now)
        timing.duration = now - timing.start_time
        timing.status = state

    def complete_step(self, step_key: str, step_name: str) -> DeploymentStatus:
        status = self._load_for_update()
        self._end_step(status, step_key, StepState.COMPLETED)
        status.message = f"Completed: {step_name}"
        return self._save(status, f"Completed {step_name}")

    def fail_step(self, step_key: str, message: str) -> DeploymentStatus:
        status = self._load_for_update()
        self._end_step(status, step_key, StepState.FAILED)
        status.step = step_key
        status.current_step = step_key
        return self._finish(status, DeploymentState.FAILED, message)

    def finish_run(self, state: DeploymentState, message: str) -> DeploymentStatus:
        return self._finish(self._load_for_update(), state, message)

    def _finish(self, status: DeploymentStatus, state: DeploymentState, message: str) -> DeploymentStatus:
        status.status = state
        status.message = message
        if status.deployment_end_time is None:
            now = now_ts()
            status.deployment_end_time = now
            status.deployment_end_time_formatted = format_ts(now)
            if status.deployment_start_time is not None:
                status.total_duration = max(0, now - status.deployment_start_time)
        return self._save(status, message)
