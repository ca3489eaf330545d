"""
Step Runner

Executes one pipeline step as a child process and turns its exit code into a
status transition. Step scripts are opaque: the only contract is stdout/stderr
and the exit code.
"""

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional

from deploy_console.core.config import Settings
from deploy_console.exceptions import ConfigurationError, StepExecutionError
from deploy_console.schemas.deployment import DeploymentStep, StepResult, StepState
from deploy_console.services.ledger import DeploymentLedger
from deploy_console.services.log_sink import LogSink
from deploy_console.services.status_store import StatusStore

logger = logging.getLogger(__name__)

# curl progress meters and transfer-rate tables written to stderr
STDERR_NOISE_PATTERNS = [
    re.compile(r"^\s*%\s+Total\s+%\s+Received"),
    re.compile(r"^\s*Dload\s+Upload\s+Total"),
    re.compile(r"^\s*\d+\s+\d+\s+\d+\s+\d+"),
    re.compile(r"^[\s\d:%-]+$"),
]

# Variables stripped from the child environment even if passed as extras
UNSAFE_ENV_VARS = ("SUDO_USER", "SUDO_UID", "SUDO_GID")

# Captured output stored in the relational ledger is truncated
MAX_LEDGER_OUTPUT = 5000


def filter_stderr(stderr: str) -> List[str]:
    """Non-empty stderr lines with progress-meter noise removed."""
    lines = []
    for line in stderr.splitlines():
        trimmed = line.strip()
        if not trimmed:
            continue
        if any(p.search(trimmed) for p in STDERR_NOISE_PATTERNS):
            continue
        lines.append(trimmed)
    return lines


class StepRunner:
    def __init__(
        self,
        settings: Settings,
        status_store: StatusStore,
        log_sink: LogSink,
        ledger: Optional[DeploymentLedger] = None,
    ):
        self.settings = settings
        self.status_store = status_store
        self.log_sink = log_sink
        self.ledger = ledger

    def build_environment(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Fixed environment for step scripts. Nothing is inherited from the
        parent process, so the web server's user, PATH and SSH agent never
        leak into a step.
        """
        env = {
            "PATH": self.settings.STEP_PATH,
            "HOME": self.settings.STEP_HOME,
            "USER": self.settings.STEP_USER,
            "LOGNAME": self.settings.STEP_USER,
            "SSH_AUTH_SOCK": "",
            "LANG": "C.UTF-8",
        }
        if extra:
            env.update(extra)
        for name in UNSAFE_ENV_VARS:
            env.pop(name, None)
        return env

    def resolve_script(self, step: DeploymentStep) -> Path:
        """
        Absolute path of the step's executable.

        Raises:
            ConfigurationError: if the script is missing or not executable
        """
        script = self.settings.path(step.script)
        if not script.is_file():
            raise ConfigurationError(f"Script not found: {script}")
        if not os.access(script, os.X_OK):
            raise ConfigurationError(f"Script not executable: {script}")
        return script

    async def execute(self, step: DeploymentStep, env: Optional[Dict[str, str]] = None) -> StepResult:
        """
        Spawn the step and wait for it. stdin is closed immediately; stdout and
        stderr are drained fully before the exit status is taken.
        """
        script = self.resolve_script(step)
        argv = [str(script), *step.command[1:]]
        logger.info(f"Executing step {step.key}: {' '.join(argv)}")

        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.settings.APP_ROOT),
            env=env if env is not None else self.build_environment(),
        )
        stdout, stderr = await process.communicate()
        return StepResult(
            exit_code=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
            stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
        )

    def _log_output(self, step: DeploymentStep, result: StepResult) -> None:
        stdout_lines = [line for line in result.stdout.strip().splitlines() if line.strip()]
        if stdout_lines:
            self.log_sink.info("STDOUT:", step.key)
            for line in stdout_lines:
                self.log_sink.info(line, step.key)

        stderr_lines = filter_stderr(result.stderr)
        if stderr_lines:
            level = "WARNING" if result.exit_code == 0 else "ERROR"
            self.log_sink.append(level, "STDERR:", step.key)
            for line in stderr_lines:
                self.log_sink.append(level, line, step.key)

    def _is_soft_timeout(self, step: DeploymentStep, exit_code: int) -> bool:
        return step.key == self.settings.MONITORING_STEP and exit_code == self.settings.SOFT_TIMEOUT_EXIT_CODE

    async def probe_site_status(self) -> Optional[dict]:
        """
        Run the site status script once and return its JSON report
        ({"status": ..., "site_id": ...}), or None if it cannot be obtained.
        """
        probe = DeploymentStep(
            key="site-status",
            name="Site Status",
            command=[self.settings.SITE_STATUS_SCRIPT],
        )
        try:
            result = await self.execute(probe)
        except ConfigurationError as e:
            logger.warning(f"Site status probe unavailable: {e}")
            return None
        except OSError as e:
            logger.warning(f"Site status probe failed to start: {e}")
            return None

        try:
            report = json.loads(result.stdout.strip())
        except ValueError:
            logger.warning(f"Site status probe returned non-JSON output: {result.stdout[:200]!r}")
            return None
        return report if isinstance(report, dict) else None

    async def _ledger_finish(self, deployment_id: Optional[str], step: DeploymentStep, state: StepState,
                             result: Optional[StepResult] = None, error: Optional[str] = None) -> None:
        if not (self.ledger and deployment_id):
            return
        output = result.stdout[-MAX_LEDGER_OUTPUT:] if result else None
        if error is None and result and result.exit_code != 0:
            error = result.stderr[-MAX_LEDGER_OUTPUT:]
        await self.ledger.finish_step(deployment_id, step.key, state.value, output, error)

    async def _fail(self, step: DeploymentStep, deployment_id: Optional[str], message: str,
                    exit_code: Optional[int], result: Optional[StepResult] = None) -> StepExecutionError:
        self.log_sink.error(message, step.key)
        self.status_store.fail_step(step.key, message)
        await self._ledger_finish(deployment_id, step, StepState.FAILED, result, error=message)
        return StepExecutionError(step.key, exit_code, message)

    async def run(self, step: DeploymentStep, deployment_id: Optional[str] = None,
                  env: Optional[Dict[str, str]] = None) -> StepResult:
        """
        Run one step with its exit-code policy applied.

        Raises:
            StepExecutionError: on a hard failure, after the step and the run
                have been marked failed in the status store and the log
        """
        self.status_store.start_step(step.key, step.name)
        self.log_sink.info(f"Starting step: {step.name}", step.key)
        if self.ledger and deployment_id:
            await self.ledger.log_step(deployment_id, step.key, step.name)

        try:
            result = await self.execute(step, env)
        except ConfigurationError as e:
            raise await self._fail(step, deployment_id, f"Deployment failed at step: {step.name} ({e})", None)
        except OSError as e:
            raise await self._fail(
                step, deployment_id, f"Deployment failed at step: {step.name} (failed to execute {step.script}: {e})", None
            )

        self._log_output(step, result)

        exit_code = result.exit_code
        if exit_code == 0:
            level = "SUCCESS"
        elif self._is_soft_timeout(step, exit_code):
            level = "WARNING"
        else:
            level = "ERROR"
        self.log_sink.append(level, f"Exit status: {exit_code}", step.key)

        if exit_code != 0:
            if not self._is_soft_timeout(step, exit_code):
                raise await self._fail(
                    step,
                    deployment_id,
                    f"Deployment failed at step: {step.name} (exit code: {exit_code})",
                    exit_code,
                    result,
                )

            self.log_sink.warning(f"Monitoring timed out for step: {step.name}. Checking final status...", step.key)
            report = await self.probe_site_status()
            if report and report.get("status") == "completed":
                site_id = report.get("site_id") or "Unknown"
                self.log_sink.success(
                    f"Operation completed successfully despite monitoring timeout (site ID: {site_id})",
                    step.key,
                )
            else:
                self.log_sink.warning(
                    "Operation still not complete after timeout. Continuing with next steps anyway.",
                    step.key,
                )

        self.status_store.complete_step(step.key, step.name)
        await self._ledger_finish(deployment_id, step, StepState.COMPLETED, result)
        self.log_sink.success(f"Completed step: {step.name}", step.key)
        return result
