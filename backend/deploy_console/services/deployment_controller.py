"""
Deployment Controller

Owns the ordered step pipeline. The web tier calls the trigger_* methods,
which validate preconditions, write the initial status and start the
background runner (deploy_console.runner) as a detached process; the runner
then calls run_pipeline() in that process. Status, log and history queries
read the shared files and never raise.
"""

import asyncio
import json
import logging
import os
import re
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Union

import httpx

from deploy_console.core.config import Settings, load_git_config
from deploy_console.exceptions import (
    ConfigurationError,
    DeploymentInProgressError,
    StepExecutionError,
)
from deploy_console.schemas.deployment import (
    DeploymentHistoryEntry,
    DeploymentState,
    DeploymentStatus,
    DeploymentStep,
    HistoryStep,
    LogRecord,
    ScriptCheck,
    StepInfo,
    SystemStatus,
    TriggerResult,
)
from deploy_console.services.clickup_service import ClickUpNotifier
from deploy_console.services.github_actions import RunReferenceStore
from deploy_console.services.launcher import kill_matching, launch_detached, resolve_interpreter
from deploy_console.services.ledger import DeploymentLedger
from deploy_console.services.log_sink import LogSink, Since
from deploy_console.services.status_store import StatusStore
from deploy_console.services.step_runner import StepRunner
from deploy_console.utils.time_helpers import format_ts, now_ts

logger = logging.getLogger(__name__)

RUNNER_MODULE = "deploy_console.runner"

# The fixed pipeline, in execution order
PIPELINE: Dict[str, Dict[str, str]] = {
    "create-site": {
        "name": "Initiate Site Creation",
        "description": "Initiate site creation on Kinsta",
        "script": "scripts/site.sh",
    },
    "get-cred": {
        "name": "Get Credentials",
        "description": "Retrieve site credentials and wait for completion",
        "script": "scripts/creds.sh",
    },
    "trigger-deploy": {
        "name": "Trigger Deployment",
        "description": "Upload configs and trigger GitHub Actions deployment",
        "script": "scripts/deploy.sh",
    },
    "github-actions": {
        "name": "GitHub Actions",
        "description": "Monitor GitHub Actions deployment status and logs",
        "script": "scripts/github-actions-monitor.sh",
    },
}
REPEAT_STEP = "trigger-deploy"

# Markers written by run_pipeline(); history() groups log lines between them
START_MARKER = "Starting background deployment process"
COMPLETE_MARKER = "Deployment completed successfully"
FAILURE_MARKER = "Deployment failed"
CANCEL_MARKER = "Deployment stopped"
_DEPLOYMENT_ID_IN_MARKER = re.compile(r"\(([\w-]+)\)")
HISTORY_SCAN_LINES = 2000

StepSelection = Optional[Union[str, Sequence[str]]]


def generate_deployment_id() -> str:
    return f"deploy-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


class DeploymentController:
    def __init__(
        self,
        settings: Settings,
        status_store: StatusStore,
        log_sink: LogSink,
        run_reference: RunReferenceStore,
        step_runner: StepRunner,
        ledger: Optional[DeploymentLedger] = None,
        notifier: Optional[ClickUpNotifier] = None,
    ):
        self.settings = settings
        self.status_store = status_store
        self.log_sink = log_sink
        self.run_reference = run_reference
        self.step_runner = step_runner
        self.ledger = ledger or DeploymentLedger()
        self.notifier = notifier

    @classmethod
    def from_settings(cls, settings: Settings, ledger: Optional[DeploymentLedger] = None) -> "DeploymentController":
        status_store = StatusStore(settings.path(settings.STATUS_FILE))
        log_sink = LogSink(settings.path(settings.LOG_FILE), step_keys=PIPELINE)
        ledger = ledger if ledger is not None else DeploymentLedger.from_settings(settings)
        return cls(
            settings=settings,
            status_store=status_store,
            log_sink=log_sink,
            run_reference=RunReferenceStore(settings.path(settings.RUN_ID_FILE)),
            step_runner=StepRunner(settings, status_store, log_sink, ledger),
            ledger=ledger,
            notifier=ClickUpNotifier(settings),
        )

    # ------------------------------------------------------------------
    # Pipeline definition
    # ------------------------------------------------------------------

    @staticmethod
    def pipeline_steps() -> List[DeploymentStep]:
        return [
            DeploymentStep(key=key, name=info["name"], description=info["description"], command=[info["script"]])
            for key, info in PIPELINE.items()
        ]

    @staticmethod
    def available_steps() -> Dict[str, StepInfo]:
        return {key: StepInfo(name=info["name"], description=info["description"]) for key, info in PIPELINE.items()}

    def select_steps(self, steps: StepSelection = None) -> List[DeploymentStep]:
        """
        Resolve a step filter to pipeline steps, always in pipeline order.

        Raises:
            ConfigurationError: for an unknown step key
        """
        all_steps = self.pipeline_steps()
        if not steps:
            return all_steps

        if isinstance(steps, str):
            requested = [s.strip() for s in steps.split(",") if s.strip()]
        else:
            requested = [s.strip() for s in steps if s and s.strip()]

        invalid = [key for key in requested if key not in PIPELINE]
        if invalid:
            raise ConfigurationError(f"Invalid deployment step: {', '.join(invalid)}")
        return [step for step in all_steps if step.key in requested]

    def _is_demo_mode(self, test_mode: bool) -> bool:
        """
        Demo mode when asked for, or when GitHub was never configured at all.

        Raises:
            ConfigurationError: if config/git.json exists but no token is available
        """
        git = load_git_config(self.settings)
        if git.token:
            return test_mode
        if test_mode:
            return True
        if git.file_present:
            raise ConfigurationError(
                "GitHub token not configured. Please set GITHUB_TOKEN environment variable "
                "or add 'token' to git.json configuration."
            )
        return True

    # ------------------------------------------------------------------
    # Triggering (web tier)
    # ------------------------------------------------------------------

    def _ensure_idle(self, force: bool) -> None:
        current = self.status_store.read()
        if current.is_active and not force:
            raise DeploymentInProgressError(
                f"A deployment is already {current.status.value}"
                f"{f' ({current.deployment_id})' if current.deployment_id else ''}. "
                "Stop it first or pass force=true."
            )

    def _launch(self, steps: List[DeploymentStep], demo: bool, initial_step: str,
                initial_message: str, note: str, wrapper: str, all_steps: bool) -> TriggerResult:
        interpreter = resolve_interpreter(self.settings.INTERPRETER_CANDIDATES)
        deployment_id = generate_deployment_id()
        step_keys = [step.key for step in steps]

        command = [interpreter, "-m", RUNNER_MODULE, "--deployment-id", deployment_id]
        if not all_steps:
            command += ["--steps", ",".join(step_keys)]
        if demo:
            command.append("--test")

        # Nothing is written until every precondition has passed
        self.reset()
        self.status_store.write_preserving(DeploymentStatus(
            status=DeploymentState.STARTING,
            step=initial_step,
            message=initial_message,
            timestamp=now_ts(),
            last_update=format_ts(),
            logs=[note],
            deployment_id=deployment_id,
        ))

        wrapper_path = self.settings.path(wrapper)
        pid = launch_detached(
            command,
            wrapper_path=wrapper_path,
            log_file=self.settings.path(self.settings.LOG_FILE),
            cwd=self.settings.APP_ROOT,
        )
        self.log_sink.info(f"Background runner launched for {deployment_id} (PID {pid or 'unknown'})")

        return TriggerResult(
            message="Deployment started in background",
            deployment_id=deployment_id,
            steps=step_keys,
            script_path=str(wrapper_path),
            pid=pid,
            demo_mode=demo,
        )

    def trigger_full(self, steps: StepSelection = None, force: bool = False, test_mode: bool = False) -> TriggerResult:
        """
        Start the pipeline (or a subset of it) in the background and return
        immediately.

        Raises:
            DeploymentInProgressError: if a run is active and force is False
            ConfigurationError: for a missing credential, script or interpreter
        """
        self._ensure_idle(force)
        selected = self.select_steps(steps)
        demo = self._is_demo_mode(test_mode)
        if not demo:
            for step in selected:
                self.step_runner.resolve_script(step)

        return self._launch(
            selected,
            demo,
            initial_step="initializing",
            initial_message="Deployment initialization...",
            note="Deployment requested from web interface",
            wrapper=self.settings.RUNNER_SCRIPT,
            all_steps=not steps,
        )

    def run_step(self, step_key: str, force: bool = False) -> TriggerResult:
        if step_key not in PIPELINE:
            raise ConfigurationError(f"Invalid deployment step: {step_key}")
        return self.trigger_full([step_key], force=force)

    def _credentials_exist(self) -> bool:
        for artifact in self.settings.CREDENTIAL_ARTIFACTS:
            path = self.settings.path(artifact)
            try:
                if path.read_text(encoding="utf-8").strip():
                    return True
            except OSError:
                continue

        git = load_git_config(self.settings)
        site_file = self.settings.path(self.settings.SITE_CONFIG_FILE)
        try:
            site = json.loads(site_file.read_text(encoding="utf-8")) or {}
        except (OSError, ValueError):
            return False
        return bool(git.token and site.get("kinsta_token"))

    def trigger_repeat(self, force: bool = False) -> TriggerResult:
        """
        Re-run only the deploy step against credentials left by a previous run.

        Raises:
            ConfigurationError: if the deploy script or the credentials are missing
        """
        self._ensure_idle(force)
        step = self.select_steps([REPEAT_STEP])[0]
        self.step_runner.resolve_script(step)
        if not self._credentials_exist():
            raise ConfigurationError(
                "No credentials found. Please run a full deployment first to generate the necessary credentials."
            )
        demo = self._is_demo_mode(False)

        return self._launch(
            [step],
            demo,
            initial_step="deploy",
            initial_message="Running deploy.sh with existing credentials...",
            note="Deploy Again requested from web interface",
            wrapper=self.settings.REPEAT_RUNNER_SCRIPT,
            all_steps=False,
        )

    # ------------------------------------------------------------------
    # Background execution (runner process)
    # ------------------------------------------------------------------

    async def _run_demo_step(self, step: DeploymentStep) -> None:
        self.status_store.start_step(step.key, step.name)
        self.log_sink.info(f"Starting step: {step.name}", step.key)
        self.log_sink.info(f"DEMO MODE: Simulating {step.name}", step.key)
        await asyncio.sleep(self.settings.DEMO_STEP_DELAY_SECONDS)
        self.log_sink.success(f"DEMO MODE: {step.name} completed successfully", step.key)
        self.status_store.complete_step(step.key, step.name)

    async def run_pipeline(self, steps: StepSelection = None, test_mode: bool = False,
                           deployment_id: Optional[str] = None) -> DeploymentState:
        """
        Execute the selected steps strictly in order and return the final state.
        Step failures end the run; nothing is retried.
        """
        deployment_id = deployment_id or self.status_store.read().deployment_id or generate_deployment_id()

        try:
            selected = self.select_steps(steps)
        except ConfigurationError as e:
            self.log_sink.error(str(e))
            self.status_store.finish_run(DeploymentState.FAILED, str(e))
            return DeploymentState.FAILED

        demo = test_mode
        if not load_git_config(self.settings).token and not demo:
            self.log_sink.warning("No GitHub token found - running in demo mode")
            demo = True

        try:
            self.status_store.start_run(deployment_id)
            self.log_sink.info(f"{START_MARKER} ({deployment_id})...")
            if steps:
                self.log_sink.info(f"Running selected steps: {', '.join(s.key for s in selected)}")

            status = self.status_store.read()
            await self.ledger.start_run(deployment_id, status.clickup_task_id, [s.key for s in selected])

            for step in selected:
                if demo:
                    await self._run_demo_step(step)
                else:
                    await self.step_runner.run(step, deployment_id)

        except StepExecutionError as e:
            # Already recorded as failed by the step runner
            await self.ledger.finish_run(deployment_id, DeploymentState.FAILED.value, str(e))
            return DeploymentState.FAILED
        except Exception as e:
            logger.exception(f"Unexpected error in deployment {deployment_id}")
            message = f"Deployment failed with exception: {e}"
            self.log_sink.error(message)
            self.status_store.finish_run(DeploymentState.FAILED, message)
            await self.ledger.finish_run(deployment_id, DeploymentState.FAILED.value, message)
            return DeploymentState.FAILED

        self.status_store.finish_run(DeploymentState.COMPLETED, "Deployment completed successfully")
        self.log_sink.success(f"{COMPLETE_MARKER}!")
        await self.ledger.finish_run(deployment_id, DeploymentState.COMPLETED.value)

        if not demo:
            await self.notify_completion()
        return DeploymentState.COMPLETED

    def _read_artifact(self, relative: str) -> Optional[str]:
        try:
            value = self.settings.path(relative).read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return value or None

    async def notify_completion(self) -> bool:
        """
        Tell the correlated ClickUp task that the site is live. Failures are
        logged and never change the outcome of the run.
        """
        status = self.status_store.read()
        if not (status.clickup_integration_enabled and status.clickup_task_id):
            return False
        if self.notifier is None or not self.notifier.configured:
            self.log_sink.warning("ClickUp integration enabled but no API token configured; task not updated")
            return False

        try:
            await self.notifier.notify_deployment_complete(
                status.clickup_task_id,
                deployment_date=status.deployment_end_time_formatted or format_ts(),
                site_url=self._read_artifact(self.settings.SITE_URL_FILE),
                admin_url=self._read_artifact(self.settings.ADMIN_URL_FILE),
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"ClickUp update failed for task {status.clickup_task_id}: {e}")
            self.log_sink.warning(f"Failed to update ClickUp task {status.clickup_task_id}: {e}")
            return False

        self.log_sink.success(f"ClickUp task {status.clickup_task_id} updated with deployment details")
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self) -> DeploymentStatus:
        return self.status_store.read()

    def logs(self, lines: int = 50, since: Optional[Since] = None) -> List[LogRecord]:
        """Newest-first tail, or oldest-first records after `since` when given."""
        if since:
            return self.log_sink.since(since)
        return self.log_sink.tail(lines)

    def history_from_log(self, limit: int = 10) -> List[DeploymentHistoryEntry]:
        """
        Rebuild past runs from log markers. Best effort: lines of overlapping
        runs end up under whichever run started last.
        """
        records = list(reversed(self.log_sink.tail(HISTORY_SCAN_LINES)))
        deployments: List[DeploymentHistoryEntry] = []
        current: Optional[DeploymentHistoryEntry] = None

        for record in records:
            if record.message.startswith(START_MARKER):
                if current:
                    deployments.append(current)
                match = _DEPLOYMENT_ID_IN_MARKER.search(record.message)
                current = DeploymentHistoryEntry(
                    deployment_id=match.group(1) if match else None,
                    start_time=record.timestamp,
                )
                continue
            if current is None:
                continue

            if record.step:
                current.steps.append(HistoryStep(
                    step=record.step,
                    message=record.message,
                    level=record.level,
                    timestamp=record.timestamp,
                ))

            if current.end_time is not None:
                continue
            if COMPLETE_MARKER in record.message:
                current.status = DeploymentState.COMPLETED.value
                current.end_time = record.timestamp
            elif record.message.startswith(FAILURE_MARKER):
                current.status = DeploymentState.FAILED.value
                current.end_time = record.timestamp
                current.error = record.message
            elif record.message.startswith(CANCEL_MARKER):
                current.status = DeploymentState.CANCELLED.value
                current.end_time = record.timestamp

        if current:
            deployments.append(current)
        return list(reversed(deployments))[:limit]

    async def history(self, limit: int = 10) -> List[DeploymentHistoryEntry]:
        runs = await self.ledger.recent_runs(limit)
        if runs is not None:
            return runs
        return self.history_from_log(limit)

    def system_status(self) -> SystemStatus:
        scripts = {}
        for relative in [info["script"] for info in PIPELINE.values()] + [self.settings.SITE_STATUS_SCRIPT]:
            full = self.settings.path(relative)
            exists = full.is_file()
            scripts[os.path.basename(relative)] = ScriptCheck(
                exists=exists,
                executable=exists and os.access(full, os.X_OK),
                path=relative,
            )
        return SystemStatus(deployment=self.status(), scripts=scripts)

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def reset(self) -> DeploymentStatus:
        """Back to idle; correlation fields survive, the CI run reference does not."""
        self.status_store.write_preserving(DeploymentStatus(
            status=DeploymentState.IDLE,
            step="",
            message="Ready for deployment",
            timestamp=now_ts(),
            logs=[],
        ))
        self.run_reference.clear()
        return self.status_store.read()

    async def stop(self) -> DeploymentStatus:
        """
        Kill the background runner (best effort) and close the run as
        cancelled. Only an active run becomes cancelled; a completed, failed
        or idle document is left as it is, and an unreadable one is cleared.
        Step timings of the killed run stay until the next reset.
        """
        current = self.status_store.read()
        killed = kill_matching(RUNNER_MODULE)
        logger.info(f"Stop requested; runner {'killed' if killed else 'not found'}")

        if current.status == DeploymentState.ERROR:
            self.status_store.clear()
        elif current.is_active:
            self.status_store.finish_run(DeploymentState.CANCELLED, "Deployment stopped by user")
            if current.deployment_id:
                await self.ledger.finish_run(current.deployment_id, DeploymentState.CANCELLED.value)
        self.run_reference.clear()
        self.log_sink.warning(f"{CANCEL_MARKER} by user")
        return self.status_store.read()

    def set_clickup_task(self, task_id: Optional[str], enabled: bool = True) -> DeploymentStatus:
        """
        Record the ClickUp task this deployment belongs to. Only allowed
        while no run is active.
        """
        current = self.status_store.read()
        if current.is_active:
            raise DeploymentInProgressError("Cannot change the ClickUp task while a deployment is running")

        document = current.to_document() if current.status != DeploymentState.ERROR else {}
        if task_id:
            document["clickup_task_id"] = task_id
        else:
            document.pop("clickup_task_id", None)
        document["clickup_integration_enabled"] = enabled
        self.status_store.write(document)
        return self.status_store.read()

    def clear_logs(self) -> None:
        self.log_sink.clear()
