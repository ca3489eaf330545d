"""
GitHub Actions poller.

Finds the workflow run started by the trigger-deploy step and maps its state
onto the local deployment vocabulary. Runs appear in the API some time after
being dispatched, so lookup is two-tier: the run ID remembered from an earlier
poll first, then the most recent run created inside a short window.
"""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from deploy_console.core.config import GitConfig, Settings, load_git_config
from deploy_console.schemas.deployment import CILogs, CIStatus, LogRecord
from deploy_console.utils.time_helpers import format_ts, parse_iso

logger = logging.getLogger(__name__)

USER_AGENT = "Kinsta-Deploy-Console/1.0"
WAITING_MESSAGE = "Waiting for GitHub Actions workflow to start..."


class RunReferenceStore:
    """The remembered GitHub run ID (tmp/github_run_id.txt)."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> Optional[str]:
        try:
            value = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read run reference {self.path}: {e}")
            return None
        if not value or value == "null":
            return None
        return value

    def write(self, run_id: str) -> bool:
        """
        Remember run_id for later polls.

        Returns False if it could not be persisted; the next poll then falls
        back to the recent-runs listing.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(f"{run_id}\n", encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not persist run reference {run_id} to {self.path}: {e}")
            return False
        return True

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not clear run reference {self.path}: {e}")


def map_run_status(
    status: Optional[str],
    conclusion: Optional[str],
    html_url: Optional[str],
    created_at: Optional[str],
    run_id: Optional[str],
    is_monitoring: bool,
) -> CIStatus:
    """Translate a GitHub run status/conclusion pair into a CIStatus."""
    state = "running"
    message = "GitHub Actions workflow in progress"

    if status == "queued":
        message = "GitHub Actions workflow queued, waiting to start..."
    elif status == "in_progress":
        message = "GitHub Actions deployment in progress..."
    elif status == "completed":
        if conclusion == "success":
            state = "completed"
            message = "GitHub Actions deployment completed successfully"
        elif conclusion == "failure":
            state = "failed"
            message = "GitHub Actions deployment failed"
        elif conclusion == "cancelled":
            state = "cancelled"
            message = "GitHub Actions deployment was cancelled"
        else:
            state = "failed"
            message = f"GitHub Actions deployment completed with status: {conclusion}"

    return CIStatus(
        status=state,
        message=message,
        url=html_url,
        created_at=created_at,
        run_id=str(run_id) if run_id is not None else None,
        github_status=status,
        github_conclusion=conclusion,
        is_monitoring=is_monitoring,
    )


class GitHubActionsPoller:
    def __init__(self, settings: Settings, run_reference: RunReferenceStore,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.run_reference = run_reference
        self.base_url = settings.GITHUB_API_BASE.rstrip("/")
        # Injected in tests; None means real network
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.HTTP_TIMEOUT_SECONDS),
            transport=self._transport,
            follow_redirects=True,
        )

    @staticmethod
    def _headers(token: str) -> Dict[str, str]:
        return {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": USER_AGENT,
        }

    def _git_config(self) -> GitConfig:
        """
        Raises:
            ValueError: if owner, repo or token is missing
        """
        git = load_git_config(self.settings)
        if not (git.owner and git.repo):
            if not git.file_present and not (self.settings.GITHUB_ORG or self.settings.GITHUB_REPO):
                raise ValueError("Git configuration not found")
            raise ValueError("Invalid git configuration")
        if not git.token:
            raise ValueError("GitHub token not configured")
        return git

    async def _get_job_id(self, client: httpx.AsyncClient, git: GitConfig, run_id: str) -> Optional[str]:
        """First job of the run, for deep links to its logs. Best effort."""
        url = f"{self.base_url}/repos/{git.owner}/{git.repo}/actions/runs/{run_id}/jobs"
        try:
            response = await client.get(url, headers=self._headers(git.token))
            if response.status_code != 200:
                logger.warning(f"Failed to fetch GitHub job ID: HTTP {response.status_code}")
                return None
            jobs = response.json().get("jobs") or []
            if jobs and jobs[0].get("id") is not None:
                return str(jobs[0]["id"])
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"GitHub Actions job ID retrieval failed: {e}")
        return None

    async def _describe_run(self, client: httpx.AsyncClient, git: GitConfig,
                            run: Dict[str, Any], is_monitoring: bool) -> CIStatus:
        run_id = str(run.get("id"))
        result = map_run_status(
            run.get("status", "unknown"),
            run.get("conclusion"),
            run.get("html_url"),
            run.get("created_at"),
            run_id,
            is_monitoring,
        )
        result.job_id = await self._get_job_id(client, git, run_id)
        result.owner = git.owner
        result.repo = git.repo
        return result

    async def _fetch_run(self, client: httpx.AsyncClient, git: GitConfig, run_id: str) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}/repos/{git.owner}/{git.repo}/actions/runs/{run_id}"
        try:
            response = await client.get(url, headers=self._headers(git.token))
        except httpx.HTTPError as e:
            logger.warning(f"Direct lookup of run {run_id} failed: {e}")
            return None
        if response.status_code != 200:
            logger.info(f"Run {run_id} not available yet (HTTP {response.status_code})")
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) and data.get("id") is not None else None

    async def check_status(self) -> CIStatus:
        """
        Current state of the deployment workflow run. Never raises; transport
        and API problems come back as status="error".
        """
        try:
            git = self._git_config()
            monitoring_run_id = self.run_reference.read()

            async with self._client() as client:
                # 1. Exact lookup of the run remembered from an earlier poll
                if monitoring_run_id:
                    run = await self._fetch_run(client, git, monitoring_run_id)
                    if run:
                        return await self._describe_run(client, git, run, is_monitoring=True)

                # 2. Heuristic: newest run of the deploy workflow created recently
                url = (
                    f"{self.base_url}/repos/{git.owner}/{git.repo}"
                    f"/actions/workflows/{self.settings.GITHUB_WORKFLOW}/runs"
                )
                response = await client.get(url, headers=self._headers(git.token), params={"per_page": 5})
                if response.status_code != 200:
                    raise ValueError(f"GitHub API returned status {response.status_code}")

                runs = (response.json() or {}).get("workflow_runs") or []
                if not runs:
                    return CIStatus(status="pending", message=WAITING_MESSAGE)

                cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.settings.RECENT_RUN_WINDOW_SECONDS)
                for run in runs:
                    if monitoring_run_id and str(run.get("id")) == monitoring_run_id:
                        return await self._describe_run(client, git, run, is_monitoring=True)

                for run in runs:
                    created = parse_iso(run.get("created_at"))
                    if created is not None and created >= cutoff:
                        if self.run_reference.write(str(run["id"])):
                            logger.info(f"Tracking GitHub Actions run {run['id']}")
                        return await self._describe_run(client, git, run, is_monitoring=False)

            return CIStatus(
                status="pending",
                message=WAITING_MESSAGE,
                url=f"https://github.com/{git.owner}/{git.repo}/actions",
                owner=git.owner,
                repo=git.repo,
            )

        except (httpx.HTTPError, OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"GitHub Actions status check failed: {e}")
            return CIStatus(
                status="error",
                message=f"Failed to check GitHub Actions status: {e}",
            )

    async def get_logs(self, run_id: Optional[str] = None) -> CILogs:
        """Best-effort log availability check for a run; never raises."""
        try:
            git = self._git_config()
            if not run_id:
                current = await self.check_status()
                run_id = current.run_id
                if not run_id:
                    return CILogs(message="No workflow run found")

            url = f"{self.base_url}/repos/{git.owner}/{git.repo}/actions/runs/{run_id}/logs"
            async with self._client() as client:
                response = await client.get(url, headers=self._headers(git.token))

            if response.status_code != 200:
                return CILogs(message=f"Could not retrieve logs (HTTP {response.status_code})")

            logs = []
            if response.content:
                # The archive itself is a zip; the UI links to GitHub for detail
                logs.append(LogRecord(
                    timestamp=format_ts(),
                    level="INFO",
                    step="github-actions",
                    message="GitHub Actions logs downloaded successfully. View detailed logs in GitHub.",
                ))
            return CILogs(logs=logs, message="GitHub Actions logs retrieved")

        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"GitHub Actions logs retrieval failed: {e}")
            return CILogs(message=f"Failed to retrieve GitHub Actions logs: {e}")
