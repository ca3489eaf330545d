import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application-wide settings managed by Pydantic.
    Reads configuration from environment variables and .env files.
    """
    # General project metadata
    PROJECT_NAME: str = "Kinsta Deploy Console"
    API_V1_STR: str = "/api"

    # Application root; every relative path below resolves against it
    APP_ROOT: Path = Path.cwd()

    # Deployment state files
    STATUS_FILE: str = "tmp/deployment_status.json"
    LOG_FILE: str = "logs/deployment/deployment.log"
    RUN_ID_FILE: str = "tmp/github_run_id.txt"
    RUNNER_SCRIPT: str = "tmp/deploy_runner.sh"
    REPEAT_RUNNER_SCRIPT: str = "tmp/deploy_again_runner.sh"
    SITE_URL_FILE: str = "tmp/site_url.txt"
    ADMIN_URL_FILE: str = "tmp/admin_url.txt"

    # Credential artifacts left behind by a previous full run
    CREDENTIAL_ARTIFACTS: List[str] = [
        "tmp/kinsta_token.txt",
        "tmp/site_id.txt",
        "tmp/github_run_id.txt",
    ]

    # Operator-edited JSON configuration
    GIT_CONFIG_FILE: str = "config/git.json"
    SITE_CONFIG_FILE: str = "config/site.json"

    # GitHub Actions
    GITHUB_TOKEN: Optional[str] = None
    GITHUB_ORG: Optional[str] = None
    GITHUB_REPO: Optional[str] = None
    GITHUB_WORKFLOW: str = "deploy.yml"
    GITHUB_API_BASE: str = "https://api.github.com"
    HTTP_TIMEOUT_SECONDS: float = 30.0
    # A listed run created within this window is assumed to belong to us
    RECENT_RUN_WINDOW_SECONDS: int = 600

    # ClickUp
    CLICKUP_API_TOKEN: Optional[str] = None
    CLICKUP_API_BASE: str = "https://api.clickup.com/api/v2"

    # Relational run ledger; disabled when unset
    DATABASE_URL: Optional[str] = None

    # Pipeline behaviour
    DEMO_STEP_DELAY_SECONDS: float = 2.0
    MONITORING_STEP: str = "get-cred"
    SOFT_TIMEOUT_EXIT_CODE: int = 2
    SITE_STATUS_SCRIPT: str = "scripts/status.sh"

    # Sanitized environment handed to step scripts
    STEP_PATH: str = "/usr/local/bin:/usr/bin:/bin"
    STEP_HOME: str = os.path.expanduser("~")
    STEP_USER: str = os.getenv("USER", "deploy")

    # Well-known interpreter locations tried after sys.executable and PATH
    INTERPRETER_CANDIDATES: List[str] = [
        "/opt/homebrew/bin/python3",
        "/usr/local/bin/python3",
        "/usr/bin/python3",
        "/bin/python3",
    ]

    @field_validator("APP_ROOT")
    @classmethod
    def absolute_root(cls, v: Path) -> Path:
        return Path(v).expanduser().resolve()

    @field_validator("DATABASE_URL")
    @classmethod
    def fix_postgres_url(cls, v: Optional[str]) -> Optional[str]:
        """
        Convert a postgres:// URL to postgresql+psycopg:// for SQLAlchemy async.
        """
        if v and v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql+psycopg://", 1)
        return v or None

    def path(self, relative: str) -> Path:
        """Resolve a configured path against APP_ROOT."""
        p = Path(relative)
        return p if p.is_absolute() else self.APP_ROOT / p

    # Pydantic Configuration
    model_config = SettingsConfigDict(
        env_file=".env",              # Load variables from .env file
        env_file_encoding="utf-8",    # Ensure correct encoding
        case_sensitive=True,          # Environment variables are case-sensitive
        extra="ignore"                # Ignore extra fields in .env not defined here
    )


@dataclass
class GitConfig:
    """Resolved GitHub coordinates for the deploy workflow."""
    owner: Optional[str]
    repo: Optional[str]
    token: Optional[str]
    # True when config/git.json exists, i.e. the operator set up GitHub
    file_present: bool = False

    @property
    def is_complete(self) -> bool:
        return bool(self.owner and self.repo and self.token)


def load_git_config(settings: "Settings") -> GitConfig:
    """
    Merge config/git.json with the GITHUB_* settings.

    Explicit settings win; the JSON file fills in whatever is unset.
    A malformed file is treated as absent.
    """
    data = {}
    git_file = settings.path(settings.GIT_CONFIG_FILE)
    file_present = git_file.exists()
    if file_present:
        try:
            data = json.loads(git_file.read_text(encoding="utf-8")) or {}
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read git config {git_file}: {e}")
            data = {}

    return GitConfig(
        owner=settings.GITHUB_ORG or data.get("org"),
        repo=settings.GITHUB_REPO or data.get("repo"),
        token=settings.GITHUB_TOKEN or data.get("token") or os.getenv("GITHUB_TOKEN") or None,
        file_present=file_present,
    )


def get_settings() -> Settings:
    return Settings()
