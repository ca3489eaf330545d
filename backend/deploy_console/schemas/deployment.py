from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DeploymentState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    # Only produced when the status document cannot be read
    ERROR = "error"


class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


ACTIVE_STATES = (DeploymentState.STARTING, DeploymentState.RUNNING)

# Fields that must survive resets and every write-back of the status document
CORRELATION_FIELDS = ("clickup_task_id", "clickup_integration_enabled")


class StepTiming(BaseModel):
    start_time: int
    start_time_formatted: str
    end_time: Optional[int] = None
    end_time_formatted: Optional[str] = None
    duration: Optional[int] = None
    status: StepState = StepState.RUNNING

    model_config = ConfigDict(extra="allow")


class DeploymentStatus(BaseModel):
    """
    The single current-deployment record persisted as tmp/deployment_status.json.

    Unknown keys written by other versions of the controller (or by the step
    scripts) are kept as extra attributes and written back untouched.
    """
    status: DeploymentState = DeploymentState.IDLE
    step: str = ""
    current_step: Optional[str] = None
    message: str = ""
    timestamp: Optional[int] = None
    last_update: Optional[str] = None
    logs: List[str] = Field(default_factory=list)
    deployment_id: Optional[str] = None

    clickup_task_id: Optional[str] = None
    clickup_integration_enabled: Optional[bool] = None

    step_timings: Dict[str, StepTiming] = Field(default_factory=dict)
    deployment_start_time: Optional[int] = None
    deployment_start_time_formatted: Optional[str] = None
    deployment_end_time: Optional[int] = None
    deployment_end_time_formatted: Optional[str] = None
    total_duration: Optional[int] = None

    model_config = ConfigDict(extra="allow", use_enum_values=False)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATES

    def to_document(self) -> dict:
        """Serializable dict; unset optionals are omitted, extras kept."""
        return self.model_dump(mode="json", exclude_none=True)


class LogRecord(BaseModel):
    timestamp: str
    level: str
    step: Optional[str] = None
    message: str


class DeploymentStep(BaseModel):
    """One pipeline phase; command is an argument list relative to APP_ROOT."""
    key: str
    name: str
    description: str = ""
    command: List[str]
    status: StepState = StepState.PENDING

    @property
    def script(self) -> str:
        return self.command[0]


class StepResult(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class StepInfo(BaseModel):
    name: str
    description: str


class TriggerResult(BaseModel):
    status: str = "started"
    message: str
    deployment_id: str
    steps: List[str]
    script_path: str
    pid: Optional[int] = None
    demo_mode: bool = False


class HistoryStep(BaseModel):
    step: str
    message: str
    level: str
    timestamp: str


class DeploymentHistoryEntry(BaseModel):
    deployment_id: Optional[str] = None
    start_time: str
    end_time: Optional[str] = None
    status: str = "running"
    steps: List[HistoryStep] = Field(default_factory=list)
    error: Optional[str] = None


class CIStatus(BaseModel):
    """Local view of the GitHub Actions run backing the github-actions step."""
    status: str
    message: str
    url: Optional[str] = None
    created_at: Optional[str] = None
    run_id: Optional[str] = None
    github_status: Optional[str] = None
    github_conclusion: Optional[str] = None
    job_id: Optional[str] = None
    owner: Optional[str] = None
    repo: Optional[str] = None
    is_monitoring: bool = False


class CILogs(BaseModel):
    logs: List[LogRecord] = Field(default_factory=list)
    message: str


class ScriptCheck(BaseModel):
    exists: bool
    executable: bool
    path: str


class SystemStatus(BaseModel):
    deployment: DeploymentStatus
    scripts: Dict[str, ScriptCheck]


class ClickUpTaskUpdate(BaseModel):
    task_id: Optional[str] = None
    enabled: bool = True


class TriggerRequest(BaseModel):
    steps: Optional[List[str]] = None
    force: bool = False
    test_mode: bool = False
