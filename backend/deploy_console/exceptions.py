from typing import Optional


class DeploymentError(Exception):
    """Base class for deployment orchestration errors."""


class ConfigurationError(DeploymentError):
    """
    Raised before anything is spawned when the environment cannot run a
    deployment: no interpreter, no credential, missing or non-executable
    step script, unknown step key.
    """


class DeploymentInProgressError(DeploymentError):
    """Raised when a run is already starting/running and force was not given."""


class StepExecutionError(DeploymentError):
    """A pipeline step exited non-zero and the run was aborted."""

    def __init__(self, step_key: str, exit_code: Optional[int], message: str):
        super().__init__(message)
        self.step_key = step_key
        self.exit_code = exit_code
