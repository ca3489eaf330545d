from deploy_console.db.base import Base
from deploy_console.models.deployment import DeploymentRun, DeploymentStepRun

__all__ = ["Base", "DeploymentRun", "DeploymentStepRun"]
