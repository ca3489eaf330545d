from datetime import datetime
from typing import List, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from deploy_console.db.base import Base


def _utcnow() -> datetime:
    # Naive UTC, matching the DateTime columns below
    return datetime.utcnow()


class DeploymentRun(Base):
    """
    One execution of the deployment pipeline.
    Structured counterpart of the run markers written to the deployment log.
    """
    __tablename__ = "deployments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Generated by the controller when the run is triggered
    deployment_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)

    # Optional ClickUp correlation ID
    clickup_task_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Comma separated step keys requested for this run
    requested_steps: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # running / completed / failed / cancelled
    status: Mapped[str] = mapped_column(String(32), default="running")
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    start_time: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    steps: Mapped[List["DeploymentStepRun"]] = relationship(
        back_populates="deployment",
        cascade="all, delete-orphan",
        order_by="DeploymentStepRun.id",
    )


class DeploymentStepRun(Base):
    __tablename__ = "deployment_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deployment_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("deployments.deployment_id", ondelete="CASCADE"), index=True
    )
    step_key: Mapped[str] = mapped_column(String(64))
    step_name: Mapped[str] = mapped_column(String(128))
    step_status: Mapped[str] = mapped_column(String(32), default="running")

    start_time: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    output_log: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_log: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    deployment: Mapped[DeploymentRun] = relationship(back_populates="steps")
