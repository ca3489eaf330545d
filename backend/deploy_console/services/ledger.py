"""
Relational run ledger.

Optional structured record of runs and their steps. The deployment log remains
the operator-facing trail; the ledger gives history() something better than
marker scanning when a database is configured. Every operation degrades to a
logged no-op so a database outage never fails a deployment.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from sqlalchemy.orm import selectinload

from deploy_console.core.config import Settings
from deploy_console.db.base import Base
from deploy_console.db.session import create_engine_for, create_session_factory
from deploy_console.models.deployment import DeploymentRun, DeploymentStepRun
from deploy_console.schemas.deployment import DeploymentHistoryEntry, HistoryStep
from deploy_console.utils.time_helpers import TIMESTAMP_FORMAT

logger = logging.getLogger(__name__)

_STEP_LEVELS = {"completed": "SUCCESS", "failed": "ERROR", "running": "INFO"}


def _fmt(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(TIMESTAMP_FORMAT) if value else None


def _elapsed(start: Optional[datetime], end: datetime) -> Optional[int]:
    if start is None:
        return None
    return max(0, int((end - start).total_seconds()))


class DeploymentLedger:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None, engine: Optional[AsyncEngine] = None):
        self._session_factory = session_factory
        self._engine = engine

    @classmethod
    def from_settings(cls, settings: Settings) -> "DeploymentLedger":
        if not settings.DATABASE_URL:
            logger.info("DATABASE_URL not set; relational deployment ledger disabled")
            return cls()
        engine = create_engine_for(settings.DATABASE_URL)
        return cls(create_session_factory(engine), engine)

    @property
    def enabled(self) -> bool:
        return self._session_factory is not None

    async def create_tables(self) -> None:
        """Create ledger tables directly (tests and local SQLite; production uses Alembic)."""
        if self._engine is None:
            return
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    async def start_run(self, deployment_id: str, clickup_task_id: Optional[str] = None,
                        steps: Optional[List[str]] = None) -> None:
        if not self.enabled:
            return
        try:
            async with self._session_factory() as session:
                session.add(DeploymentRun(
                    deployment_id=deployment_id,
                    clickup_task_id=clickup_task_id,
                    requested_steps=",".join(steps) if steps else None,
                    status="running",
                ))
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Ledger: failed to record start of {deployment_id}: {e}")

    async def log_step(self, deployment_id: str, step_key: str, step_name: str) -> None:
        if not self.enabled:
            return
        try:
            async with self._session_factory() as session:
                session.add(DeploymentStepRun(
                    deployment_id=deployment_id,
                    step_key=step_key,
                    step_name=step_name,
                    step_status="running",
                ))
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Ledger: failed to record step {step_key} of {deployment_id}: {e}")

    async def finish_step(self, deployment_id: str, step_key: str, status: str,
                          output: Optional[str] = None, error: Optional[str] = None) -> None:
        if not self.enabled:
            return
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(DeploymentStepRun)
                    .where(
                        DeploymentStepRun.deployment_id == deployment_id,
                        DeploymentStepRun.step_key == step_key,
                        DeploymentStepRun.end_time.is_(None),
                    )
                    .order_by(DeploymentStepRun.id.desc())
                )
                step = result.scalars().first()
                if step is None:
                    logger.debug(f"Ledger: no open step {step_key} for {deployment_id}")
                    return
                now = datetime.utcnow()
                step.step_status = status
                step.end_time = now
                step.duration_seconds = _elapsed(step.start_time, now)
                step.output_log = output
                step.error_log = error
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Ledger: failed to finish step {step_key} of {deployment_id}: {e}")

    async def finish_run(self, deployment_id: str, status: str, error: Optional[str] = None) -> None:
        if not self.enabled:
            return
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(DeploymentRun).where(DeploymentRun.deployment_id == deployment_id)
                )
                run = result.scalar_one_or_none()
                if run is None:
                    return
                now = datetime.utcnow()
                run.status = status
                run.error_message = error
                run.end_time = now
                run.duration_seconds = _elapsed(run.start_time, now)
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Ledger: failed to finish {deployment_id}: {e}")

    async def run_details(self, deployment_id: str) -> Optional[DeploymentRun]:
        if not self.enabled:
            return None
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(DeploymentRun)
                    .options(selectinload(DeploymentRun.steps))
                    .where(DeploymentRun.deployment_id == deployment_id)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.warning(f"Ledger: failed to load {deployment_id}: {e}")
            return None

    async def recent_runs(self, limit: int = 10) -> Optional[List[DeploymentHistoryEntry]]:
        """Newest runs first, or None when the ledger is unavailable."""
        if not self.enabled:
            return None
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(DeploymentRun)
                    .options(selectinload(DeploymentRun.steps))
                    .order_by(DeploymentRun.start_time.desc(), DeploymentRun.id.desc())
                    .limit(limit)
                )
                runs = result.scalars().all()
        except SQLAlchemyError as e:
            logger.warning(f"Ledger: failed to list recent runs: {e}")
            return None

        return [
            DeploymentHistoryEntry(
                deployment_id=run.deployment_id,
                start_time=_fmt(run.start_time),
                end_time=_fmt(run.end_time),
                status=run.status,
                error=run.error_message,
                steps=[
                    HistoryStep(
                        step=step.step_key,
                        message=f"{step.step_name}: {step.step_status}",
                        level=_STEP_LEVELS.get(step.step_status, "INFO"),
                        timestamp=_fmt(step.end_time or step.start_time),
                    )
                    for step in run.steps
                ],
            )
            for run in runs
        ]
