"""
Report run, job and step status.

The reporter fans StatusEvents out to subscribers (the queue worker, the
database sink, tests). Messages are masked for the run's secrets before any
subscriber sees them.
"""

import logging
from datetime import datetime
from functools import lru_cache
from typing import Callable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import create_engine, insert, update
from sqlalchemy.orm import sessionmaker

from controller.src.config import get_settings
from controller.src.models.run import JobExecution, Run, StepRecord, utcnow
from controller.src.services.secrets import SecretStore

logger = logging.getLogger(__name__)

class StatusEvent(BaseModel):
    run_id: str
    job_name: Optional[str] = None
    step_name: Optional[str] = None
    step_order: Optional[int] = None
    state: str
    timestamp: datetime = Field(default_factory=utcnow)
    message: Optional[str] = None

Subscriber = Callable[[StatusEvent], None]

class StatusReporter:
    def __init__(self, secrets: Optional[SecretStore] = None):
        self.secrets = secrets
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a function that unsubscribes it."""
        self._subscribers.append(subscriber)

        def unsubscribe():
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def emit(self, event: StatusEvent):
        if event.message and self.secrets is not None:
            event.message = self.secrets.mask(event.run_id, event.message)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception(f"Status subscriber failed for run {event.run_id}")

    def run_status(self, run: Run, message: Optional[str] = None):
        self.emit(StatusEvent(run_id=run.id, state=run.status.value, message=message))
        logger.info(f"Run {run.id} is {run.status.value}")

    def job_status(self, run: Run, job: JobExecution, message: Optional[str] = None):
        self.emit(StatusEvent(run_id=run.id, job_name=job.name, state=job.state.value, message=message))
        logger.debug(f"Job {job.name} of run {run.id} is {job.state.value}")

    def step_status(self, run: Run, job: JobExecution, order: int, step: StepRecord, message: Optional[str] = None):
        self.emit(StatusEvent(
            run_id=run.id,
            job_name=job.name,
            step_name=step.name,
            step_order=order,
            state=step.state.value,
            message=message,
        ))

@lru_cache()
def get_session_factory():
    settings = get_settings()
    engine = create_engine(settings.database_url)
    return sessionmaker(bind=engine)

class DatabaseStatusSink:
    """Persists status events to the run, job and step tables."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    @property
    def session_factory(self):
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    def __call__(self, event: StatusEvent):
        if event.job_name is None:
            self.update_run_status(event)
        elif event.step_name is None:
            self.update_job_status(event)
        else:
            self.update_step_status(event)

    def update_run_status(self, event: StatusEvent):
        """Update pipeline run status in database."""
        from controller.src.models.db import PipelineRun

        values = {"status": event.state, "updated_at": event.timestamp}
        if event.state == "running":
            values["started_at"] = event.timestamp
        elif event.state in ("succeeded", "failed", "cancelled"):
            values["finished_at"] = event.timestamp

        with self.session_factory() as session:
            session.execute(
                update(PipelineRun)
                .where(PipelineRun.id == event.run_id)
                .values(**values)
            )
            session.commit()
        logger.info(f"Updated run {event.run_id} status to {event.state}")

    def update_job_status(self, event: StatusEvent):
        """Update (or create) a job row in database."""
        from controller.src.models.db import JobRun

        values = {"status": event.state, "updated_at": event.timestamp}
        if event.message is not None:
            values["error"] = event.message
        if event.state == "running":
            values["started_at"] = event.timestamp
        elif event.state in ("succeeded", "failed", "skipped", "cancelled"):
            values["finished_at"] = event.timestamp

        with self.session_factory() as session:
            result = session.execute(
                update(JobRun)
                .where(JobRun.run_id == event.run_id)
                .where(JobRun.name == event.job_name)
                .values(**values)
            )
            if result.rowcount == 0:
                session.execute(insert(JobRun).values(run_id=event.run_id, name=event.job_name, **values))
            session.commit()
        logger.debug(f"Updated job {event.job_name} of run {event.run_id} to {event.state}")

    def update_step_status(self, event: StatusEvent):
        """Update (or create) a step row in database."""
        from controller.src.models.db import StepRun

        values = {"status": event.state, "updated_at": event.timestamp}
        if event.message is not None:
            values["logs"] = event.message
        if event.state == "running":
            values["started_at"] = event.timestamp
        elif event.state in ("succeeded", "failed", "skipped", "cancelled"):
            values["finished_at"] = event.timestamp

        with self.session_factory() as session:
            result = session.execute(
                update(StepRun)
                .where(StepRun.run_id == event.run_id)
                .where(StepRun.job_name == event.job_name)
                .where(StepRun.step_order == event.step_order)
                .values(**values)
            )
            if result.rowcount == 0:
                session.execute(insert(StepRun).values(
                    run_id=event.run_id,
                    job_name=event.job_name,
                    name=event.step_name,
                    step_order=event.step_order,
                    **values,
                ))
            session.commit()
        logger.debug(f"Updated step {event.step_order} of job {event.job_name} to {event.state}")
