"""
Database models for controller (sync version).

Mirrors the tables the API creates in api/src/models/pipeline.py.
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid

Base = declarative_base()

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    repository_id = Column(UUID(as_uuid=False))
    pipeline = Column(String(255), nullable=False)
    event = Column(String(50), nullable=False)
    commit_sha = Column(String(40), nullable=False, default="")
    branch = Column(String(255), nullable=False, default="")
    status = Column(String(50), default="queued")
    triggered_by = Column(String(255))
    config = Column(JSONB)
    event_payload = Column(JSONB)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

class JobRun(Base):
    __tablename__ = "job_runs"
    __table_args__ = (UniqueConstraint("run_id", "name"),)

    id = Column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    run_id = Column(UUID(as_uuid=False), ForeignKey("pipeline_runs.id", ondelete="CASCADE"))
    name = Column(String(255), nullable=False)
    environment = Column(String(255))
    status = Column(String(50), default="pending")
    error = Column(Text)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

class StepRun(Base):
    __tablename__ = "step_runs"
    __table_args__ = (UniqueConstraint("run_id", "job_name", "step_order"),)

    id = Column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    run_id = Column(UUID(as_uuid=False), ForeignKey("pipeline_runs.id", ondelete="CASCADE"))
    job_name = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    step_order = Column(Integer, nullable=False)
    status = Column(String(50), default="pending")
    logs = Column(Text)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
