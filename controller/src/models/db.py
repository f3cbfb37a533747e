"""
Database models for the run archive.
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, Float, JSON
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(String(32), primary_key=True)
    pipeline = Column(String(255), nullable=False)
    repository = Column(String(255), nullable=False)
    branch = Column(String(255), nullable=False)
    commit_sha = Column(String(64), nullable=False)
    event_type = Column(String(50), nullable=False)
    triggered_by = Column(String(255))
    status = Column(String(50), default="queued")
    reason = Column(String(50))
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    jobs = relationship(
        "PipelineJob",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="PipelineJob.id",
    )

class PipelineJob(Base):
    __tablename__ = "pipeline_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(32), ForeignKey("pipeline_runs.id", ondelete="CASCADE"), index=True)
    name = Column(String(255), nullable=False)
    status = Column(String(50), default="queued")
    reason = Column(String(50))
    runner = Column(String(255))
    started_at = Column(DateTime)
    finished_at = Column(DateTime)

    run = relationship("PipelineRun", back_populates="jobs")
    steps = relationship(
        "PipelineStep",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="PipelineStep.step_order",
    )

class PipelineStep(Base):
    __tablename__ = "pipeline_steps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("pipeline_jobs.id", ondelete="CASCADE"), index=True)
    name = Column(String(255), nullable=False)
    step_order = Column(Integer, nullable=False)
    status = Column(String(50), nullable=False)
    reason = Column(String(50))
    exit_code = Column(Integer)
    duration = Column(Float)
    logs = Column(Text)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)

    job = relationship("PipelineJob", back_populates="steps")

class RunEvent(Base):
    """Every status update, in publication order."""
    __tablename__ = "pipeline_run_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(32), index=True, nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
