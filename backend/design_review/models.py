from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    # Naive UTC everywhere: SQLite drops tzinfo and mixed comparisons fail.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Job(Base):
    __tablename__ = "analysis_jobs"
    id = Column(String, primary_key=True, index=True)
    subject_id = Column(String, nullable=False, index=True)
    subject_url = Column(String, nullable=False)
    user_context = Column(Text, nullable=True)
    status = Column(String, default="pending", index=True)
    current_stage = Column(String, default="context")
    progress = Column(Integer, default=0)
    attempt = Column(Integer, default=1)
    error = Column(Text, nullable=True)
    # stage run holding the job: set by the claim, checked by every later write
    claimed_stage = Column(String, nullable=True)
    claim_token = Column(String, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    result_id = Column(String, nullable=True)
    quality_score = Column(Integer, nullable=True)
    is_partial_result = Column(Boolean, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)


class GroupJob(Base):
    __tablename__ = "group_analysis_jobs"
    id = Column(String, primary_key=True, index=True)
    group_id = Column(String, nullable=False, index=True)
    session_id = Column(String, nullable=True)
    subject_ids = Column(JSON, nullable=False)
    subject_urls = Column(JSON, nullable=False)
    group_context = Column(Text, nullable=True)
    status = Column(String, default="pending", index=True)
    current_stage = Column(String, default="context")
    progress = Column(Integer, default=0)
    attempt = Column(Integer, default=1)
    error = Column(Text, nullable=True)
    claimed_stage = Column(String, nullable=True)
    claim_token = Column(String, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    result_id = Column(String, nullable=True)
    quality_score = Column(Integer, nullable=True)
    is_partial_result = Column(Boolean, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)


class Event(Base):
    __tablename__ = "analysis_events"
    __table_args__ = (
        CheckConstraint(
            "(job_id IS NULL) <> (group_job_id IS NULL)",
            name="ck_analysis_events_single_owner",
        ),
        Index("ix_analysis_events_job_stage", "job_id", "stage"),
        Index("ix_analysis_events_group_job_stage", "group_job_id", "stage"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, ForeignKey("analysis_jobs.id"), nullable=True)
    group_job_id = Column(String, ForeignKey("group_analysis_jobs.id"), nullable=True)
    attempt = Column(Integer, default=1)
    event_name = Column(String, nullable=False)
    stage = Column(String, nullable=False)
    status = Column(String, nullable=True)
    progress = Column(Integer, default=0)
    message = Column(Text, nullable=True)
    event_metadata = Column("metadata", JSON, default=dict)
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class AnalysisResult(Base):
    __tablename__ = "ux_analyses"
    __table_args__ = (
        UniqueConstraint("subject_id", "analysis_type", "version", name="uq_ux_analyses_subject_type_version"),
    )
    id = Column(String, primary_key=True, index=True)
    subject_id = Column(String, nullable=False, index=True)
    analysis_type = Column(String, nullable=False, default="full_analysis")
    analysis_hash = Column(String, nullable=False, index=True)
    version = Column(Integer, nullable=False)
    status = Column(String, default="completed")
    user_context = Column(Text, nullable=True)
    summary = Column(JSON, default=dict)
    suggestions = Column(JSON, default=list)
    visual_annotations = Column(JSON, default=list)
    result_metadata = Column("metadata", JSON, default=dict)
    quality_score = Column(Integer, nullable=True)
    is_partial_result = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow, index=True)


class GroupSession(Base):
    __tablename__ = "group_prompt_sessions"
    id = Column(String, primary_key=True, index=True)
    group_id = Column(String, nullable=False, index=True)
    prompt = Column(Text, nullable=False, default="")
    is_custom = Column(Boolean, default=False)
    status = Column(String, default="pending")
    parent_session_id = Column(String, ForeignKey("group_prompt_sessions.id"), nullable=True)
    subject_ids = Column(JSON, default=list)
    subject_urls = Column(JSON, default=list)
    created_at = Column(DateTime, default=utcnow)


class GroupAnalysisResult(Base):
    __tablename__ = "group_analyses"
    __table_args__ = (
        UniqueConstraint("group_job_id", name="uq_group_analyses_group_job"),
    )
    id = Column(String, primary_key=True, index=True)
    group_id = Column(String, nullable=False, index=True)
    session_id = Column(String, ForeignKey("group_prompt_sessions.id"), nullable=True)
    group_job_id = Column(String, ForeignKey("group_analysis_jobs.id"), nullable=True)
    parent_session_id = Column(String, nullable=True)
    prompt = Column(Text, nullable=True)
    summary = Column(JSON, default=dict)
    insights = Column(JSON, default=list)
    recommendations = Column(JSON, default=list)
    patterns = Column(JSON, default=dict)
    result_metadata = Column("metadata", JSON, default=dict)
    quality_score = Column(Integer, nullable=True)
    is_partial_result = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)
