"""
ConsultantRecord model — one row per consultant per run.

Computed columns are written by the pipeline (last write wins); the review
columns are only ever written by the review workflow.
"""
from sqlalchemy import (
    Column, Integer, Text, Float, Boolean, DateTime, JSON, ForeignKey, UniqueConstraint,
)
from sqlalchemy.sql import func

from consultant_audit.database import Base

COMPUTED_FIELDS = (
    'snapshot_path',
    'profile_url',
    'name',
    'parsed',
    'booking',
    'ai_assessment',
    'signals',
    'gate_failures',
    'flags',
    'composite_score',
    'tier',
    'error_stage',
    'error_message',
    'stage_errors',
)


class ConsultantRecord(Base):
    __tablename__ = 'consultant_records'
    __table_args__ = (
        UniqueConstraint('run_id', 'slug', name='uq_consultant_records_run_slug'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Text, ForeignKey('runs.id'), nullable=False, index=True)
    slug = Column(Text, nullable=False)

    # Pipeline output
    snapshot_path = Column(Text, nullable=True)
    profile_url = Column(Text, nullable=True)
    name = Column(Text, nullable=True)
    parsed = Column(JSON, nullable=True)            # ParsedProfile fields
    booking = Column(JSON, nullable=True)           # BookingComparison
    ai_assessment = Column(JSON, nullable=True)     # {dimension: {score, rationale}}
    signals = Column(JSON, default=dict)            # {criterion: 0-100 | None}
    gate_failures = Column(JSON, default=list)
    flags = Column(JSON, default=list)              # [{code, severity, message}]
    composite_score = Column(Float, nullable=True)
    tier = Column(Text, nullable=True)              # Gold/Silver/Bronze/Incomplete
    error_stage = Column(Text, nullable=True)       # first fatal stage error
    error_message = Column(Text, nullable=True)
    stage_errors = Column(JSON, default=list)       # every StageFailure, fatal or not

    # Review workflow
    manually_reviewed = Column(Boolean, default=False, nullable=False)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_by = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def to_dict(self):
        return {
            'run_id': self.run_id,
            'slug': self.slug,
            **{f: getattr(self, f) for f in COMPUTED_FIELDS},
            'manually_reviewed': bool(self.manually_reviewed),
            'reviewed_at': self.reviewed_at.isoformat() if self.reviewed_at else None,
            'reviewed_by': self.reviewed_by,
        }
