"""
Run model — one batch execution of the audit pipeline.
"""
from sqlalchemy import Column, Text, Integer, Boolean, DateTime, JSON
from sqlalchemy.sql import func

from consultant_audit.database import Base


class Run(Base):
    __tablename__ = 'runs'

    id = Column(Text, primary_key=True)
    status = Column(Text, nullable=False, default='queued')   # queued/running/completed/cancelled/failed
    slugs = Column(JSON, default=list)
    options = Column(JSON, default=dict)                      # {concurrency, skip_assess}
    total = Column(Integer, default=0)
    processed = Column(Integer, default=0)
    succeeded = Column(Integer, default=0)
    failed = Column(Integer, default=0)
    cancel_requested = Column(Boolean, default=False, nullable=False)
    config_version = Column(Integer, nullable=True)
    tier_distribution = Column(JSON, default=dict)
    failures_by_stage = Column(JSON, default=dict)
    summary = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'status': self.status,
            'total': self.total or 0,
            'processed': self.processed or 0,
            'succeeded': self.succeeded or 0,
            'failed': self.failed or 0,
            'cancel_requested': bool(self.cancel_requested),
            'config_version': self.config_version,
            'tier_distribution': self.tier_distribution or {},
            'failures_by_stage': self.failures_by_stage or {},
            'summary': self.summary,
            'error': self.error,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }
