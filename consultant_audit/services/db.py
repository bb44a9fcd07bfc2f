"""
Persistence helpers for runs and consultant records — called from the pipeline
manager and the orchestrator.

Progress writes are wrapped in try/except so the pipeline never blocks on DB
errors; run creation and record upserts propagate, since losing them would
break the one-record-per-consultant guarantee.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from consultant_audit.config import RUN_STATUSES, RESUMABLE_RUN_STATUSES
from consultant_audit.database import get_session
from consultant_audit.models.run import Run
from consultant_audit.models.consultant_record import ConsultantRecord, COMPUTED_FIELDS

logger = logging.getLogger('consultant_audit.services.db')


def _now():
    return datetime.now(timezone.utc)


# ── Runs ─────────────────────────────────────────────────────────────────────

def create_run(run_id: str, slugs: List[str], options: Optional[Dict] = None) -> Dict:
    """INSERT a queued run and return it as a dict."""
    session = get_session()
    try:
        run = Run(
            id=run_id,
            status='queued',
            slugs=list(slugs),
            options=options or {},
            total=len(slugs),
            tier_distribution={},
            failures_by_stage={},
        )
        session.add(run)
        session.commit()
        return run.to_dict()
    except Exception:
        session.rollback()
        logger.error("Failed to create run %s", run_id, exc_info=True)
        raise
    finally:
        session.close()


def get_run(run_id: str) -> Optional[Dict]:
    session = get_session()
    try:
        run = session.get(Run, run_id)
        if run is None:
            return None
        data = run.to_dict()
        data['slugs'] = list(run.slugs or [])
        data['options'] = dict(run.options or {})
        return data
    finally:
        session.close()


def mark_run_started(run_id: str, config_version: int) -> bool:
    session = get_session()
    try:
        run = session.get(Run, run_id)
        if run is None:
            logger.warning("mark_run_started: run %s not found", run_id)
            return False
        run.status = 'running'
        run.config_version = config_version
        run.started_at = _now()
        session.commit()
        return True
    except Exception:
        session.rollback()
        logger.error("Failed to mark run %s started", run_id, exc_info=True)
        return False
    finally:
        session.close()


def update_run_progress(run_id: str, processed: int, succeeded: int, failed: int) -> bool:
    session = get_session()
    try:
        run = session.get(Run, run_id)
        if run is None:
            return False
        run.processed = processed
        run.succeeded = succeeded
        run.failed = failed
        session.commit()
        return True
    except Exception:
        session.rollback()
        logger.error("Failed to update progress for run %s", run_id, exc_info=True)
        return False
    finally:
        session.close()


def finish_run(run_id: str, status: str, tier_distribution: Optional[Dict] = None,
               failures_by_stage: Optional[Dict] = None, summary: Optional[str] = None,
               error: Optional[str] = None) -> bool:
    """UPDATE the run's terminal status and summary fields."""
    if status not in RUN_STATUSES:
        raise ValueError(f"Unknown run status: {status!r}")
    session = get_session()
    try:
        run = session.get(Run, run_id)
        if run is None:
            logger.warning("finish_run: run %s not found", run_id)
            return False
        run.status = status
        if tier_distribution is not None:
            run.tier_distribution = tier_distribution
        if failures_by_stage is not None:
            run.failures_by_stage = failures_by_stage
        if summary is not None:
            run.summary = summary
        if error is not None:
            run.error = error
        run.finished_at = _now()
        session.commit()
        return True
    except Exception:
        session.rollback()
        logger.error("Failed to finish run %s", run_id, exc_info=True)
        return False
    finally:
        session.close()


def find_latest_incomplete_run() -> Optional[Dict]:
    """Most recently created run that was interrupted, cancelled or failed, or None."""
    session = get_session()
    try:
        run_id = session.execute(
            select(Run.id)
            .where(Run.status.in_(RESUMABLE_RUN_STATUSES))
            .order_by(Run.created_at.desc(), Run.id.desc())
            .limit(1)
        ).scalar_one_or_none()
    finally:
        session.close()
    return get_run(run_id) if run_id else None


def reopen_run(run_id: str) -> bool:
    """Put a finished or interrupted run back in the queue for a resume."""
    session = get_session()
    try:
        run = session.get(Run, run_id)
        if run is None:
            return False
        run.status = 'queued'
        run.cancel_requested = False
        run.error = None
        run.finished_at = None
        session.commit()
        return True
    except Exception:
        session.rollback()
        logger.error("Failed to reopen run %s", run_id, exc_info=True)
        return False
    finally:
        session.close()


def request_cancel(run_id: str) -> bool:
    """Flag a run for cancellation. Returns False if the run is unknown or already finished."""
    session = get_session()
    try:
        run = session.get(Run, run_id)
        if run is None or run.status in ('completed', 'cancelled', 'failed'):
            return False
        run.cancel_requested = True
        session.commit()
        return True
    except Exception:
        session.rollback()
        logger.error("Failed to request cancel for run %s", run_id, exc_info=True)
        return False
    finally:
        session.close()


def is_cancel_requested(run_id: str) -> bool:
    session = get_session()
    try:
        flag = session.execute(select(Run.cancel_requested).where(Run.id == run_id)).scalar_one_or_none()
        return bool(flag)
    except Exception:
        logger.error("Failed to read cancel flag for run %s", run_id, exc_info=True)
        return False
    finally:
        session.close()


# ── Consultant records ───────────────────────────────────────────────────────

def upsert_consultant_record(run_id: str, slug: str, fields: Dict) -> None:
    """
    INSERT or UPDATE the record for (run_id, slug).

    Only computed fields are written; review fields on an existing row are
    left as they are.
    """
    values = {k: v for k, v in fields.items() if k in COMPUTED_FIELDS}
    for attempt in range(2):
        session = get_session()
        try:
            record = session.execute(
                select(ConsultantRecord).where(ConsultantRecord.run_id == run_id,
                                               ConsultantRecord.slug == slug)
            ).scalar_one_or_none()
            if record is None:
                record = ConsultantRecord(run_id=run_id, slug=slug)
                session.add(record)
            for key in COMPUTED_FIELDS:
                if key in values:
                    setattr(record, key, values[key])
            session.commit()
            return
        except IntegrityError:
            # Concurrent insert of the same key; the second pass updates it
            session.rollback()
            if attempt:
                raise
        except Exception:
            session.rollback()
            logger.error("Failed to upsert record %s/%s", run_id, slug, exc_info=True)
            raise
        finally:
            session.close()


def get_record(run_id: str, slug: str) -> Optional[Dict]:
    session = get_session()
    try:
        record = session.execute(
            select(ConsultantRecord).where(ConsultantRecord.run_id == run_id, ConsultantRecord.slug == slug)
        ).scalar_one_or_none()
        return record.to_dict() if record else None
    finally:
        session.close()


def list_records(run_id: str, tier: Optional[str] = None, reviewed: Optional[bool] = None) -> List[Dict]:
    session = get_session()
    try:
        query = select(ConsultantRecord).where(ConsultantRecord.run_id == run_id)
        if tier is not None:
            query = query.where(ConsultantRecord.tier == tier)
        if reviewed is not None:
            query = query.where(ConsultantRecord.manually_reviewed == reviewed)
        rows = session.execute(query.order_by(ConsultantRecord.slug)).scalars().all()
        return [r.to_dict() for r in rows]
    finally:
        session.close()


def completed_slugs(run_id: str) -> Dict[str, str]:
    """{slug: tier} for every record of the run that was scored."""
    session = get_session()
    try:
        rows = session.execute(
            select(ConsultantRecord.slug, ConsultantRecord.tier)
            .where(ConsultantRecord.run_id == run_id, ConsultantRecord.tier.is_not(None))
        ).all()
        return {slug: tier for slug, tier in rows}
    finally:
        session.close()
