"""
Review workflow — reviewers mark consultant records as checked, or clear marks.

Each action returns the number of records it changed. Missing run_id / slug
raises ValueError before anything is written.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import update

from consultant_audit.database import get_session
from consultant_audit.models.consultant_record import ConsultantRecord

logger = logging.getLogger('consultant_audit.services.review')

DEFAULT_REVIEWER = 'reviewer'


def _require(**keys):
    missing = [name for name, value in keys.items() if not value or not str(value).strip()]
    if missing:
        raise ValueError(f"{' and '.join(missing)} {'is' if len(missing) == 1 else 'are'} required")


def _apply(where, values, label):
    session = get_session()
    try:
        result = session.execute(update(ConsultantRecord).where(*where).values(**values))
        session.commit()
        logger.info("%s: %d record(s) updated", label, result.rowcount)
        return result.rowcount
    except Exception:
        session.rollback()
        logger.error("%s failed", label, exc_info=True)
        raise
    finally:
        session.close()


def mark_reviewed(run_id: str, slug: str, reviewed_by: str = DEFAULT_REVIEWER) -> int:
    _require(run_id=run_id, slug=slug)
    return _apply(
        (ConsultantRecord.run_id == run_id, ConsultantRecord.slug == slug),
        {
            'manually_reviewed': True,
            'reviewed_at': datetime.now(timezone.utc),
            'reviewed_by': (reviewed_by or DEFAULT_REVIEWER).strip() or DEFAULT_REVIEWER,
        },
        f"mark_reviewed {run_id}/{slug}",
    )


def reset_profile(run_id: str, slug: str) -> int:
    _require(run_id=run_id, slug=slug)
    return _apply(
        (ConsultantRecord.run_id == run_id, ConsultantRecord.slug == slug),
        {'manually_reviewed': False, 'reviewed_at': None, 'reviewed_by': None},
        f"reset_profile {run_id}/{slug}",
    )


def reset_run(run_id: str) -> int:
    _require(run_id=run_id)
    return _apply(
        (ConsultantRecord.run_id == run_id,),
        {'manually_reviewed': False, 'reviewed_at': None, 'reviewed_by': None},
        f"reset_run {run_id}",
    )


REVIEW_ACTIONS = {
    'mark': mark_reviewed,
    'reset-profile': reset_profile,
    'reset-run': reset_run,
}


def apply_review_action(action: str, run_id: str, slug: str = None, reviewed_by: str = DEFAULT_REVIEWER) -> int:
    """Dispatch a named review action (used by the CLI)."""
    if action not in REVIEW_ACTIONS:
        raise ValueError(f"Unknown review action '{action}'. Available: {', '.join(REVIEW_ACTIONS)}")
    if action == 'mark':
        return mark_reviewed(run_id, slug, reviewed_by)
    if action == 'reset-profile':
        return reset_profile(run_id, slug)
    return reset_run(run_id)
