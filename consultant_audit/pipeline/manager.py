"""
Pipeline Manager — run lifecycle around the orchestrator.

  launch_run()   resolve slugs, create the Run row, enqueue run_pipeline on RQ
  resume_run()   reopen an interrupted run; consultants already scored are skipped
  run_pipeline() RQ job entry: config snapshot → orchestrator → summary → finish
  cancel_run()   flag a run; the orchestrator stops dispatching once it sees it
"""
import logging
import random
import uuid
from typing import Dict, List, Optional

from consultant_audit.config import PIPELINE_CONCURRENCY, RESUMABLE_RUN_STATUSES, RUN_JOB_TIMEOUT
from consultant_audit.errors import CRAWL, PARSE, BOOKING_API, AI_ASSESSMENT
from consultant_audit.logging_config import log_stage
from consultant_audit.pipeline.crawl import CrawlStage
from consultant_audit.pipeline.orchestrator import RunOrchestrator, RunSummary
from consultant_audit.pipeline.scoring import GOLD, SILVER, BRONZE, INCOMPLETE
from consultant_audit.pipeline.scoring_config import ScoringConfigStore
from consultant_audit.services.crawler import ProfileCrawler, SnapshotStore
from consultant_audit.services.db import (
    create_run, get_run, mark_run_started, update_run_progress, finish_run, request_cancel,
    is_cancel_requested, upsert_consultant_record, find_latest_incomplete_run, reopen_run, completed_slugs,
)

logger = logging.getLogger('consultant_audit.pipeline.manager')

PIPELINE = 'pipeline'

_STAGE_LABELS = {
    CRAWL: 'crawl',
    PARSE: 'parse',
    BOOKING_API: 'booking',
    AI_ASSESSMENT: 'AI assessment',
    PIPELINE: 'pipeline',
    'persist': 'persistence',
}


# ── Lazy RQ queue (no Redis connection until a run is enqueued) ─────────────

_queue = None


def _get_queue():
    global _queue
    if _queue is None:
        from consultant_audit.extensions import get_redis
        from rq import Queue
        _queue = Queue('consultant-audit', connection=get_redis())
    return _queue


def start_worker():
    """Block processing queued runs (the RQ worker for this project)."""
    from consultant_audit.extensions import get_redis
    from rq import Worker
    Worker([_get_queue()], connection=get_redis()).work()


# ── Public API ────────────────────────────────────────────────────────────────

def resolve_slugs(slugs: Optional[List[str]] = None, limit: Optional[int] = None,
                  sample: bool = False, crawler=None) -> List[str]:
    """
    Slugs for a run: the given list (de-duplicated, order kept) or, when none
    are given, every consultant in the sitemap. `limit` keeps the first N, or
    a random N when `sample` is set.
    """
    if not slugs:
        slugs = (crawler or ProfileCrawler()).fetch_sitemap_slugs()

    seen = set()
    unique = []
    for slug in slugs:
        slug = (slug or '').strip()
        if slug and slug not in seen:
            seen.add(slug)
            unique.append(slug)

    if limit is not None and 0 <= limit < len(unique):
        unique = random.sample(unique, limit) if sample else unique[:limit]
    return unique


def launch_run(slugs: Optional[List[str]] = None, limit: Optional[int] = None, sample: bool = False,
               concurrency: Optional[int] = None, skip_assess: bool = False, enqueue: bool = True) -> Dict:
    """
    Create a new Run and either enqueue it as a background RQ job or, with
    enqueue=False, execute it in this process. Returns the run as a dict.
    """
    resolved = resolve_slugs(slugs, limit, sample)
    if not resolved:
        raise ValueError("No consultant slugs to process")

    run_id = str(uuid.uuid4())
    options = {
        'concurrency': concurrency or PIPELINE_CONCURRENCY,
        'skip_assess': bool(skip_assess),
    }
    create_run(run_id, resolved, options)
    log_stage(logger, logging.INFO, PIPELINE, run_id, 'queued', f"{len(resolved)} consultants")

    if enqueue:
        _get_queue().enqueue(run_pipeline, run_id, job_timeout=RUN_JOB_TIMEOUT)
    else:
        run_pipeline(run_id)
    return get_run(run_id)


def resume_run(run_id: Optional[str] = None, enqueue: bool = True) -> Dict:
    """
    Pick an interrupted, cancelled or failed run back up (the most recent one
    unless `run_id` is given). The run keeps its slugs and options; consultants
    that already have a scored record are not processed again.
    """
    run = get_run(run_id) if run_id else find_latest_incomplete_run()
    if run is None:
        raise ValueError(f"Run {run_id} not found" if run_id else "No incomplete run found to resume")
    if run['status'] not in RESUMABLE_RUN_STATUSES:
        raise ValueError(f"Run {run['id']} is {run['status']} and cannot be resumed")

    run_id = run['id']
    reopen_run(run_id)
    log_stage(logger, logging.INFO, PIPELINE, run_id, 'resuming',
              f"{len(completed_slugs(run_id))} of {run['total']} already scored")

    if enqueue:
        _get_queue().enqueue(run_pipeline, run_id, resume=True, job_timeout=RUN_JOB_TIMEOUT)
    else:
        run_pipeline(run_id, resume=True)
    return get_run(run_id)


def get_run_status(run_id: str) -> Optional[Dict]:
    """Get the current status of a run."""
    return get_run(run_id)


def cancel_run(run_id: str) -> bool:
    ok = request_cancel(run_id)
    if ok:
        log_stage(logger, logging.WARNING, PIPELINE, run_id, 'cancel_requested')
    return ok


# ── Pipeline runner (enqueued via RQ) ─────────────────────────────────────────

def build_orchestrator(concurrency: int, skip_assess: bool = False) -> RunOrchestrator:
    """Production wiring: live clients, snapshot store, database persistence."""
    return RunOrchestrator(
        crawl_stage=CrawlStage(snapshots=SnapshotStore()),
        concurrency=concurrency,
        skip_assess=skip_assess,
        persist=upsert_consultant_record,
        on_progress=update_run_progress,
    )


def run_pipeline(run_id: str, config_store: Optional[ScoringConfigStore] = None,
                 orchestrator: Optional[RunOrchestrator] = None, resume: bool = False) -> Optional[RunSummary]:
    """
    Execute a run end to end.

    The scoring config is read once here and the same snapshot is used for
    every consultant. A run only ends 'failed' if something outside the
    per-consultant stages breaks; stage errors are part of a completed run.
    With `resume`, consultants already scored in this run are counted but not
    processed again.
    """
    run = get_run(run_id)
    if not run:
        logger.error("Run %s not found", run_id)
        return None

    options = run.get('options') or {}
    slugs = run.get('slugs') or []
    summary = RunSummary(run_id=run_id, total=len(slugs))

    try:
        config = (config_store or ScoringConfigStore()).read()
        mark_run_started(run_id, config.version)
        orchestrator = orchestrator or build_orchestrator(
            options.get('concurrency') or PIPELINE_CONCURRENCY,
            skip_assess=options.get('skip_assess', False),
        )
        completed = completed_slugs(run_id) if resume else None
        summary = orchestrator.execute(run_id, slugs, config,
                                       cancel_check=lambda: is_cancel_requested(run_id),
                                       completed=completed)
    except Exception as e:
        logger.exception("Run %s FAILED", run_id)
        finish_run(
            run_id, 'failed',
            tier_distribution=summary.tier_distribution,
            failures_by_stage=summary.failures_by_stage,
            summary=_generate_run_summary(summary, failed=True, error=str(e)),
            error=str(e),
        )
        return summary

    finish_run(
        run_id, summary.status,
        tier_distribution=summary.tier_distribution,
        failures_by_stage=summary.failures_by_stage,
        summary=_generate_run_summary(summary),
    )
    logger.info("Run %s %s — processed=%d, scored=%d, failed=%d",
                run_id, summary.status, summary.processed, summary.succeeded, summary.failed)
    return summary


# ── Run summary generator ────────────────────────────────────────────────────

def _generate_run_summary(summary: RunSummary, failed: bool = False, error: Optional[str] = None) -> str:
    """Human-readable one-paragraph summary of a run. Pure Python, no API calls."""
    total = summary.total
    processed = summary.processed

    if failed:
        parts = [f"Run failed after processing {processed} of {total} consultants."]
        if error:
            parts.append(f"Error: {error}")
        return ' '.join(parts)

    if total == 0:
        return "No consultants to process."

    lines = []
    if summary.cancelled:
        lines.append(f"Run cancelled: processed {processed} of {total} consultants, "
                     f"{len(summary.not_dispatched)} not started.")
    else:
        lines.append(f"Processed {processed} of {total} consultants.")

    tiers = summary.tier_distribution or {}
    if summary.succeeded:
        split = [f"{tiers.get(t, 0)} {t}" for t in (GOLD, SILVER, BRONZE, INCOMPLETE) if tiers.get(t, 0)]
        lines.append(f"{summary.succeeded} scored — {', '.join(split)}.")

    if summary.failed:
        lines.append(f"{summary.failed} could not be scored.")

    failures = summary.failures_by_stage or {}
    if failures:
        detail = ', '.join(f"{_STAGE_LABELS.get(stage, stage)} {count}"
                           for stage, count in sorted(failures.items(), key=lambda kv: -kv[1]))
        lines.append(f"Stage failures: {detail}.")

    warnings = _collect_warnings(summary)
    if warnings:
        lines.append('Warning: ' + ' '.join(warnings))

    return ' '.join(lines)


def _collect_warnings(summary: RunSummary) -> list:
    warnings = []
    processed = summary.processed
    failures = summary.failures_by_stage or {}

    if processed and summary.failed > processed * 0.2:
        pct = round(summary.failed / processed * 100)
        warnings.append(f"{pct}% of consultants failed before scoring.")

    booking_failures = failures.get(BOOKING_API, 0)
    if processed and booking_failures > processed * 0.5:
        warnings.append("Booking API failed for most consultants; booking signals are missing.")

    ai_failures = failures.get(AI_ASSESSMENT, 0)
    if processed and ai_failures > processed * 0.5:
        warnings.append("AI assessment failed for most consultants; bio depth and plain English are unscored.")

    if summary.succeeded and summary.tier_distribution.get(INCOMPLETE, 0) == summary.succeeded:
        warnings.append("Every scored consultant is Incomplete.")

    return warnings
