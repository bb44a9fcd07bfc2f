"""
Run orchestrator — drives every consultant of a run through the stage chain.

Per consultant (strict order):
  CRAWL → PARSE → {BOOKING ∥ AI ASSESSMENT} → SCORE → persist

Consultants run on a bounded worker pool; booking and AI run as two futures
on a separate branch pool and are joined before scoring. Crawl or parse
failures short-circuit that consultant; booking and AI failures are recorded
and scoring proceeds without their signals.

Records are persisted from the dispatching thread as consultants finish, so
storage never sees concurrent writers. Cancellation is checked before each
dispatch: nothing new starts once it is observed, in-flight consultants finish
and are persisted.

A resumed run passes the slugs already scored; they are counted, not re-run.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_COMPLETED
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from consultant_audit.config import PIPELINE_CONCURRENCY
from consultant_audit.errors import AI_ASSESSMENT
from consultant_audit.logging_config import log_stage
from consultant_audit.models.consultant_record import COMPUTED_FIELDS
from consultant_audit.pipeline.assessment import AssessmentStage
from consultant_audit.pipeline.base import StageFailure, skipped
from consultant_audit.pipeline.booking import BookingStage
from consultant_audit.pipeline.crawl import CrawlStage
from consultant_audit.pipeline.parse import ParseStage
from consultant_audit.pipeline.scoring import TIERS, score_consultant
from consultant_audit.pipeline.scoring_config import ScoringConfig

logger = logging.getLogger('consultant_audit.pipeline.orchestrator')

PIPELINE = 'pipeline'


@dataclass
class ConsultantResult:
    slug: str
    record: Dict
    failures: List[StageFailure] = field(default_factory=list)
    fatal: Optional[StageFailure] = None

    @property
    def ok(self) -> bool:
        return self.fatal is None

    @property
    def tier(self) -> Optional[str]:
        return self.record.get('tier')


@dataclass
class RunSummary:
    run_id: str
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    tier_distribution: Dict[str, int] = field(default_factory=lambda: {t: 0 for t in TIERS})
    failures_by_stage: Dict[str, int] = field(default_factory=dict)
    cancelled: bool = False
    not_dispatched: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return 'cancelled' if self.cancelled else 'completed'

    def to_dict(self) -> Dict:
        return {
            'run_id': self.run_id,
            'status': self.status,
            'total': self.total,
            'processed': self.processed,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'tier_distribution': dict(self.tier_distribution),
            'failures_by_stage': dict(self.failures_by_stage),
            'not_dispatched': list(self.not_dispatched),
        }


def _empty_record() -> Dict:
    record = {f: None for f in COMPUTED_FIELDS}
    record['signals'] = {}
    record['gate_failures'] = []
    record['flags'] = []
    record['stage_errors'] = []
    return record


class RunOrchestrator:
    """
    persist(run_id, slug, record_fields) stores one consultant record.
    on_progress(run_id, processed, succeeded, failed) is called after each one.
    """

    def __init__(self, crawl_stage=None, parse_stage=None, booking_stage=None, assessment_stage=None,
                 concurrency: int = PIPELINE_CONCURRENCY, skip_assess: bool = False,
                 persist: Optional[Callable] = None, on_progress: Optional[Callable] = None):
        self.crawl_stage = crawl_stage or CrawlStage()
        self.parse_stage = parse_stage or ParseStage()
        self.booking_stage = booking_stage or BookingStage()
        self.assessment_stage = assessment_stage if assessment_stage is not None or skip_assess else AssessmentStage()
        self.concurrency = max(1, int(concurrency or 1))
        self.skip_assess = skip_assess
        self.persist = persist
        self.on_progress = on_progress

    # ── One consultant ───────────────────────────────────────────────────────

    def process_consultant(self, run_id: str, slug: str, config: ScoringConfig,
                           progress: Optional[Tuple[int, int]] = None, branch_pool=None) -> ConsultantResult:
        """Run the full stage chain for one slug. Never raises on a stage error."""
        record = _empty_record()
        failures = []

        crawl = self.crawl_stage.run(slug, run_id, progress)
        if not crawl.ok:
            return self._fatal(slug, record, failures, crawl.failure)
        record['profile_url'] = crawl.payload.url
        record['snapshot_path'] = crawl.payload.snapshot_path

        parse = self.parse_stage.run(slug, crawl.payload, progress)
        if not parse.ok:
            return self._fatal(slug, record, failures, parse.failure)
        parsed = parse.payload
        record['name'] = parsed.name
        record['parsed'] = parsed.to_dict()

        if branch_pool is None:
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix='branch') as pool:
                booking, ai = self._branches(slug, parsed, progress, pool)
        else:
            booking, ai = self._branches(slug, parsed, progress, branch_pool)

        for outcome in (booking, ai):
            if not outcome.ok:
                failures.append(outcome.failure)
        record['booking'] = booking.payload.to_dict() if booking.ok else None
        record['ai_assessment'] = ai.payload.to_dict() if ai.ok else None

        score = score_consultant(parsed, booking, ai, config, progress)
        record['signals'] = score.signals
        record['gate_failures'] = score.gate_failures
        record['flags'] = score.flags
        record['composite_score'] = score.composite
        record['tier'] = score.tier
        record['stage_errors'] = [f.to_dict() for f in failures]
        return ConsultantResult(slug=slug, record=record, failures=failures)

    def _branches(self, slug, parsed, progress, pool):
        booking_future = pool.submit(self.booking_stage.run, slug, parsed, progress)
        ai_future = None if self.skip_assess else pool.submit(self.assessment_stage.run, slug, parsed, progress)
        booking = booking_future.result()
        if ai_future is None:
            return booking, skipped(AI_ASSESSMENT, slug, 'AI assessment skipped for this run')
        return booking, ai_future.result()

    def _fatal(self, slug, record, failures, failure):
        failures.append(failure)
        record['error_stage'] = failure.stage
        record['error_message'] = failure.message
        record['stage_errors'] = [f.to_dict() for f in failures]
        return ConsultantResult(slug=slug, record=record, failures=failures, fatal=failure)

    # ── Whole run ────────────────────────────────────────────────────────────

    def execute(self, run_id: str, slugs: List[str], config: ScoringConfig,
                cancel_check: Optional[Callable[[], bool]] = None,
                completed: Optional[Dict[str, str]] = None) -> RunSummary:
        """
        Process every slug with at most `concurrency` consultants in flight.
        Returns the run's counts; stage errors never abort the run.

        `completed` maps slugs already scored by an earlier pass of this run to
        their tier. They are counted as processed and not dispatched again.
        """
        total = len(slugs)
        summary = RunSummary(run_id=run_id, total=total)
        wanted = set(slugs)
        completed = {s: t for s, t in (completed or {}).items() if s in wanted}
        log_stage(logger, logging.INFO, PIPELINE, run_id, 'started',
                  f"{total} consultants, concurrency={self.concurrency}, config v{config.version}")

        if completed:
            for tier in completed.values():
                summary.tier_distribution[tier] = summary.tier_distribution.get(tier, 0) + 1
            summary.processed = summary.succeeded = len(completed)
            log_stage(logger, logging.INFO, PIPELINE, run_id, 'resuming',
                      f"{len(completed)} of {total} already scored")
            if self.on_progress is not None:
                self.on_progress(run_id, summary.processed, summary.succeeded, summary.failed)

        in_flight = {}
        next_index = 0
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix='consultant') as workers, \
                ThreadPoolExecutor(max_workers=self.concurrency * 2, thread_name_prefix='branch') as branches:
            while True:
                while not summary.cancelled and next_index < total and len(in_flight) < self.concurrency:
                    slug = slugs[next_index]
                    if slug in completed:
                        next_index += 1
                        log_stage(logger, logging.DEBUG, PIPELINE, slug, 'skipped', 'already scored',
                                  (next_index, total))
                        continue
                    if cancel_check is not None and self._cancel_requested(cancel_check, run_id):
                        summary.cancelled = True
                        summary.not_dispatched = [s for s in slugs[next_index:] if s not in completed]
                        log_stage(logger, logging.WARNING, PIPELINE, run_id, 'cancelled',
                                  f"{len(summary.not_dispatched)} consultants not dispatched, "
                                  f"{len(in_flight)} in flight will finish")
                        break
                    next_index += 1
                    future = workers.submit(self.process_consultant, run_id, slug, config,
                                            (next_index, total), branches)
                    in_flight[future] = slug

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    slug = in_flight.pop(future)
                    self._collect(run_id, slug, future, summary)

        log_stage(logger, logging.INFO, PIPELINE, run_id, summary.status,
                  f"{summary.processed}/{total} processed, {summary.succeeded} scored, {summary.failed} failed")
        return summary

    def _cancel_requested(self, cancel_check, run_id) -> bool:
        try:
            return bool(cancel_check())
        except Exception:
            logger.warning("Cancel check failed for run %s, continuing", run_id, exc_info=True)
            return False

    def _collect(self, run_id, slug, future, summary: RunSummary):
        try:
            result = future.result()
        except Exception as e:
            logger.exception("Consultant %s crashed outside a stage", slug)
            failure = StageFailure(stage=PIPELINE, slug=slug, message=f"Unexpected error: {e}",
                                   cause=e, code='unexpected')
            result = self._fatal(slug, _empty_record(), [], failure)

        persisted = True
        if self.persist is not None:
            try:
                self.persist(run_id, slug, result.record)
            except Exception:
                persisted = False
                logger.exception("Failed to persist record for %s", slug)

        summary.processed += 1
        if result.ok and persisted:
            summary.succeeded += 1
            summary.tier_distribution[result.tier] = summary.tier_distribution.get(result.tier, 0) + 1
        else:
            summary.failed += 1
        for failure in result.failures:
            if failure.code != 'skipped':
                summary.failures_by_stage[failure.stage] = summary.failures_by_stage.get(failure.stage, 0) + 1
        if not persisted:
            summary.failures_by_stage['persist'] = summary.failures_by_stage.get('persist', 0) + 1

        if self.on_progress is not None:
            self.on_progress(run_id, summary.processed, summary.succeeded, summary.failed)
