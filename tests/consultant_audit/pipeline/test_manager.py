"""Tests for consultant_audit.pipeline.manager — launch, resume, run_pipeline, cancel, run summary."""
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import patch, MagicMock

from consultant_audit.models.run import Run
from consultant_audit.pipeline.manager import (
    _generate_run_summary, cancel_run, get_run_status, launch_run, resolve_slugs, resume_run, run_pipeline,
)
from consultant_audit.pipeline.orchestrator import RunSummary
from consultant_audit.pipeline.scoring_config import ScoringConfigStore
from consultant_audit.services.db import (
    create_run, finish_run, get_run, mark_run_started, upsert_consultant_record,
)


# ── Helpers ──────────────────────────────────────────────────────────────────

class _FakeOrchestrator:
    """Records what it was asked to run and returns a canned summary."""

    def __init__(self, summary=None, exc=None):
        self.summary = summary
        self.exc = exc
        self.calls = []
        self.cancel_seen = None
        self.completed = None

    def execute(self, run_id, slugs, config, cancel_check=None, completed=None):
        self.completed = completed
        self.calls.append((run_id, list(slugs), config.version))
        self.cancel_seen = cancel_check() if cancel_check else None
        if self.exc:
            raise self.exc
        return self.summary or RunSummary(run_id=run_id, total=len(slugs), processed=len(slugs),
                                          succeeded=len(slugs))


@pytest.fixture
def config_store(tmp_path):
    return ScoringConfigStore(str(tmp_path / 'scoring_config.yaml'))


# ── resolve_slugs ────────────────────────────────────────────────────────────

class TestResolveSlugs:

    def test_dedupes_and_keeps_order(self):
        assert resolve_slugs(['b', 'a', 'b', ' ', 'c']) == ['b', 'a', 'c']

    def test_limit_takes_first_n(self):
        assert resolve_slugs(['a', 'b', 'c', 'd'], limit=2) == ['a', 'b']

    def test_random_sample(self):
        picked = resolve_slugs(['a', 'b', 'c', 'd'], limit=2, sample=True)
        assert len(picked) == 2
        assert set(picked) <= {'a', 'b', 'c', 'd'}

    def test_limit_larger_than_list(self):
        assert resolve_slugs(['a', 'b'], limit=5) == ['a', 'b']

    def test_falls_back_to_sitemap(self):
        crawler = MagicMock()
        crawler.fetch_sitemap_slugs.return_value = ['x', 'y']
        assert resolve_slugs(None, crawler=crawler) == ['x', 'y']
        crawler.fetch_sitemap_slugs.assert_called_once()


# ── launch_run ───────────────────────────────────────────────────────────────

class TestLaunchRun:

    @patch('consultant_audit.pipeline.manager._get_queue')
    def test_enqueues_run(self, mock_get_queue):
        queue = MagicMock()
        mock_get_queue.return_value = queue

        run = launch_run(['john-smith', 'jane-doe'], concurrency=3)

        assert run['status'] == 'queued'
        assert run['slugs'] == ['john-smith', 'jane-doe']
        assert run['options'] == {'concurrency': 3, 'skip_assess': False}
        args, kwargs = queue.enqueue.call_args
        assert args[0] is run_pipeline
        assert args[1] == run['id']
        assert 'job_timeout' in kwargs

    @patch('consultant_audit.pipeline.manager.run_pipeline')
    def test_inline_run(self, mock_run_pipeline):
        run = launch_run(['john-smith'], enqueue=False, skip_assess=True)
        mock_run_pipeline.assert_called_once_with(run['id'])
        assert run['options']['skip_assess'] is True

    def test_no_slugs_rejected(self):
        crawler_cls = MagicMock()
        crawler_cls.return_value.fetch_sitemap_slugs.return_value = []
        with patch('consultant_audit.pipeline.manager.ProfileCrawler', crawler_cls):
            with pytest.raises(ValueError, match='No consultant slugs'):
                launch_run([])


# ── run_pipeline ─────────────────────────────────────────────────────────────

class TestRunPipeline:

    def test_completed_run(self, config_store):
        create_run('run-1', ['john-smith', 'jane-doe'])
        summary = RunSummary(run_id='run-1', total=2, processed=2, succeeded=1, failed=1,
                             failures_by_stage={'crawl': 1})
        summary.tier_distribution['Gold'] = 1
        orch = _FakeOrchestrator(summary=summary)

        result = run_pipeline('run-1', config_store=config_store, orchestrator=orch)

        assert result is summary
        assert orch.calls == [('run-1', ['john-smith', 'jane-doe'], 1)]
        run = get_run('run-1')
        assert run['status'] == 'completed'
        assert run['config_version'] == 1
        assert run['tier_distribution']['Gold'] == 1
        assert run['failures_by_stage'] == {'crawl': 1}
        assert 'Processed 2 of 2 consultants.' in run['summary']

    def test_config_snapshot_version_recorded(self, config_store):
        config_store.save({'weights': {'booking': 30}})
        create_run('run-1', ['john-smith'])
        orch = _FakeOrchestrator()
        run_pipeline('run-1', config_store=config_store, orchestrator=orch)
        assert orch.calls[0][2] == 2
        assert get_run('run-1')['config_version'] == 2

    def test_cancel_check_reads_run_flag(self, config_store):
        create_run('run-1', ['john-smith'])
        cancel_run('run-1')
        orch = _FakeOrchestrator()
        run_pipeline('run-1', config_store=config_store, orchestrator=orch)
        assert orch.cancel_seen is True

    def test_cancelled_summary_status(self, config_store):
        create_run('run-1', ['a', 'b', 'c'])
        summary = RunSummary(run_id='run-1', total=3, processed=1, succeeded=1, cancelled=True,
                             not_dispatched=['b', 'c'])
        run_pipeline('run-1', config_store=config_store, orchestrator=_FakeOrchestrator(summary=summary))
        run = get_run('run-1')
        assert run['status'] == 'cancelled'
        assert '2 not started' in run['summary']

    def test_unexpected_error_marks_run_failed(self, config_store):
        create_run('run-1', ['john-smith'])
        orch = _FakeOrchestrator(exc=RuntimeError("worker lost"))
        run_pipeline('run-1', config_store=config_store, orchestrator=orch)
        run = get_run('run-1')
        assert run['status'] == 'failed'
        assert run['error'] == 'worker lost'
        assert run['summary'].startswith('Run failed after processing 0 of 1')

    def test_unknown_run(self, config_store):
        assert run_pipeline('nope', config_store=config_store, orchestrator=_FakeOrchestrator()) is None


# ── resume_run ───────────────────────────────────────────────────────────────

def _interrupted_run(run_id, slugs, status='running'):
    create_run(run_id, slugs, {'concurrency': 2, 'skip_assess': True})
    if status == 'running':
        mark_run_started(run_id, 1)
    else:
        finish_run(run_id, status, error='worker lost' if status == 'failed' else None)


class TestResumeRun:

    def test_skips_consultants_already_scored(self, config_store):
        _interrupted_run('run-1', ['john-smith', 'jane-doe', 'ada-lovelace'], status='failed')
        upsert_consultant_record('run-1', 'john-smith', {'tier': 'Gold', 'composite_score': 88.0})
        upsert_consultant_record('run-1', 'jane-doe', {'error_stage': 'crawl', 'error_message': 'HTTP 500'})
        orch = _FakeOrchestrator()

        summary = run_pipeline('run-1', config_store=config_store, orchestrator=orch, resume=True)

        assert orch.completed == {'john-smith': 'Gold'}
        assert orch.calls == [('run-1', ['john-smith', 'jane-doe', 'ada-lovelace'], 1)]
        assert summary.status == 'completed'
        assert get_run('run-1')['status'] == 'completed'

    def test_fresh_run_passes_no_completed_slugs(self, config_store):
        create_run('run-1', ['john-smith'])
        upsert_consultant_record('run-1', 'john-smith', {'tier': 'Gold'})
        orch = _FakeOrchestrator()
        run_pipeline('run-1', config_store=config_store, orchestrator=orch)
        assert orch.completed is None

    @patch('consultant_audit.pipeline.manager.run_pipeline')
    def test_resume_latest_incomplete_run_inline(self, mock_run_pipeline, db_session):
        _interrupted_run('run-old', ['a'], status='cancelled')
        _interrupted_run('run-new', ['b'], status='running')
        create_run('run-done', ['c'])
        finish_run('run-done', 'completed')
        _set_created(db_session, {'run-old': 1, 'run-new': 2, 'run-done': 3})

        run = resume_run(enqueue=False)

        assert run['id'] == 'run-new'
        mock_run_pipeline.assert_called_once_with('run-new', resume=True)

    @patch('consultant_audit.pipeline.manager._get_queue')
    def test_resume_reopens_and_enqueues(self, mock_get_queue):
        queue = MagicMock()
        mock_get_queue.return_value = queue
        _interrupted_run('run-1', ['a', 'b'], status='cancelled')

        run = resume_run('run-1')

        assert run['status'] == 'queued'
        assert run['cancel_requested'] is False
        assert run['finished_at'] is None
        args, kwargs = queue.enqueue.call_args
        assert args == (run_pipeline, 'run-1')
        assert kwargs['resume'] is True
        assert 'job_timeout' in kwargs

    def test_completed_run_cannot_be_resumed(self):
        create_run('run-1', ['a'])
        finish_run('run-1', 'completed')
        with pytest.raises(ValueError, match='cannot be resumed'):
            resume_run('run-1', enqueue=False)

    def test_nothing_to_resume(self):
        with pytest.raises(ValueError, match='No incomplete run'):
            resume_run(enqueue=False)


def _set_created(session, order):
    """Give runs distinct creation times; the DB default has one-second resolution."""
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for run_id, offset in order.items():
        session.get(Run, run_id).created_at = base + timedelta(minutes=offset)
    session.commit()


# ── Status / cancel ──────────────────────────────────────────────────────────

class TestStatusAndCancel:

    def test_status(self):
        create_run('run-1', ['john-smith'])
        assert get_run_status('run-1')['status'] == 'queued'
        assert get_run_status('nope') is None

    def test_cancel(self):
        create_run('run-1', ['john-smith'])
        assert cancel_run('run-1') is True
        assert get_run('run-1')['cancel_requested'] is True

    def test_cancel_finished_run(self):
        create_run('run-1', ['john-smith'])
        finish_run('run-1', 'completed')
        assert cancel_run('run-1') is False


# ── _generate_run_summary ────────────────────────────────────────────────────

class TestGenerateRunSummary:

    def test_tier_split_and_stage_failures(self):
        summary = RunSummary(run_id='r', total=10, processed=10, succeeded=9, failed=1,
                             failures_by_stage={'crawl': 1, 'booking_api': 3})
        summary.tier_distribution.update({'Gold': 4, 'Silver': 3, 'Incomplete': 2})
        text = _generate_run_summary(summary)
        assert text.startswith('Processed 10 of 10 consultants.')
        assert '9 scored — 4 Gold, 3 Silver, 2 Incomplete.' in text
        assert '1 could not be scored.' in text
        assert 'Stage failures: booking 3, crawl 1.' in text
        assert 'Warning' not in text

    def test_high_failure_rate_warns(self):
        summary = RunSummary(run_id='r', total=4, processed=4, succeeded=1, failed=3,
                             failures_by_stage={'crawl': 3})
        summary.tier_distribution['Bronze'] = 1
        assert 'Warning: 75% of consultants failed before scoring.' in _generate_run_summary(summary)

    def test_ai_outage_warns(self):
        summary = RunSummary(run_id='r', total=2, processed=2, succeeded=2,
                             failures_by_stage={'ai_assessment': 2})
        summary.tier_distribution['Silver'] = 2
        assert 'AI assessment failed for most consultants' in _generate_run_summary(summary)

    def test_all_incomplete_warns(self):
        summary = RunSummary(run_id='r', total=2, processed=2, succeeded=2)
        summary.tier_distribution['Incomplete'] = 2
        assert 'Every scored consultant is Incomplete.' in _generate_run_summary(summary)

    def test_empty_run(self):
        assert _generate_run_summary(RunSummary(run_id='r')) == 'No consultants to process.'

    def test_failed_run(self):
        summary = RunSummary(run_id='r', total=5, processed=2)
        text = _generate_run_summary(summary, failed=True, error='boom')
        assert text == 'Run failed after processing 2 of 5 consultants. Error: boom'
