"""Tests for consultant_audit.cli — argument parsing and command output."""
import pytest
from unittest.mock import patch

from consultant_audit import cli
from consultant_audit.services.db import create_run, upsert_consultant_record


@pytest.fixture(autouse=True)
def _no_side_effects():
    """main() configures logging and creates tables; neither is wanted here."""
    with patch('consultant_audit.cli.configure_logging'), patch('consultant_audit.cli.init_db'):
        yield


class TestParser:

    def test_run_options(self):
        args = cli.build_parser().parse_args(['run', '--slug', 'a', '--slug', 'b', '--limit', '5', '--random',
                                              '--concurrency', '8', '--skip-assess'])
        assert args.slug == ['a', 'b']
        assert args.limit == 5
        assert args.random is True
        assert args.concurrency == 8
        assert args.skip_assess is True
        assert args.enqueue is False
        assert args.resume is None

    def test_resume_with_and_without_run_id(self):
        parser = cli.build_parser()
        assert parser.parse_args(['run', '--resume']).resume == ''
        assert parser.parse_args(['run', '--resume', 'run-1', '--enqueue']).resume == 'run-1'

    def test_review_requires_run_id(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(['review', 'mark', '--slug', 'a'])

    def test_unknown_review_action(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(['review', 'approve', '--run-id', 'r'])


class TestCommands:

    @patch('consultant_audit.cli.launch_run')
    def test_run_inline_prints_summary(self, mock_launch, capsys):
        mock_launch.return_value = {'id': 'r1', 'status': 'completed', 'total': 1,
                                    'summary': 'Processed 1 of 1 consultants.'}
        assert cli.main(['run', '--slug', 'john-smith']) == 0
        assert 'Processed 1 of 1 consultants.' in capsys.readouterr().out
        assert mock_launch.call_args.kwargs['slugs'] == ['john-smith']

    @patch('consultant_audit.cli.launch_run')
    def test_failed_run_exit_code(self, mock_launch):
        mock_launch.return_value = {'id': 'r1', 'status': 'failed', 'total': 1, 'summary': 'Run failed'}
        assert cli.main(['run', '--slug', 'john-smith']) == 1

    @patch('consultant_audit.cli.launch_run')
    @patch('consultant_audit.cli.resume_run')
    def test_resume_latest_run(self, mock_resume, mock_launch, capsys):
        mock_resume.return_value = {'id': 'r1', 'status': 'completed', 'total': 3,
                                    'summary': 'Processed 3 of 3 consultants.'}
        assert cli.main(['run', '--resume']) == 0
        mock_resume.assert_called_once_with(None, enqueue=False)
        mock_launch.assert_not_called()
        assert 'Processed 3 of 3' in capsys.readouterr().out

    @patch('consultant_audit.cli.resume_run')
    def test_resume_nothing_to_resume(self, mock_resume, capsys):
        mock_resume.side_effect = ValueError("No incomplete run found to resume")
        assert cli.main(['run', '--resume', 'run-9']) == 1
        mock_resume.assert_called_once_with('run-9', enqueue=False)
        assert 'No incomplete run' in capsys.readouterr().err

    def test_status(self, capsys):
        create_run('run-1', ['john-smith'])
        assert cli.main(['status', 'run-1']) == 0
        out = capsys.readouterr().out
        assert '"status": "queued"' in out
        assert 'john-smith' not in out

    def test_status_unknown(self):
        assert cli.main(['status', 'nope']) == 1

    def test_cancel(self, capsys):
        create_run('run-1', ['john-smith'])
        assert cli.main(['cancel', 'run-1']) == 0
        assert 'Cancellation requested' in capsys.readouterr().out

    def test_review_mark_and_reset(self, capsys):
        create_run('run-1', ['john-smith'])
        upsert_consultant_record('run-1', 'john-smith', {'tier': 'Gold'})
        assert cli.main(['review', 'mark', '--run-id', 'run-1', '--slug', 'john-smith', '--by', 'alice']) == 0
        assert '1 record(s) updated.' in capsys.readouterr().out
        assert cli.main(['review', 'reset-run', '--run-id', 'run-1']) == 0

    def test_review_mark_without_slug(self, capsys):
        assert cli.main(['review', 'mark', '--run-id', 'run-1']) == 2
        assert 'slug is required' in capsys.readouterr().err

    def test_config_show_and_reset(self, tmp_path, capsys):
        from consultant_audit.pipeline.scoring_config import ScoringConfigStore
        path = str(tmp_path / 'scoring_config.yaml')
        with patch('consultant_audit.cli.ScoringConfigStore', lambda: ScoringConfigStore(path)):
            assert cli.main(['config', 'show']) == 0
            assert 'weights:' in capsys.readouterr().out
            assert cli.main(['config', 'reset', '--by', 'ops']) == 0
            assert 'version 2' in capsys.readouterr().out
