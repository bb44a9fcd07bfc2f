"""Tests for the Run and ConsultantRecord models."""
import pytest
from sqlalchemy.exc import IntegrityError

from consultant_audit.models.consultant_record import COMPUTED_FIELDS, ConsultantRecord
from consultant_audit.models.run import Run


class TestRunModel:

    def test_defaults(self, db_session):
        db_session.add(Run(id='run-1'))
        db_session.commit()
        run = db_session.get(Run, 'run-1')
        data = run.to_dict()
        assert data['status'] == 'queued'
        assert data['processed'] == 0
        assert data['cancel_requested'] is False
        assert data['tier_distribution'] == {}
        assert data['created_at'] is not None
        assert data['finished_at'] is None

    def test_to_dict_omits_slugs(self, db_session):
        db_session.add(Run(id='run-1', slugs=['a', 'b'], total=2))
        db_session.commit()
        data = db_session.get(Run, 'run-1').to_dict()
        assert 'slugs' not in data
        assert data['total'] == 2


class TestConsultantRecordModel:

    def test_one_row_per_run_and_slug(self, db_session):
        db_session.add(Run(id='run-1'))
        db_session.add(ConsultantRecord(run_id='run-1', slug='john-smith'))
        db_session.commit()
        db_session.add(ConsultantRecord(run_id='run-1', slug='john-smith'))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_to_dict_has_every_computed_field(self, db_session):
        db_session.add(Run(id='run-1'))
        db_session.add(ConsultantRecord(run_id='run-1', slug='john-smith', tier='Gold'))
        db_session.commit()
        data = db_session.query(ConsultantRecord).one().to_dict()
        for key in COMPUTED_FIELDS:
            assert key in data
        assert data['tier'] == 'Gold'
        assert data['signals'] == {}
        assert data['flags'] == []
        assert data['manually_reviewed'] is False
