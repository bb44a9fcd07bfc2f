"""Shared test fixtures."""
import pytest
from unittest.mock import patch, MagicMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from consultant_audit.database import Base


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with schema created.

    StaticPool keeps one connection, so every session sees the same database.
    """
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    import consultant_audit.models.run  # noqa: F401
    import consultant_audit.models.consultant_record  # noqa: F401
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Session for seeding and assertions. Commit seed data before calling code under test."""
    Session = sessionmaker(bind=db_engine)
    session = Session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(autouse=True)
def patch_get_session(db_engine):
    """Route all get_session() calls to sessions on the test engine.

    The service modules do `from consultant_audit.database import get_session`
    at import time, so their local bindings are patched as well. Each call gets
    a fresh session so close() in production code is harmless.
    """
    TestSession = sessionmaker(bind=db_engine)
    with patch('consultant_audit.database.get_session', side_effect=lambda: TestSession()), \
            patch('consultant_audit.services.db.get_session', side_effect=lambda: TestSession()), \
            patch('consultant_audit.services.review.get_session', side_effect=lambda: TestSession()):
        yield TestSession


@pytest.fixture
def mock_redis():
    """Mock Redis client handed out by get_redis()."""
    mock = MagicMock()
    with patch('consultant_audit.extensions._redis_client', mock):
        yield mock


@pytest.fixture
def profile_html():
    """Factory for consultant profile pages in the site's markup."""
    def _make(name='Mr John Smith', gmc='1234567', photo=True, about=True, extra='', booking=True):
        photo_html = (
            '<aside class="consultant__image"><img src="/media/consultants/john-smith.jpg" alt=""></aside>'
            if photo else ''
        )
        about_html = (
            '<h2>About</h2>'
            '<p>John is a consultant orthopaedic surgeon with over 20 years of experience.</p>'
            '<p>He specialises in hip and knee replacement surgery.</p>'
            if about else ''
        )
        booking_html = '<div class="consultant-booking-widget"></div>' if booking else ''
        return f"""
        <html>
          <head><title>{name} | Consultant</title></head>
          <body>
            <div id="ccc"><h1>Cookie preferences</h1></div>
            <main>
              <h1 itemprop="name">{name}</h1>
              {photo_html}
              <p>GMC number: {gmc}</p>
              {booking_html}
              {about_html}
              <h3>Specialties</h3>
              <ul><li>Orthopaedics</li><li>Sports medicine</li></ul>
              <h4>Treatments and tests offered</h4>
              <ul><li>Hip replacement</li><li>Knee replacement</li><li>Arthroscopy</li></ul>
              <h2>Qualifications</h2>
              <p>MBBS, FRCS (Tr &amp; Orth)</p>
              <h3>Memberships</h3>
              <ul><li>British Orthopaedic Association</li></ul>
              <h3>Insurers</h3>
              <ul><li>Bupa</li><li>AXA Health</li></ul>
              <h3>Consultation times</h3>
              <p>Monday 9am - 1pm</p>
              <h3>Practising since: 2001</h3>
              <h3>Languages spoken</h3>
              <p>English,
              French</p>
              <h3>Locations</h3>
              <ul><li>Nuffield Health Leeds Hospital</li></ul>
              <h3>Book online</h3>
              <p>Call us today</p>
              {extra}
            </main>
          </body>
        </html>
        """
    return _make
