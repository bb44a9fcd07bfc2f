"""
Centralized configuration — all env vars and pipeline constants.
"""
import os


def _float_env(name, default):
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return float(default)


def _int_env(name, default):
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return int(default)


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis (job queue) ─────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')
RUN_JOB_TIMEOUT = _int_env('RUN_JOB_TIMEOUT', 14400)

# ── Database ──────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///consultant_audit.db')

# ── Profile site ──────────────────────────────────────────────────────────────
PROFILE_BASE_URL = os.getenv('PROFILE_BASE_URL', 'https://www.nuffieldhealth.com/consultants/')
SITEMAP_URL = os.getenv('SITEMAP_URL', 'https://www.nuffieldhealth.com/sitemap_consultants.xml')
CRAWL_USER_AGENT = os.getenv('CRAWL_USER_AGENT', 'consultant-audit/1.0 (+profile quality review)')
SNAPSHOT_PATH = os.getenv('SNAPSHOT_PATH', 'data/html-cache')

# ── Booking API ───────────────────────────────────────────────────────────────
BOOKING_API_URL = os.getenv('BOOKING_API_URL', 'https://api.nuffieldhealth.com/booking/consultant/1.0')
BOOKING_OPEN_API_URL = os.getenv('BOOKING_OPEN_API_URL', 'https://api.nuffieldhealth.com/booking/open/1.0')
BOOKING_API_KEY = os.getenv('BOOKING_API_KEY', '')
BOOKING_WINDOW_DAYS = 28
BOOKING_LOOKAHEAD_DAYS = 90

# ── OpenAI ────────────────────────────────────────────────────────────────────
OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
AI_MODEL = os.getenv('AI_MODEL', 'gpt-4o-mini')

# ── Timeouts (seconds, per external call) ────────────────────────────────────
CRAWL_TIMEOUT = _float_env('CRAWL_TIMEOUT', 30)
BOOKING_TIMEOUT = _float_env('BOOKING_TIMEOUT', 15)
AI_TIMEOUT = _float_env('AI_TIMEOUT', 60)

# ── Retry policy for transient failures ──────────────────────────────────────
RETRY_MAX_ATTEMPTS = _int_env('RETRY_MAX_ATTEMPTS', 3)
RETRY_BASE_DELAY = _float_env('RETRY_BASE_DELAY', 2.0)
RETRY_MAX_DELAY = _float_env('RETRY_MAX_DELAY', 30.0)

# ── Worker pool ───────────────────────────────────────────────────────────────
PIPELINE_CONCURRENCY = _int_env('PIPELINE_CONCURRENCY', 4)

# ── Scoring configuration store ──────────────────────────────────────────────
SCORING_CONFIG_PATH = os.getenv('SCORING_CONFIG_PATH', 'data/scoring_config.yaml')

# ── Stage log tags ───────────────────────────────────────────────────────────
STAGE_LOG_TAGS = {
    'crawl': 'CRAWL',
    'parse': 'PARSE',
    'booking_api': 'BOOKING',
    'ai_assessment': 'AI',
    'score': 'SCORE',
    'pipeline': 'PIPELINE',
}

# ── Run status values ─────────────────────────────────────────────────────────
RUN_STATUSES = [
    'queued',
    'running',
    'completed',
    'cancelled',
    'failed',
]

# Runs in these states can be resumed
RESUMABLE_RUN_STATUSES = ['running', 'cancelled', 'failed']
