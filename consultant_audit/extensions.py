"""
Shared client instances — Redis (job queue) and OpenAI.

Lazily initialized on first access so importing this module is always safe
(even when env vars are missing during tests).
"""
import logging

from consultant_audit.config import REDIS_URL, OPENAI_API_KEY, AI_TIMEOUT

logger = logging.getLogger('consultant_audit.extensions')

_redis_client = None
_openai_client = None


def get_redis():
    """Redis connection used by the RQ run queue."""
    global _redis_client
    if _redis_client is None:
        import redis
        _redis_client = redis.from_url(REDIS_URL)
    return _redis_client


def get_openai_client():
    """OpenAI client, or None when OPENAI_API_KEY is unset."""
    global _openai_client
    if _openai_client is None:
        if not OPENAI_API_KEY:
            logger.warning("OPENAI_API_KEY not set — AI assessment will fail")
            return None
        from openai import OpenAI
        # Retries are handled by our own policy so they show up in stage logs
        _openai_client = OpenAI(api_key=OPENAI_API_KEY, timeout=AI_TIMEOUT, max_retries=0)
        logger.info("OpenAI client initialized")
    return _openai_client
