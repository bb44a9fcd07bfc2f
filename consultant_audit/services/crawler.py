"""
Profile site client — sitemap discovery, profile page fetching, HTML snapshots.
"""
import logging
import os
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import requests

from consultant_audit.config import (
    PROFILE_BASE_URL, SITEMAP_URL, CRAWL_TIMEOUT, CRAWL_USER_AGENT, SNAPSHOT_PATH,
)
from consultant_audit.errors import CrawlError
from consultant_audit.logging_config import log_stage
from consultant_audit.services.retry import (
    RetryPolicy, TransientHTTPError, TRANSIENT_STATUS_CODES, call_with_retry,
    is_transient_request_error,
)

logger = logging.getLogger('consultant_audit.services.crawler')

SLUG_RE = re.compile(r'^[a-z0-9][a-z0-9-]*[a-z0-9]$|^[a-z0-9]$')
_LOC_RE = re.compile(r'<loc>\s*(https?://[^<]+?)\s*</loc>', re.IGNORECASE)


@dataclass
class CrawlResult:
    slug: str
    url: str
    html: str
    status_code: int
    fetched_at: str
    snapshot_path: Optional[str] = None


def profile_url(slug: str) -> str:
    return f"{PROFILE_BASE_URL.rstrip('/')}/{slug}"


class ProfileCrawler:
    """
    Fetches public consultant profile pages.

    One instance is shared by all pipeline workers; requests.Session is used
    for connection pooling only (no cookies are relied upon).
    """

    def __init__(self, session=None, timeout=CRAWL_TIMEOUT, retry_policy=None, sleep=None):
        self.session = session or requests.Session()
        self.session.headers.setdefault('User-Agent', CRAWL_USER_AGENT)
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep or time.sleep

    def fetch(self, slug: str, progress: Optional[Tuple[int, int]] = None) -> CrawlResult:
        """Fetch one profile page. Raises CrawlError on any terminal failure."""
        if not slug or not SLUG_RE.match(slug):
            raise CrawlError(f"Malformed consultant slug: {slug!r}", slug or '', code='invalid_slug')

        url = profile_url(slug)

        def _get():
            resp = self.session.get(url, timeout=self.timeout, allow_redirects=True)
            if resp.status_code in TRANSIENT_STATUS_CODES:
                raise TransientHTTPError(resp.status_code, url)
            return resp

        def _on_retry(attempt, max_attempts, exc, delay):
            log_stage(logger, logging.WARNING, 'crawl', slug, 'retry',
                      f"{exc}, attempt {attempt}/{max_attempts}, waiting {delay:.1f}s", progress)

        try:
            resp = call_with_retry(_get, self.retry_policy, is_transient_request_error,
                                   on_retry=_on_retry, sleep=self._sleep)
        except TransientHTTPError as e:
            raise CrawlError(f"HTTP {e.status_code} after {self.retry_policy.max_attempts} attempts",
                             slug, cause=e, code='http_error')
        except requests.exceptions.Timeout as e:
            raise CrawlError(f"Timed out fetching {url}", slug, cause=e, code='timeout')
        except requests.exceptions.RequestException as e:
            raise CrawlError(f"Failed to fetch profile: {e}", slug, cause=e, code='unreachable')

        if resp.status_code == 404:
            raise CrawlError("Profile not found (HTTP 404)", slug, code='not_found')
        if not 200 <= resp.status_code < 300:
            raise CrawlError(f"HTTP {resp.status_code} from {url}", slug, code='http_error')

        html = resp.text or ''
        if not html.strip():
            raise CrawlError("Empty response body", slug, code='empty')

        log_stage(logger, logging.INFO, 'crawl', slug, 'success', str(resp.status_code), progress)
        return CrawlResult(
            slug=slug,
            url=resp.url or url,
            html=html,
            status_code=resp.status_code,
            fetched_at=datetime.now(timezone.utc).isoformat(),
        )

    def fetch_sitemap_slugs(self, sitemap_url: str = SITEMAP_URL) -> List[str]:
        """Read the consultant sitemap and return de-duplicated slugs in sitemap order."""
        resp = self.session.get(sitemap_url, timeout=self.timeout)
        resp.raise_for_status()

        prefix = PROFILE_BASE_URL.rstrip('/') + '/'
        slugs = []
        seen = set()
        for match in _LOC_RE.finditer(resp.text):
            url = match.group(1).strip()
            if not url.startswith(prefix):
                continue
            slug = url[len(prefix):].strip('/')
            if slug and slug not in seen:
                seen.add(slug)
                slugs.append(slug)

        log_stage(logger, logging.INFO, 'crawl', 'sitemap', 'success', f"{len(slugs)} consultant URLs found")
        return slugs


class SnapshotStore:
    """Raw HTML kept on disk per run: {root}/{run_id}/{slug}.html"""

    def __init__(self, root=SNAPSHOT_PATH):
        self.root = root

    def save(self, run_id: str, result: CrawlResult) -> Optional[str]:
        """Write the snapshot and return its path, or None if the write failed."""
        directory = os.path.join(self.root, run_id)
        path = os.path.join(directory, f"{result.slug}.html")
        try:
            os.makedirs(directory, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                f.write(result.html)
            return path
        except OSError as e:
            logger.warning("Could not write snapshot for %s: %s", result.slug, e)
            return None
