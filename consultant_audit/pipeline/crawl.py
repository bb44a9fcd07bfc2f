"""
Pipeline Stage 1: CRAWL — slug → CrawlResult.

Fetches the public profile page and, when a snapshot store is configured,
keeps the raw HTML on disk. A failed snapshot write is logged and ignored.
"""
from consultant_audit.errors import CrawlError, CRAWL
from consultant_audit.pipeline.base import StageAdapter
from consultant_audit.services.crawler import ProfileCrawler


class CrawlStage(StageAdapter):
    """value: run_id → CrawlResult"""
    stage = CRAWL
    error_cls = CrawlError

    def __init__(self, crawler=None, snapshots=None):
        self.crawler = crawler or ProfileCrawler()
        self.snapshots = snapshots

    def execute(self, slug, value, progress=None):
        result = self.crawler.fetch(slug, progress)
        if self.snapshots is not None and value:
            result.snapshot_path = self.snapshots.save(value, result)
        return result
