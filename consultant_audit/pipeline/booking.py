"""
Pipeline Stage 3a: BOOKING — ParsedProfile → BookingComparison.

Runs concurrently with the AI assessment. A not_found failure is still a
failure here; the scoring engine maps it to a booking signal of 0.
"""
from consultant_audit.errors import BookingApiError, BOOKING_API
from consultant_audit.pipeline.base import StageAdapter
from consultant_audit.services.booking_api import BookingApiClient


class BookingStage(StageAdapter):
    """value: ParsedProfile → BookingComparison"""
    stage = BOOKING_API
    error_cls = BookingApiError

    def __init__(self, client=None):
        self.client = client or BookingApiClient()

    def execute(self, slug, value, progress=None):
        return self.client.compare(value, slug, progress)
