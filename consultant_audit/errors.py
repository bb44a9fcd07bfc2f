"""
Stage error taxonomy.

Stage clients raise these; the stage adapters in consultant_audit.pipeline catch
them and hand a StageFailure value to the rest of the pipeline, so none of them
ever escapes a consultant's chain.
"""

CRAWL = 'crawl'
PARSE = 'parse'
BOOKING_API = 'booking_api'
AI_ASSESSMENT = 'ai_assessment'


class PipelineError(Exception):
    """Base error carrying the stage, the consultant slug and an optional cause."""
    stage = None

    def __init__(self, message, slug, cause=None, code=None):
        self.message = message
        self.slug = slug
        self.cause = cause
        self.code = code
        super().__init__(message)

    def __repr__(self):
        return f"{self.__class__.__name__}(stage={self.stage!r}, slug={self.slug!r}, message={self.message!r})"


class CrawlError(PipelineError):
    stage = CRAWL


class ParseError(PipelineError):
    stage = PARSE


class BookingApiError(PipelineError):
    """
    Booking system failure.

    code='not_found' means the booking system has no such consultant — a
    reportable outcome that degrades the booking signal instead of dropping it.
    """
    stage = BOOKING_API

    @property
    def not_found(self):
        return self.code == 'not_found'


class AiAssessmentError(PipelineError):
    stage = AI_ASSESSMENT


class ConfigValidationError(ValueError):
    """Raised by scoring-config save when the merged config is invalid."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__('; '.join(self.errors))
