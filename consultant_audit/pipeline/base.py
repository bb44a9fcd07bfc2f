"""
Pipeline stage contracts.

Every stage adapter implements StageAdapter.execute() and is invoked through
StageAdapter.run(), which always returns a StageOutcome: either a success
payload or a StageFailure value. Stage errors never propagate past run(), so
the orchestrator only ever joins values.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from consultant_audit.errors import PipelineError
from consultant_audit.logging_config import log_stage

logger = logging.getLogger('consultant_audit.pipeline')


@dataclass(frozen=True)
class StageFailure:
    """Typed failure of one stage for one consultant."""
    stage: str
    slug: str
    message: str
    cause: Optional[BaseException] = None
    code: Optional[str] = None

    @classmethod
    def from_error(cls, error: PipelineError) -> 'StageFailure':
        return cls(stage=error.stage, slug=error.slug, message=error.message,
                   cause=error.cause, code=error.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stage': self.stage,
            'slug': self.slug,
            'message': self.message,
            'code': self.code,
            'cause': repr(self.cause) if self.cause is not None else None,
        }


@dataclass(frozen=True)
class StageOutcome:
    """Exactly one per stage per consultant per run."""
    stage: str
    slug: str
    payload: Any = None
    failure: Optional[StageFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, stage: str, slug: str, payload: Any) -> 'StageOutcome':
        return cls(stage=stage, slug=slug, payload=payload)

    @classmethod
    def failed(cls, failure: StageFailure) -> 'StageOutcome':
        return cls(stage=failure.stage, slug=failure.slug, failure=failure)


class StageAdapter(ABC):
    """
    Base class for the per-consultant stages (crawl, parse, booking_api, ai_assessment).

    Subclasses set `stage` and `error_cls` and implement execute(). Anything
    execute() raises is turned into a StageFailure here; unexpected exceptions
    are wrapped in the stage's own error class first.
    """
    stage: str = ''
    error_cls = PipelineError

    @abstractmethod
    def execute(self, slug: str, value: Any, progress: Optional[Tuple[int, int]] = None) -> Any:
        """Do the stage's work and return its success payload, or raise a PipelineError."""
        ...

    def run(self, slug: str, value: Any, progress: Optional[Tuple[int, int]] = None) -> StageOutcome:
        try:
            payload = self.execute(slug, value, progress)
        except PipelineError as e:
            log_stage(logger, logging.ERROR, self.stage, slug, 'error', e.message, progress)
            return StageOutcome.failed(StageFailure.from_error(e))
        except Exception as e:
            logger.exception("Unexpected error in stage '%s' for %s", self.stage, slug)
            error = self.error_cls(f"Unexpected error: {e}", slug, cause=e, code='unexpected')
            return StageOutcome.failed(StageFailure.from_error(error))
        return StageOutcome.success(self.stage, slug, payload)


def skipped(stage: str, slug: str, reason: str) -> StageOutcome:
    """Failure outcome for a stage that was deliberately not run."""
    return StageOutcome.failed(StageFailure(stage=stage, slug=slug, message=reason, code='skipped'))
