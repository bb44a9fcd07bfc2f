"""
OpenAI helpers — profile content assessment with retry and output validation.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import openai

from consultant_audit.config import AI_MODEL
from consultant_audit.errors import AiAssessmentError, AI_ASSESSMENT
from consultant_audit.extensions import get_openai_client
from consultant_audit.logging_config import log_stage
from consultant_audit.services.retry import RetryPolicy, call_with_retry

logger = logging.getLogger('consultant_audit.services.openai')

AI_DIMENSIONS = (
    'bio_depth',
    'plain_english',
    'treatment_specificity',
    'qualifications_completeness',
    'professional_tone',
)

_TRANSIENT_OPENAI_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)

ASSESSMENT_PROMPT = """You are auditing the quality of a private hospital consultant's public profile page.
Judge only the text provided. Do not invent facts about the consultant.

Score each dimension from 0 to 100:
1. bio_depth: Does the biography explain the consultant's background, experience and approach in substance?
2. plain_english: Could a patient with no medical training understand it?
3. treatment_specificity: Are the treatments and conditions listed specifically rather than generically?
4. qualifications_completeness: Are qualifications, training and credentials stated clearly?
5. professional_tone: Is the writing professional, accurate and free of errors?

PROFILE:
{text}

Respond ONLY with JSON:
{{
  "bio_depth": {{"score": 0-100, "rationale": "one or two sentences"}},
  "plain_english": {{"score": 0-100, "rationale": "..."}},
  "treatment_specificity": {{"score": 0-100, "rationale": "..."}},
  "qualifications_completeness": {{"score": 0-100, "rationale": "..."}},
  "professional_tone": {{"score": 0-100, "rationale": "..."}}
}}"""

_REPAIR_NOTE = ("\n\nYour previous reply could not be used ({problem}). "
                "Reply with the JSON object only, with every dimension present and each score an integer 0-100.")


class MalformedAssessment(ValueError):
    """The model replied, but not with the expected JSON shape."""


@dataclass
class AiAssessment:
    scores: Dict[str, int]
    rationales: Dict[str, str] = field(default_factory=dict)
    model: str = AI_MODEL

    def to_dict(self) -> Dict[str, Any]:
        return {
            dim: {'score': self.scores[dim], 'rationale': self.rationales.get(dim, '')}
            for dim in AI_DIMENSIONS
        }


def is_transient_openai_error(exc: BaseException) -> bool:
    return isinstance(exc, _TRANSIENT_OPENAI_ERRORS)


def parse_assessment(content: Optional[str], model: str = AI_MODEL) -> AiAssessment:
    """Validate a raw model reply. Raises MalformedAssessment."""
    if not content:
        raise MalformedAssessment("empty response")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise MalformedAssessment(f"invalid JSON: {e}")
    if not isinstance(data, dict):
        raise MalformedAssessment("top-level JSON is not an object")

    scores = {}
    rationales = {}
    for dim in AI_DIMENSIONS:
        entry = data.get(dim)
        if not isinstance(entry, dict):
            raise MalformedAssessment(f"missing dimension '{dim}'")
        score = entry.get('score')
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise MalformedAssessment(f"non-numeric score for '{dim}'")
        if not 0 <= score <= 100:
            raise MalformedAssessment(f"score for '{dim}' out of range: {score}")
        scores[dim] = int(round(score))
        rationales[dim] = str(entry.get('rationale') or '').strip()
    return AiAssessment(scores=scores, rationales=rationales, model=model)


class AiAssessor:
    """Scores a profile's qualitative content with an AI judge."""

    def __init__(self, client=None, model=AI_MODEL, retry_policy=None, sleep=None):
        self._client = client
        self.model = model
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep or time.sleep

    @property
    def client(self):
        return self._client if self._client is not None else get_openai_client()

    def assess(self, text: str, slug: str, progress: Optional[Tuple[int, int]] = None) -> AiAssessment:
        """
        Assess one profile. A malformed reply is re-requested once; anything
        still wrong after that raises AiAssessmentError.
        """
        if self.client is None:
            raise AiAssessmentError("OpenAI client not configured (OPENAI_API_KEY unset)", slug, code='not_configured')
        if not text or not text.strip():
            raise AiAssessmentError("No profile text to assess", slug, code='no_text')

        prompt = ASSESSMENT_PROMPT.format(text=text[:12000])
        try:
            assessment = parse_assessment(self._complete(prompt, slug, progress), self.model)
        except MalformedAssessment as first:
            log_stage(logger, logging.WARNING, AI_ASSESSMENT, slug, 'retry',
                      f"malformed output ({first}), re-requesting", progress)
            try:
                content = self._complete(prompt + _REPAIR_NOTE.format(problem=first), slug, progress)
                assessment = parse_assessment(content, self.model)
            except MalformedAssessment as second:
                raise AiAssessmentError(f"Malformed AI output after re-request: {second}",
                                        slug, cause=second, code='malformed')

        log_stage(logger, logging.INFO, AI_ASSESSMENT, slug, 'success',
                  ', '.join(f"{d}={assessment.scores[d]}" for d in AI_DIMENSIONS), progress)
        return assessment

    def _complete(self, prompt: str, slug: str, progress) -> Optional[str]:
        def _call():
            return self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                response_format={"type": "json_object"},
                temperature=0,
            )

        def _on_retry(attempt, max_attempts, exc, delay):
            log_stage(logger, logging.WARNING, AI_ASSESSMENT, slug, 'retry',
                      f"{type(exc).__name__}, attempt {attempt}/{max_attempts}, waiting {delay:.1f}s", progress)

        try:
            response = call_with_retry(_call, self.retry_policy, is_transient_openai_error,
                                       on_retry=_on_retry, sleep=self._sleep)
        except openai.APITimeoutError as e:
            raise AiAssessmentError("AI assessment timed out", slug, cause=e, code='timeout')
        except openai.OpenAIError as e:
            raise AiAssessmentError(f"AI assessment call failed: {e}", slug, cause=e, code='api_error')

        if not response.choices:
            return None
        return response.choices[0].message.content
