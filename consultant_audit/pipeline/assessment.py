"""
Pipeline Stage 3b: AI ASSESSMENT — ParsedProfile → AiAssessment.

Runs concurrently with the booking cross-check.
"""
from consultant_audit.errors import AiAssessmentError, AI_ASSESSMENT
from consultant_audit.pipeline.base import StageAdapter
from consultant_audit.services.openai_client import AiAssessor


class AssessmentStage(StageAdapter):
    """value: ParsedProfile → AiAssessment"""
    stage = AI_ASSESSMENT
    error_cls = AiAssessmentError

    def __init__(self, assessor=None):
        self.assessor = assessor or AiAssessor()

    def execute(self, slug, value, progress=None):
        return self.assessor.assess(value.assessment_text(), slug, progress)
