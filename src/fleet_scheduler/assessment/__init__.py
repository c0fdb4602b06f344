"""Task lifecycle assessment: fast-path heuristics and deep backend review."""

from .engine import AssessmentEngine, CallerResponse, PoolBackendCaller, summarize_decision
from .models import VALID_ACTIONS, Action, AssessmentDecision, TaskContext, Trigger
from .parsing import extract_decision_json
from .prompt import build_assessment_prompt
from .quick import quick_assess

__all__ = [
    "Action",
    "AssessmentDecision",
    "AssessmentEngine",
    "CallerResponse",
    "PoolBackendCaller",
    "TaskContext",
    "Trigger",
    "VALID_ACTIONS",
    "build_assessment_prompt",
    "extract_decision_json",
    "quick_assess",
    "summarize_decision",
]
