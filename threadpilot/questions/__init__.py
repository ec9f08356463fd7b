"""Interactive question protocol (AskUserQuestion -> buttons -> tool result)."""

from threadpilot.questions.models import (
    ControlValue,
    Question,
    QuestionOption,
    QuestionSet,
    QuestionState,
)
from threadpilot.questions.protocol import QuestionProtocol

__all__ = [
    "ControlValue",
    "Question",
    "QuestionOption",
    "QuestionProtocol",
    "QuestionSet",
    "QuestionState",
]
