"""Checks that a task description is specific enough to judge sites against."""

import logging

from taskguard.models import TaskValidationResult
from taskguard.oracle import ClassificationOracle

logger = logging.getLogger(__name__)

BROAD_TERMS = [
    "work", "be productive", "do research", "learn something",
    "be creative", "get things done", "be efficient", "study",
    "improve", "develop", "create", "build", "make",
]

ACTIONABLE_VERBS = [
    "write", "create", "build", "develop", "design", "implement",
    "research", "analyze", "review", "prepare", "plan", "organize",
    "debug", "fix", "test", "deploy", "publish", "present",
    "learn", "study", "practice", "improve", "optimize",
]

GOOD_EXAMPLES = [
    "Research competitor pricing for SaaS tools",
    "Write blog post about React hooks",
    "Prepare presentation slides for Q4 sales meeting",
    "Debug authentication issues in the login module",
    "Create wireframes for the new user dashboard",
    "Analyze user feedback from the latest app release",
]

BAD_EXAMPLES = [
    "Work on project",
    "Be productive",
    "Do research",
    "Learn something new",
    "Get things done",
    "Study hard",
]


def basic_validation(task_text: str) -> TaskValidationResult:
    """Cheap local checks run before spending an oracle call."""
    text = (task_text or "").strip()
    lower = text.lower()

    if len(text) < 10:
        return TaskValidationResult(
            is_valid=False,
            reason="Task description is too short",
            suggestions=[
                "Provide more specific details about what you want to accomplish",
                "Include the subject matter or domain you'll be working on",
                'Example: "Research competitor pricing for SaaS tools" instead of "Work on project"',
            ],
            confidence=1.0,
        )

    if len(text) < 30 and any(term in lower for term in BROAD_TERMS):
        return TaskValidationResult(
            is_valid=False,
            reason="Task description is too vague",
            suggestions=[
                "Be more specific about what you want to accomplish",
                "Include the subject matter or specific goal",
                'Example: "Research competitor pricing for SaaS tools" instead of "Do research"',
            ],
            confidence=0.8,
        )

    if not any(verb in lower for verb in ACTIONABLE_VERBS):
        return TaskValidationResult(
            is_valid=False,
            reason="Task lacks clear action",
            suggestions=[
                "Start with an action verb to make the task more specific",
                'Examples: "Write...", "Research...", "Create...", "Debug..."',
            ],
            confidence=0.7,
        )

    return TaskValidationResult(is_valid=True, reason="Task passes basic validation", confidence=0.6)


def improvement_suggestions(task_text: str) -> list[str]:
    text = (task_text or "").strip().lower()
    suggestions = []
    if len(text) < 20:
        suggestions.append("Add more specific details about what you want to accomplish")
    if "work on" in text or "do work" in text:
        suggestions.append('Replace "work on" with a specific action like "write", "research", or "create"')
    if "project" in text and "specific" not in text:
        suggestions.append("Specify what type of project and what you'll be doing")
    if "learn" in text and "about" not in text:
        suggestions.append("Specify what you want to learn about")
    if "research" in text and " on " not in f" {text} " and "about" not in text:
        suggestions.append("Specify what you want to research")
    return suggestions


class TaskValidator:
    def __init__(self, oracle: ClassificationOracle):
        self.oracle = oracle

    async def validate(self, task_text: str, api_key: str, enabled: bool = True) -> TaskValidationResult:
        if not enabled:
            return TaskValidationResult(is_valid=True, reason="Validation disabled", confidence=1.0)
        if not api_key:
            logger.info("Task validation skipped: API key missing")
            return TaskValidationResult(is_valid=False, reason="API key not configured", confidence=1.0)
        if not task_text or not task_text.strip():
            return TaskValidationResult(
                is_valid=False,
                reason="Task description is empty",
                suggestions=["Please provide a specific task description"],
                confidence=1.0,
            )

        basic = basic_validation(task_text)
        if not basic.is_valid:
            return basic

        result = await self.oracle.validate_task(task_text, api_key)
        logger.info("Task validation for %r: valid=%s", task_text, result.is_valid)
        return result

    @staticmethod
    def examples() -> dict[str, list[str]]:
        return {"good": list(GOOD_EXAMPLES), "bad": list(BAD_EXAMPLES)}
