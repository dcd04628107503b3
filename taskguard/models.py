"""Pydantic models for the Task Guard API."""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Literal, Optional


def _clamp_confidence(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class NavigationEvent(BaseModel):
    """Committed navigation forwarded by the browser extension."""
    url: str
    tab_id: int
    is_main_frame: bool = True


class CurrentTask(BaseModel):
    text: str
    source_index: Optional[int] = None  # Index into the saved task list, if picked from it
    set_at: float


class Decision(BaseModel):
    """Block/allow verdict for a single URL. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    should_block: bool
    reason: str
    activity_understanding: str = ""
    confidence: float = 0.5
    # Fail-open and misconfiguration verdicts must not outlive the problem
    cacheable: bool = Field(default=True, exclude=True)

    @field_validator("confidence")
    @classmethod
    def clamp(cls, value: float) -> float:
        return _clamp_confidence(value)


class OracleVerdict(BaseModel):
    """Schema the oracle's JSON answer must satisfy before it becomes a Decision."""
    should_block: bool = Field(alias="shouldBlock")
    reason: str = "No reason provided"
    activity_understanding: str = Field(
        default="No activity understanding provided", alias="activityUnderstanding"
    )
    confidence: float = 0.5

    @field_validator("should_block", mode="before")
    @classmethod
    def strict_bool(cls, value):
        if not isinstance(value, bool):
            raise ValueError("shouldBlock must be a boolean")
        return value

    @field_validator("reason", "activity_understanding", mode="before")
    @classmethod
    def coerce_text(cls, value):
        return "" if value is None else str(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def numeric_confidence(cls, value):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0.5
        return _clamp_confidence(value)

    def to_decision(self) -> Decision:
        return Decision(
            should_block=self.should_block,
            reason=self.reason or "No reason provided",
            activity_understanding=self.activity_understanding
            or "No activity understanding provided",
            confidence=self.confidence,
        )


class TemporaryBypass(BaseModel):
    url: str
    until: float


class OneTimeBypass(BaseModel):
    url: str


class BlockedSiteRecord(BaseModel):
    url: str
    timestamp: float
    reason: str


class FeedbackEntry(BaseModel):
    url: str
    reason: str = ""
    correct: bool
    timestamp: float


class Stats(BaseModel):
    analyzed_count: int = 0
    blocked_count: int = 0


class StatsSnapshot(Stats):
    focus_score: int = 0
    time_saved_minutes: int = 0


class Settings(BaseModel):
    """Durable user settings, re-read from the store for every navigation."""
    api_key: str = ""
    tasks: list[str] = Field(default_factory=list)
    current_task: Optional[CurrentTask] = None
    enabled: bool = True
    allowlist: list[str] = Field(default_factory=list)
    task_validation_enabled: bool = True

    @property
    def task_text(self) -> str:
        return self.current_task.text if self.current_task else ""


class BlockPrompt(BaseModel):
    """Message the presentation layer renders as a block modal."""
    url: str
    reason: str
    activity_understanding: str
    current_task_text: str


class BadgeState(BaseModel):
    text: str
    color: str


class TaskValidationResult(BaseModel):
    is_valid: bool
    reason: str
    suggestions: list[str] = Field(default_factory=list)
    confidence: float = 0.5


class ApiKeyValidation(BaseModel):
    valid: bool
    message: Optional[str] = None
    error: Optional[str] = None
    models: Optional[int] = None


Outcome = Literal[
    "disabled", "ignored", "system", "bypassed", "allowlisted",
    "cache_hit", "classified", "error",
]


class NavigationOutcome(BaseModel):
    """Response sent back to the extension for a navigation."""
    outcome: Outcome
    decision: Optional[Decision] = None
    notified: bool = False


# ── Request bodies ───────────────────────────────────────────────────────────

class AnalyzeRequest(BaseModel):
    url: str


class TemporaryBypassRequest(BaseModel):
    url: str
    duration_minutes: Optional[int] = None


class OneTimeBypassRequest(BaseModel):
    url: str


class AllowlistRequest(BaseModel):
    host: Optional[str] = None
    url: Optional[str] = None


class AddTaskRequest(BaseModel):
    text: str


class SetCurrentTaskRequest(BaseModel):
    index: Optional[int] = None
    text: Optional[str] = None


class ValidateTaskRequest(BaseModel):
    task_text: str


class ToggleRequest(BaseModel):
    enabled: bool


class ApiKeyRequest(BaseModel):
    api_key: str


class FeedbackRequest(BaseModel):
    url: str
    reason: str = ""
    correct: bool
