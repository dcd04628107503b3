"""Classification oracle client: asks Claude whether a URL fits the current task.

Builds the context prompt, retries transient failures with exponential backoff
and jitter, and parses the model's JSON answer into a Decision. Every failure
path fails open: an unreachable oracle never blocks a navigation.
"""

import asyncio
import json
import logging
import random
from pathlib import Path
from typing import Awaitable, Callable, Optional

import anthropic
import httpx
from pydantic import ValidationError

from taskguard.config import AnthropicConfig
from taskguard.models import ApiKeyValidation, Decision, OracleVerdict, TaskValidationResult

logger = logging.getLogger(__name__)

PROMPT_DIR = Path(__file__).parent / "prompts"

# Auth, permission and rate-limit failures will not improve on retry
NON_RETRYABLE_ERRORS = (
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
    anthropic.RateLimitError,
)

NO_TASK_DECISION = Decision(
    should_block=False,
    reason="No current task selected",
    activity_understanding="No active task",
    confidence=0.5,
)

NO_API_KEY_DECISION = Decision(
    should_block=False,
    reason="API key not configured",
    activity_understanding="Gatekeeper is not configured",
    confidence=0.0,
    cacheable=False,
)


def fail_open(error: object) -> Decision:
    return Decision(
        should_block=False,
        reason=f"Error: {error}",
        activity_understanding="Error occurred during analysis",
        confidence=0.0,
        cacheable=False,
    )


def _load_prompt(name: str, fallback: str) -> str:
    path = PROMPT_DIR / name
    if path.exists():
        return path.read_text().strip()
    logger.error("Prompt not found at %s, using fallback", path)
    return fallback


def extract_json_text(raw_text: str) -> str:
    """Strip markdown fences and any prose around the outermost JSON object."""
    text = raw_text.strip()
    if text.startswith("```"):
        lines = [l for l in text.split("\n") if not l.strip().startswith("```")]
        text = "\n".join(lines).strip()
    if not text.startswith("{"):
        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            text = text[start:end + 1]
    return text


class ClassificationOracle:
    def __init__(
        self,
        config: Optional[AnthropicConfig] = None,
        client_factory: Optional[Callable[[str], anthropic.AsyncAnthropic]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or AnthropicConfig()
        self._client_factory = client_factory or self._default_client
        self._clients: dict[str, anthropic.AsyncAnthropic] = {}
        self._sleep = sleep

        self.analysis_prompt = _load_prompt(
            "analysis.txt",
            "You are a productivity assistant. Current task: \"{task}\".\n"
            "Recent URLs:\n{recent_urls}\n"
            "Respond in JSON: {{\"shouldBlock\": bool, \"reason\": str, "
            "\"activityUnderstanding\": str, \"confidence\": number}}",
        )
        self.task_validation_prompt = _load_prompt(
            "task_validation.txt",
            "Grade this task description for a website blocker. Respond in JSON: "
            "{\"isValid\": bool, \"reason\": str, \"suggestions\": [str], \"confidence\": number}",
        )

    def _default_client(self, api_key: str) -> anthropic.AsyncAnthropic:
        # Retries are handled here, not by the SDK, so 401/403/429 are never retried
        return anthropic.AsyncAnthropic(
            api_key=api_key,
            max_retries=0,
            timeout=httpx.Timeout(self.config.request_timeout_seconds, connect=5.0),
        )

    def _client(self, api_key: str) -> anthropic.AsyncAnthropic:
        if api_key not in self._clients:
            self._clients[api_key] = self._client_factory(api_key)
        return self._clients[api_key]

    def build_system_prompt(self, task_text: str, recent_urls: list[str]) -> str:
        if recent_urls:
            recent = "\n".join(f"{i}. {u}" for i, u in enumerate(recent_urls, start=1))
        else:
            recent = "No recent URLs available"
        return self.analysis_prompt.format(task=task_text, recent_urls=recent)

    # ── Transport ────────────────────────────────────────────────────────────

    async def _with_retry(self, call: Callable[[], Awaitable], max_attempts: Optional[int] = None):
        max_attempts = max_attempts or self.config.max_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            try:
                result = await call()
                if attempt > 1:
                    logger.info("Oracle request succeeded on attempt %d", attempt)
                return result
            except NON_RETRYABLE_ERRORS as e:
                logger.warning("Not retrying oracle request (%s): %s", type(e).__name__, e)
                raise
            except anthropic.APIError as e:
                last_error = e
                logger.warning("Oracle attempt %d/%d failed: %s", attempt, max_attempts, e)
                if attempt == max_attempts:
                    break
                delay = (
                    self.config.base_delay_seconds * 2 ** (attempt - 1)
                    + random.uniform(0, self.config.jitter_seconds)
                )
                logger.debug("Waiting %.2fs before retry", delay)
                await self._sleep(delay)

        logger.error("All %d oracle attempts failed", max_attempts)
        raise last_error

    async def _complete(self, api_key: str, system: str, user_message: str, max_tokens: Optional[int] = None) -> str:
        response = await self._client(api_key).messages.create(
            model=self.config.model,
            max_tokens=max_tokens or self.config.max_tokens,
            temperature=self.config.temperature,
            system=system,
            messages=[{"role": "user", "content": user_message}],
        )
        raw_text = ""
        for block in response.content:
            if block.type == "text":
                raw_text += block.text
        return raw_text

    # ── Classification ───────────────────────────────────────────────────────

    async def classify(self, url: str, task_text: Optional[str], recent_urls: list[str], api_key: str) -> Decision:
        """Return the oracle's Decision for ``url``. Never raises."""
        if not api_key:
            logger.warning("No API key configured, allowing %s", url)
            return NO_API_KEY_DECISION
        if not task_text or not task_text.strip():
            return NO_TASK_DECISION

        system = self.build_system_prompt(task_text, recent_urls)
        try:
            raw_text = await asyncio.wait_for(
                self._with_retry(
                    lambda: self._complete(api_key, system, f"Analyze this URL: {url}")
                ),
                timeout=self.config.total_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("Oracle classification of %s exceeded %ss", url, self.config.total_timeout_seconds)
            return fail_open(f"classification timed out after {self.config.total_timeout_seconds}s")
        except anthropic.APIError as e:
            logger.error("Claude API error classifying %s: %s", url, e)
            return fail_open(e)
        except Exception as e:
            logger.error("Unexpected error calling Claude API: %s", e)
            return fail_open(e)

        logger.debug("Oracle raw response for %s: %s", url, raw_text)
        return self.parse_verdict(raw_text)

    def parse_verdict(self, raw_text: str) -> Decision:
        """Parse the oracle's answer, degrading to a keyword scan when it is malformed."""
        try:
            data = json.loads(extract_json_text(raw_text))
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            return OracleVerdict.model_validate(data).to_decision()
        except (json.JSONDecodeError, ValueError, ValidationError) as e:
            logger.warning("Failed to parse oracle response, using fallback: %s\nRaw: %s", e, raw_text[:200])
            lower = raw_text.lower()
            return Decision(
                should_block="block" in lower and "true" in lower,
                reason="AI analysis completed (fallback)",
                activity_understanding="Unable to parse activity understanding",
                confidence=0.5,
            )

    # ── Task and credential validation ───────────────────────────────────────

    async def validate_task(self, task_text: str, api_key: str) -> TaskValidationResult:
        try:
            raw_text = await asyncio.wait_for(
                self._with_retry(
                    lambda: self._complete(
                        api_key,
                        self.task_validation_prompt,
                        f'Evaluate this task description: "{task_text}"',
                        max_tokens=300,
                    )
                ),
                timeout=self.config.total_timeout_seconds,
            )
        except (asyncio.TimeoutError, anthropic.APIError) as e:
            logger.error("Task validation API error: %s", e)
            # Never stop a user from setting a task because the oracle is down
            return TaskValidationResult(
                is_valid=True, reason=f"Validation error: {e}", suggestions=[], confidence=0.0
            )
        return self.parse_task_validation(raw_text)

    def parse_task_validation(self, raw_text: str) -> TaskValidationResult:
        try:
            data = json.loads(extract_json_text(raw_text))
            suggestions = data.get("suggestions")
            confidence = data.get("confidence")
            return TaskValidationResult(
                is_valid=data.get("isValid") is True,
                reason=str(data.get("reason") or "No reason provided"),
                suggestions=[str(s) for s in suggestions] if isinstance(suggestions, list) else [],
                confidence=confidence if isinstance(confidence, (int, float)) else 0.5,
            )
        except (json.JSONDecodeError, AttributeError, ValidationError) as e:
            logger.warning("Failed to parse task validation response: %s", e)
            lower = raw_text.lower()
            return TaskValidationResult(
                is_valid="invalid" not in lower and "too broad" not in lower,
                reason="AI analysis completed",
                suggestions=[],
                confidence=0.5,
            )

    async def validate_api_key(self, api_key: str) -> ApiKeyValidation:
        if not api_key or not api_key.startswith("sk-"):
            return ApiKeyValidation(valid=False, error='Invalid API key format. Must start with "sk-"')

        client = self._client_factory(api_key)
        try:
            page = await self._with_retry(lambda: client.models.list(), max_attempts=2)
        except anthropic.AuthenticationError:
            return ApiKeyValidation(valid=False, error="Invalid API key - authentication failed")
        except anthropic.RateLimitError:
            return ApiKeyValidation(
                valid=False, error="Rate limit exceeded - API key is valid but temporarily limited"
            )
        except anthropic.PermissionDeniedError:
            return ApiKeyValidation(valid=False, error="API key lacks required permissions")
        except anthropic.APIError as e:
            return ApiKeyValidation(valid=False, error=f"API error: {e}")

        count = len(getattr(page, "data", None) or [])
        logger.info("API key validation successful")
        return ApiKeyValidation(
            valid=True, models=count, message=f"API key is valid. Found {count} available models."
        )
