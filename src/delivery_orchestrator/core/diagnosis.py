"""AI diagnosis fallback for silent agents.

Only consulted after pattern matching found nothing. Any malformed answer is
coerced to ``escalate``; a missing model or failed call raises
:class:`DiagnosisUnavailable` so the caller can fall back to a time heuristic.
"""

import json
import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

VERDICTS = ("continue", "kill", "retry", "escalate")
MAX_OUTPUT_CHARS = 4000

SYSTEM_PROMPT = """You are a process monitor for AI coding agents.
You are given the recent terminal output of an agent process, along with timing information.
Your job is to determine if the agent is stuck and what action to take.

Respond with ONLY a JSON object (no markdown, no code fences) matching this schema:
{
  "verdict": "continue" | "kill" | "retry" | "escalate",
  "diagnosis": "Brief explanation of what's happening",
  "confidence": 0.0-1.0
}

Verdicts:
- "continue": The agent appears to be working normally. Long pauses can be normal during complex tasks (reading files, thinking, generating code).
- "kill": The agent is definitively stuck and cannot recover. Examples: authentication failure, missing API key, fatal error, infinite loop with repeated identical output.
- "retry": The agent hit a transient error that might resolve on retry. Examples: rate limiting, temporary network issues, API timeout.
- "escalate": The situation is ambiguous and needs human judgment.

Guidelines:
- Agents often pause for 10-30 seconds between actions. This is NORMAL.
- If the agent has produced substantial output and then paused, lean toward "continue".
- If the output contains error messages or authentication prompts, lean toward "kill".
- If there is zero output after a long time, lean toward "escalate".
- Be conservative: killing a working agent is worse than waiting a bit longer."""

_FENCE_RE = re.compile(r"```(?:json)?\s*")


class DiagnosisUnavailable(Exception):
    """Raised when no model is configured or the inference call fails."""


@dataclass
class DiagnosisResult:
    verdict: str
    diagnosis: str
    confidence: float


class AnthropicModel:
    """Text completion through the Anthropic Messages API."""

    def __init__(self, model: str, api_key: str | None = None, timeout: float = 30.0):
        if not api_key:
            raise DiagnosisUnavailable(
                "No diagnosis model configured: ANTHROPIC_API_KEY not set"
            )
        import anthropic

        self._anthropic = anthropic
        self._client = anthropic.Anthropic(api_key=api_key, max_retries=1, timeout=timeout)
        self.model = model

    def complete(self, system: str, prompt: str, max_tokens: int = 200) -> str:
        try:
            message = self._client.messages.create(
                model=self.model,
                system=system,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=0.1,
            )
        except self._anthropic.APIError as e:
            raise DiagnosisUnavailable(f"Diagnosis call failed: {e}") from e
        return "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )


def build_diagnosis_prompt(
    agent_name: str,
    recent_output: str,
    elapsed: float,
    silence: float,
) -> str:
    truncated = recent_output[-MAX_OUTPUT_CHARS:]
    return "\n".join([
        f"Agent: {agent_name}",
        f"Total elapsed: {round(elapsed)}s",
        f"Time since last output: {round(silence)}s",
        f"Output length: {len(recent_output)} chars",
        "",
        "--- Recent output ---",
        truncated or "(no output)",
        "--- End of output ---",
    ])


def parse_diagnosis(raw: str) -> DiagnosisResult:
    """Parse a model answer, coercing anything unusable to a low-confidence escalate."""
    cleaned = _FENCE_RE.sub("", raw).strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        return DiagnosisResult(
            verdict="escalate",
            diagnosis="AI diagnosis returned an unparseable response. Manual review needed.",
            confidence=0.1,
        )
    if not isinstance(parsed, dict):
        return DiagnosisResult("escalate", "AI diagnosis returned a non-object response.", 0.1)

    verdict = parsed.get("verdict")
    diagnosis = parsed.get("diagnosis")
    if not isinstance(diagnosis, str):
        diagnosis = "Unable to determine issue."
    confidence = parsed.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = 0.5
    confidence = max(0.0, min(1.0, float(confidence)))

    if verdict not in VERDICTS:
        return DiagnosisResult("escalate", diagnosis, min(confidence, 0.1))
    return DiagnosisResult(verdict, diagnosis, confidence)


class Diagnoser:
    """Callable used by the heartbeat monitor to ask a model about a silent agent."""

    def __init__(self, model=None, model_name: str = "claude-haiku-4-5", api_key: str | None = None):
        self._model = model
        self._model_name = model_name
        self._api_key = api_key

    def _get_model(self):
        if self._model is None:
            self._model = AnthropicModel(self._model_name, api_key=self._api_key)
        return self._model

    def __call__(
        self,
        agent_name: str,
        recent_output: str,
        elapsed: float,
        silence: float,
    ) -> DiagnosisResult:
        model = self._get_model()
        prompt = build_diagnosis_prompt(agent_name, recent_output, elapsed, silence)
        raw = model.complete(SYSTEM_PROMPT, prompt)
        result = parse_diagnosis(raw)
        logger.info(
            "AI diagnosis for %s: %s (%.2f) %s",
            agent_name, result.verdict, result.confidence, result.diagnosis,
        )
        return result
