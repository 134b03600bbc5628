"""Known stuck patterns: a cheap first pass before asking a model.

Agent-specific patterns are checked before the shared set, so an agent's own
authentication or model errors win over generic network-error wording.
"""

import re
from dataclasses import dataclass

ACTIONS = ("kill", "retry", "escalate")

# Output shorter than this after a long run counts as "no meaningful output".
MIN_MEANINGFUL_OUTPUT = 50
LONG_RUN_SECONDS = 300.0


@dataclass(frozen=True)
class StuckPattern:
    regex: re.Pattern
    diagnosis: str
    action: str


@dataclass(frozen=True)
class PatternMatch:
    matched: bool
    diagnosis: str | None = None
    action: str | None = None


NO_MATCH = PatternMatch(matched=False)


def _p(pattern: str, diagnosis: str, action: str) -> StuckPattern:
    return StuckPattern(re.compile(pattern, re.IGNORECASE), diagnosis, action)


SHARED_PATTERNS: list[StuckPattern] = [
    _p(
        r"rate.?limit|\b429\b|too many requests",
        "Rate limited by the API provider. Wait and retry.",
        "retry",
    ),
    _p(
        r"connection refused|ECONNREFUSED",
        "Connection refused. The API endpoint may be down.",
        "retry",
    ),
    _p(
        r"network error|ETIMEDOUT|ENOTFOUND|EAI_AGAIN|fetch failed|name resolution|getaddrinfo",
        "Network error. Check your internet connection.",
        "escalate",
    ),
    _p(
        r"out of memory|heap out of memory|ENOMEM|MemoryError",
        "Process ran out of memory.",
        "kill",
    ),
    _p(
        r"permission denied|EACCES",
        "Permission denied. Check file/directory permissions.",
        "escalate",
    ),
    _p(
        r"quota exceeded|insufficient.?quota|billing|payment required|\b402\b",
        "API quota or billing issue with the provider.",
        "kill",
    ),
    _p(
        r"press enter|\(y/n\)|\[y/n\]|waiting for (user )?input|enter your|type 'yes'",
        "Agent is waiting for interactive input it cannot receive.",
        "kill",
    ),
    _p(
        r"\b50[0234]\b|internal server error|bad gateway|service unavailable|overloaded",
        "The API provider returned a server error.",
        "retry",
    ),
    _p(
        r"timed out|\btimeout\b",
        "A request timed out.",
        "retry",
    ),
    _p(
        r"invalid api key|invalid x-api-key|unauthorized|authentication failed|\b401\b",
        "Authentication failed. Check the agent's API key.",
        "kill",
    ),
]

AGENT_PATTERNS: dict[str, list[StuckPattern]] = {
    "cursor-cli": [
        _p(
            r"not logged in|sign in|authenticate",
            "Cursor CLI is not authenticated. Open Cursor IDE to sign in first.",
            "kill",
        ),
        _p(
            r"invalid model|unknown model|model .{0,40}not (found|available)",
            "Cursor CLI rejected the configured model. Pick another with 'dorch agent model'.",
            "kill",
        ),
    ],
    "claude-code": [
        _p(
            r"please run /login|invalid api key|not logged in",
            "Claude Code is not authenticated. Run 'claude' once to log in.",
            "kill",
        ),
    ],
}


def match_stuck_pattern(
    agent_slug: str,
    output: str,
    elapsed: float | None = None,
) -> PatternMatch:
    """Scan recent agent output for known stuck patterns.

    ``elapsed`` is the task's total run time in seconds; when given, a long run
    with almost no output is itself reported for escalation.
    """
    for pattern in AGENT_PATTERNS.get(agent_slug, []) + SHARED_PATTERNS:
        if pattern.regex.search(output):
            return PatternMatch(True, pattern.diagnosis, pattern.action)

    if (
        elapsed is not None
        and elapsed >= LONG_RUN_SECONDS
        and len(output.strip()) < MIN_MEANINGFUL_OUTPUT
    ):
        return PatternMatch(
            True,
            f"No meaningful output after {int(elapsed)}s. The agent may not have started.",
            "escalate",
        )

    return NO_MATCH
