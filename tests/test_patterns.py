"""Tests for stuck pattern matching."""

from delivery_orchestrator.core.patterns import (
    LONG_RUN_SECONDS,
    match_stuck_pattern,
)


class TestSharedPatterns:
    def test_rate_limit_retries(self):
        match = match_stuck_pattern("some-agent", "Error: rate limit exceeded")
        assert match.matched
        assert match.action == "retry"

    def test_oom_kills(self):
        match = match_stuck_pattern("some-agent", "FATAL ERROR: JavaScript heap out of memory")
        assert match.action == "kill"

    def test_interactive_prompt_kills(self):
        match = match_stuck_pattern("some-agent", "Overwrite existing file? (y/n)")
        assert match.action == "kill"

    def test_network_error_escalates(self):
        match = match_stuck_pattern("some-agent", "getaddrinfo ENOTFOUND api.example.com")
        assert match.action == "escalate"

    def test_case_insensitive(self):
        assert match_stuck_pattern("some-agent", "TOO MANY REQUESTS").matched

    def test_no_match(self):
        match = match_stuck_pattern("some-agent", "Reading src/app.py\nWriting tests")
        assert not match.matched
        assert match.action is None


class TestAgentPatterns:
    def test_agent_specific_checked_first(self):
        match = match_stuck_pattern("claude-code", "Invalid API key · Please run /login")
        assert match.action == "kill"
        assert "Claude Code" in match.diagnosis

    def test_other_agent_gets_shared_diagnosis(self):
        match = match_stuck_pattern("some-agent", "invalid api key")
        assert match.action == "kill"
        assert "Claude Code" not in match.diagnosis

    def test_cursor_model_rejected(self):
        match = match_stuck_pattern("cursor-cli", "Error: unknown model gpt-99")
        assert match.action == "kill"
        assert "dorch agent model" in match.diagnosis


class TestLongRunWithoutOutput:
    def test_escalates_after_long_silence(self):
        match = match_stuck_pattern("some-agent", "", elapsed=LONG_RUN_SECONDS + 1)
        assert match.matched
        assert match.action == "escalate"

    def test_short_run_is_fine(self):
        assert not match_stuck_pattern("some-agent", "", elapsed=30).matched

    def test_meaningful_output_is_fine(self):
        output = "Implemented the parser and updated all call sites accordingly."
        assert not match_stuck_pattern("some-agent", output, elapsed=LONG_RUN_SECONDS * 2).matched


class TestRepeatability:
    def test_same_input_same_match(self):
        output = "Invalid API key · Please run /login\nrate limit exceeded"
        first = match_stuck_pattern("claude-code", output)
        second = match_stuck_pattern("claude-code", output)
        assert first.matched
        assert first == second

    def test_same_input_same_no_match(self):
        output = "Reading src/app.py\nWriting tests"
        first = match_stuck_pattern("some-agent", output, elapsed=10)
        second = match_stuck_pattern("some-agent", output, elapsed=10)
        assert not first.matched
        assert first == second

    def test_earlier_calls_do_not_leak(self):
        match_stuck_pattern("claude-code", "Invalid API key")
        match_stuck_pattern("some-agent", "", elapsed=LONG_RUN_SECONDS + 1)
        assert match_stuck_pattern("some-agent", "rate limit exceeded").action == "retry"
