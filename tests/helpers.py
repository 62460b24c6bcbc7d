"""Shared helper functions and test doubles for diagnostic agent tests.

Import these in test files: from helpers import ScriptedReasoner, StubExecutor, ...
Fixtures are in conftest.py and are auto-injected by pytest.
"""

import json
from unittest.mock import MagicMock

from agent_models import Observation, RemediationOption, RiskTier
from diagnostic_agent import ConfirmationDecision
from reasoning_boundary import (
    ActionDecision,
    ClarificationDecision,
    ReasoningBoundary,
    SolutionDecision,
)


# ---------------------------------------------------------------------------
# Decision builders
# ---------------------------------------------------------------------------

def action(command, rationale="Test rationale", thought="Investigating"):
    return ActionDecision(command=command, rationale=rationale, thought=thought)


def solution(root_cause="Root cause found", options=(), confidence=90, thought="Evidence is sufficient"):
    return SolutionDecision(root_cause=root_cause, options=tuple(options),
                            confidence=confidence, thought=thought)


def clarification(question="Which host?", thought="Ambiguous problem"):
    return ClarificationDecision(question=question, thought=thought)


def option(description, command=None, tier=RiskTier.LOW):
    return RemediationOption(description=description, command=command, tier=tier)


# ---------------------------------------------------------------------------
# Reasoning doubles
# ---------------------------------------------------------------------------

class ScriptedReasoner(ReasoningBoundary):
    """Returns scripted decisions in order; the last one repeats forever.

    Entries that are exceptions are raised instead of returned.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.requests = []

    def decide(self, request):
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.script) - 1)
        item = self.script[index]
        if isinstance(item, BaseException):
            raise item
        return item


class NeverSolves(ReasoningBoundary):
    """Proposes the same read-only command forever."""

    def __init__(self, command="kubectl get pods"):
        self.command = command
        self.calls = 0

    def decide(self, request):
        self.calls += 1
        return action(self.command)


# ---------------------------------------------------------------------------
# Executor double
# ---------------------------------------------------------------------------

def observation(stdout="", stderr="", exit_code=0, duration=0.01, timed_out=False, cancelled=False):
    return Observation(stdout=stdout, stderr=stderr, exit_code=exit_code,
                       duration_seconds=duration, timed_out=timed_out, cancelled=cancelled)


class StubExecutor:
    """Records commands; returns queued observations (default: empty success)."""

    def __init__(self, *observations):
        self.observations = list(observations)
        self.commands = []
        self.terminate = MagicMock(return_value=False)

    def run(self, command_str, should_cancel=None):
        self.commands.append(command_str)
        if self.observations:
            return self.observations.pop(0)
        return observation(stdout="ok")


# ---------------------------------------------------------------------------
# Confirmation doubles
# ---------------------------------------------------------------------------

class ConfirmTracker:
    """Confirmation callback that records invocations and returns a fixed answer."""

    def __init__(self, action="approve", typed_phrase=None):
        self.calls = []
        self.action = action
        self.typed_phrase = typed_phrase

    def __call__(self, command, rationale, risk, expected_phrase):
        self.calls.append({
            "command": command,
            "rationale": rationale,
            "risk": risk,
            "expected_phrase": expected_phrase,
        })
        phrase = self.typed_phrase if self.typed_phrase is not None else expected_phrase
        return ConfirmationDecision(action=self.action, typed_phrase=phrase)


def confirm_error(command, rationale, risk, expected_phrase):
    raise EOFError("Terminal closed")


# ---------------------------------------------------------------------------
# Gemini response builders
# ---------------------------------------------------------------------------

def make_fc_response(name, args, text=None):
    """Mock generate_content response with one function_call part."""
    fc = MagicMock()
    fc.name = name
    fc.args = args
    parts = [MagicMock(function_call=fc, text=None)]
    if text:
        parts.insert(0, MagicMock(function_call=None, text=text))
    candidate = MagicMock()
    candidate.content.parts = parts
    response = MagicMock()
    response.candidates = [candidate]
    return response


def make_text_response(text):
    part = MagicMock(function_call=None, text=text)
    candidate = MagicMock()
    candidate.content.parts = [part]
    response = MagicMock()
    response.candidates = [candidate]
    return response


# ---------------------------------------------------------------------------
# litellm (Ollama) response builders
# ---------------------------------------------------------------------------

def make_completion_response(name, args, content=None):
    """Mock litellm completion with one tool call; arguments arrive as a JSON string."""
    call = MagicMock()
    call.function.name = name
    call.function.arguments = json.dumps(args)
    message = MagicMock(content=content, tool_calls=[call])
    response = MagicMock()
    response.choices = [MagicMock(message=message)]
    return response


def make_completion_text(text):
    message = MagicMock(content=text, tool_calls=None)
    response = MagicMock()
    response.choices = [MagicMock(message=message)]
    return response
