"""Reasoning boundary: the interface the agent loop consults for its next move.

The loop sends a ReasoningRequest and expects exactly one decision back:
ActionDecision, SolutionDecision, or ClarificationDecision. How the decision
is produced (remote model, local model, scripted test double) is up to the
implementation. Every decision carries a `thought`; when the request purpose
is PURPOSE_REFLECT that thought is recorded as the step's reflection.
"""

import abc
import sys
from dataclasses import dataclass, field
from typing import Optional, Union

from agent_models import AgentError, Observation, RemediationOption, RiskTier, Step


PURPOSE_NEXT_STEP = "next_step"
PURPOSE_REFLECT = "reflect"


SYSTEM_PROMPT = """You are an infrastructure diagnostic agent. You investigate problems with
web servers, containers, Kubernetes workloads and databases by running one shell command
at a time and reasoning about its output.

RULES:
- One command per propose_action call. No && ; or | chaining, no sudo unless required.
- Prefer read-only commands (status, logs, get, describe, lsof, ss) before anything that changes state.
- Use only the tools listed under AVAILABLE TOOLS; other commands are rejected.
- A timed-out command is evidence too (a hung service, an unreachable host).
- When the evidence identifies the root cause, call declare_solution with concrete remediation
  options, each tagged with its risk tier (low, medium, high, critical).
- Ask the operator (request_clarification) only when the problem statement is ambiguous and no
  command can resolve it.
- Always explain your reasoning in the `thought` argument.
"""


class ReasoningUnavailable(AgentError):
    """The reasoning engine failed or answered nonsense after every retry."""

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class MalformedDecision(AgentError, ValueError):
    """A response that is not exactly one of the three decision kinds."""


@dataclass(frozen=True)
class ReasoningRequest:
    problem: str
    history: tuple[Step, ...]
    latest_observation: Optional[Observation] = None
    purpose: str = PURPOSE_NEXT_STEP
    omitted_steps: int = 0           # older steps left out of `history`
    hint: Optional[str] = None       # e.g. an inconclusive pattern match
    tools: str = ""                  # registry description
    production: bool = False


@dataclass(frozen=True)
class ActionDecision:
    command: str
    rationale: str = ""
    tool: str = ""
    thought: str = ""


@dataclass(frozen=True)
class SolutionDecision:
    root_cause: str
    options: tuple[RemediationOption, ...] = ()
    confidence: int = 50
    category: str = "unknown"
    evidence: tuple[str, ...] = field(default_factory=tuple)
    thought: str = ""


@dataclass(frozen=True)
class ClarificationDecision:
    question: str
    thought: str = ""


Decision = Union[ActionDecision, SolutionDecision, ClarificationDecision]
DECISION_TYPES = (ActionDecision, SolutionDecision, ClarificationDecision)


class ReasoningBoundary(abc.ABC):
    @abc.abstractmethod
    def decide(self, request: ReasoningRequest) -> Decision:
        """Return the next decision for `request`. May raise on transport errors."""


def validate_decision(decision) -> Decision:
    """Reject anything that is not a well-formed decision."""
    if not isinstance(decision, DECISION_TYPES):
        raise MalformedDecision(f"unexpected decision type: {type(decision).__name__}")
    if isinstance(decision, ActionDecision) and not decision.command.strip():
        raise MalformedDecision("action decision without a command")
    if isinstance(decision, SolutionDecision) and not decision.root_cause.strip():
        raise MalformedDecision("solution decision without a root cause")
    if isinstance(decision, ClarificationDecision) and not decision.question.strip():
        raise MalformedDecision("clarification decision without a question")
    return decision


def render_history(request: ReasoningRequest) -> str:
    """Plain-text rendering of the request, shared by text-prompted backends."""
    lines = [f"PROBLEM: {request.problem}"]
    if request.production:
        lines.append("ENVIRONMENT: production (destructive commands need typed confirmation)")
    if request.tools:
        lines += ["", "AVAILABLE TOOLS:", request.tools]
    if request.omitted_steps:
        lines += ["", f"({request.omitted_steps} earlier step(s) omitted)"]
    for step in request.history:
        lines += ["", f"STEP {step.index}"]
        if step.thought:
            lines.append(f"  thought: {step.thought}")
        if step.action:
            lines.append(f"  action [{step.action.tool}]: {step.action.command}")
        if step.rejected_command:
            lines.append(f"  rejected command: {step.rejected_command}")
        if step.risk:
            lines.append(f"  risk: {step.risk.tier.label} ({step.risk.rule})")
        if step.observation:
            lines += _render_observation(step.observation, indent="  ")
        if step.reflection:
            lines.append(f"  reflection: {step.reflection}")
    if request.latest_observation is not None and request.purpose == PURPOSE_REFLECT:
        lines += ["", "LATEST OBSERVATION:"]
        lines += _render_observation(request.latest_observation, indent="  ")
    if request.hint:
        lines += ["", f"HINT: {request.hint}"]
    lines += ["", _INSTRUCTIONS[request.purpose]]
    return "\n".join(lines)


_OUTPUT_LIMIT = 4000

_INSTRUCTIONS = {
    PURPOSE_NEXT_STEP: (
        "Decide the next step: propose one diagnostic command, declare the solution "
        "if the evidence is sufficient, or ask the operator a clarifying question."
    ),
    PURPOSE_REFLECT: (
        "Evaluate the latest observation against the problem. Put your evaluation in the "
        "thought. Declare the solution if the evidence is now sufficient; otherwise "
        "propose the next command."
    ),
}


def _render_observation(obs: Observation, indent: str) -> list[str]:
    lines = [f"{indent}outcome: {obs.outcome}  exit_code: {obs.exit_code}  duration: {obs.duration_seconds}s"]
    if obs.timed_out:
        lines.append(f"{indent}(command timed out and was killed)")
    for label, text in (("stdout", obs.stdout), ("stderr", obs.stderr)):
        if text:
            clipped = text if len(text) <= _OUTPUT_LIMIT else text[:_OUTPUT_LIMIT] + "\n[... truncated]"
            lines.append(f"{indent}{label}:\n{clipped}")
    return lines


# ---------------------------------------------------------------------------
# Function-call decoding (shared by the function-calling backends)
# ---------------------------------------------------------------------------

FN_PROPOSE_ACTION = "propose_action"
FN_DECLARE_SOLUTION = "declare_solution"
FN_REQUEST_CLARIFICATION = "request_clarification"


def decision_from_call(name: str, args: dict, text: str = "") -> Decision:
    """Map one function call (name + arguments) onto a decision.

    `text` is any free text the model produced alongside the call; it stands
    in for the thought when the call carries none.
    """
    args = dict(args or {})
    thought = str(args.get("thought") or text or "")

    if name == FN_PROPOSE_ACTION:
        return ActionDecision(
            command=str(args.get("command", "")),
            rationale=str(args.get("rationale", "")),
            tool=str(args.get("tool", "")),
            thought=thought,
        )
    if name == FN_DECLARE_SOLUTION:
        return SolutionDecision(
            root_cause=str(args.get("root_cause", "")),
            options=tuple(_parse_option(o) for o in args.get("options") or []),
            confidence=_parse_confidence(args.get("confidence")),
            category=str(args.get("category") or "unknown"),
            evidence=tuple(str(e) for e in args.get("evidence") or []),
            thought=thought,
        )
    if name == FN_REQUEST_CLARIFICATION:
        return ClarificationDecision(question=str(args.get("question", "")), thought=thought)
    raise MalformedDecision(f"unknown function call: {name}")


def _parse_option(raw) -> RemediationOption:
    if not isinstance(raw, dict) or not raw.get("description"):
        raise MalformedDecision(f"malformed remediation option: {raw!r}")
    tier = None
    if raw.get("risk"):
        try:
            tier = RiskTier.parse(raw["risk"])
        except ValueError as e:
            raise MalformedDecision(str(e)) from e
    return RemediationOption(
        description=str(raw["description"]),
        command=str(raw["command"]) if raw.get("command") else None,
        tier=tier,
    )


def _parse_confidence(raw) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return 50
    return max(0, min(100, value))


# ---------------------------------------------------------------------------
# Fallback chain
# ---------------------------------------------------------------------------

class FallbackReasoner(ReasoningBoundary):
    """Try the primary backend; on any failure ask the fallback instead.

    Raises RuntimeError naming both errors when neither backend answers, which
    the agent loop counts as one failed reasoning attempt.
    """

    def __init__(self, primary: ReasoningBoundary, fallback: ReasoningBoundary,
                 primary_name: str = "primary", fallback_name: str = "fallback"):
        self._primary = primary
        self._fallback = fallback
        self._primary_name = primary_name
        self._fallback_name = fallback_name

    def decide(self, request: ReasoningRequest) -> Decision:
        try:
            return validate_decision(self._primary.decide(request))
        except Exception as e:
            print(f"WARNING: {self._primary_name} failed ({e}), trying {self._fallback_name}",
                  file=sys.stderr)
            try:
                return self._fallback.decide(request)
            except Exception as e2:
                raise RuntimeError(
                    f"All reasoning backends failed: {self._primary_name}: {e}; "
                    f"{self._fallback_name}: {e2}"
                ) from e2
