"""Data model for the diagnostic agent.

A Session is one diagnostic run. It owns an ordered list of Steps, each one
iteration of the Thought -> Action -> Observation -> Reflection cycle. Once a
Session leaves ACTIVE it is sealed and handed to the audit logger as-is.
"""

import enum
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Session states
# ---------------------------------------------------------------------------

STATUS_ACTIVE = "active"
STATUS_SOLVED = "solved"
STATUS_EXHAUSTED = "exhausted"
STATUS_CANCELLED = "cancelled"
STATUS_FAILED = "failed"

TERMINAL_STATUSES = frozenset({
    STATUS_SOLVED, STATUS_EXHAUSTED, STATUS_CANCELLED, STATUS_FAILED,
})

# Observation outcomes
OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"        # non-zero exit, a normal result
OUTCOME_TIMEOUT = "timeout"
OUTCOME_CANCELLED = "cancelled"

# Root-cause categories
CATEGORY_PORT_CONFLICT = "port_conflict"
CATEGORY_CONFIGURATION = "configuration_error"
CATEGORY_PERMISSION = "permission_error"
CATEGORY_SERVICE_DOWN = "service_down"
CATEGORY_NETWORK = "network_issue"
CATEGORY_RESOURCE_EXHAUSTION = "resource_exhaustion"
CATEGORY_DEPENDENCY = "dependency_failure"
CATEGORY_AUTHENTICATION = "authentication_failure"
CATEGORY_UNKNOWN = "unknown"

ROOT_CAUSE_CATEGORIES = (
    CATEGORY_PORT_CONFLICT,
    CATEGORY_CONFIGURATION,
    CATEGORY_PERMISSION,
    CATEGORY_SERVICE_DOWN,
    CATEGORY_NETWORK,
    CATEGORY_RESOURCE_EXHAUSTION,
    CATEGORY_DEPENDENCY,
    CATEGORY_AUTHENTICATION,
    CATEGORY_UNKNOWN,
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class AgentError(Exception):
    """Base class for diagnostic agent errors."""


class ConfirmationRefused(AgentError):
    """The operator declined (or could not give) a required confirmation."""


class ExecutionError(AgentError):
    """The executor could not start the process at all."""


class SessionSealed(AgentError, AttributeError):
    """A terminal Session was modified."""


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------

class RiskTier(enum.IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def parse(cls, value: Any) -> "RiskTier":
        """Accept a RiskTier, its int value, or a case-insensitive name."""
        if isinstance(value, RiskTier):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"unknown risk tier: {value!r}") from None


@dataclass(frozen=True)
class RiskAssessment:
    tier: RiskTier
    rule: str
    requires_confirmation: bool
    confirmation_mode: str = "none"
    safer_alternative: Optional[str] = None


# ---------------------------------------------------------------------------
# Step contents
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Action:
    tool: str
    command: str
    rationale: str = ""


@dataclass(frozen=True)
class Observation:
    stdout: str
    stderr: str
    exit_code: Optional[int]
    duration_seconds: float
    timed_out: bool = False
    cancelled: bool = False

    @property
    def outcome(self) -> str:
        if self.cancelled:
            return OUTCOME_CANCELLED
        if self.timed_out:
            return OUTCOME_TIMEOUT
        if self.exit_code != 0:
            return OUTCOME_FAILED
        return OUTCOME_COMPLETED

    def combined_text(self) -> str:
        return "\n".join(p for p in (self.stderr, self.stdout) if p)


@dataclass(frozen=True)
class RemediationOption:
    description: str
    command: Optional[str] = None
    tier: Optional[RiskTier] = RiskTier.LOW   # None = not yet classified


@dataclass(frozen=True)
class Solution:
    root_cause: str
    options: tuple[RemediationOption, ...] = ()
    confidence: int = 50
    category: str = CATEGORY_UNKNOWN
    evidence: tuple[str, ...] = ()


@dataclass
class Step:
    index: int
    thought: str = ""
    action: Optional[Action] = None
    observation: Optional[Observation] = None
    reflection: Optional[str] = None
    risk: Optional[RiskAssessment] = None
    pattern: Optional[str] = None
    rejected_command: Optional[str] = None


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

def new_session_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"diag_{stamp}_{uuid.uuid4().hex[:6]}"


@dataclass
class Session:
    problem: str
    session_id: str = field(default_factory=new_session_id)
    history: list[Step] = field(default_factory=list)
    status: str = STATUS_ACTIVE
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    solution: Optional[Solution] = None
    failure_reason: Optional[str] = None
    production: bool = False

    def __setattr__(self, name, value):
        if self.__dict__.get("_sealed"):
            raise SessionSealed(f"session {self.session_id} is {self.status}; it can no longer change")
        super().__setattr__(name, value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def latest_observation(self) -> Optional[Observation]:
        for step in reversed(self.history):
            if step.observation is not None:
                return step.observation
        return None

    @property
    def actions_executed(self) -> int:
        return sum(1 for s in self.history if s.observation is not None)

    def append(self, step: Step):
        if self.is_terminal:
            raise SessionSealed(f"session {self.session_id} is {self.status}; no more steps")
        expected = len(self.history) + 1
        if step.index != expected:
            raise ValueError(f"step index {step.index} out of sequence (expected {expected})")
        self.history.append(step)

    def seal(self, status: str, duration_seconds: float, solution: Optional[Solution] = None,
             failure_reason: Optional[str] = None):
        """Move to a terminal status. Steps become a tuple and every field is frozen."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal status: {status}")
        if self.is_terminal:
            raise SessionSealed(f"session {self.session_id} already {self.status}")
        self.status = status
        self.ended_at = datetime.now(timezone.utc)
        self.duration_seconds = round(duration_seconds, 3)
        self.solution = solution
        self.failure_reason = failure_reason
        self.history = tuple(self.history)
        self.__dict__["_sealed"] = True

    def to_dict(self) -> dict:
        """JSON-ready view of the whole session, used for audit and reports."""
        return {
            "session_id": self.session_id,
            "problem": self.problem,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "production": self.production,
            "iterations": len(self.history),
            "actions_executed": self.actions_executed,
            "failure_reason": self.failure_reason,
            "solution": _solution_dict(self.solution),
            "steps": [_step_dict(s) for s in self.history],
        }


def _solution_dict(solution: Optional[Solution]) -> Optional[dict]:
    if solution is None:
        return None
    data = asdict(solution)
    data["options"] = [
        {"description": o.description, "command": o.command,
         "tier": o.tier.label if o.tier is not None else None}
        for o in solution.options
    ]
    data["evidence"] = list(solution.evidence)
    return data


def _step_dict(step: Step) -> dict:
    data = {
        "index": step.index,
        "thought": step.thought,
        "action": asdict(step.action) if step.action else None,
        "risk": None,
        "observation": None,
        "reflection": step.reflection,
        "pattern": step.pattern,
        "rejected_command": step.rejected_command,
    }
    if step.risk is not None:
        data["risk"] = asdict(step.risk)
        data["risk"]["tier"] = step.risk.tier.label
    if step.observation is not None:
        data["observation"] = asdict(step.observation)
        data["observation"]["outcome"] = step.observation.outcome
    return data
