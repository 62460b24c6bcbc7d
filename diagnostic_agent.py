#!/usr/bin/env python3
"""Diagnostic Agent: autonomous infrastructure troubleshooter.

Usage:
    diagnostic-agent "nginx won't start, port 80 in use"
    diagnostic-agent --production --max-iterations 10

Library use:
    agent = DiagnosticAgent(reasoner, config)
    session = agent.run("nginx won't start, port 80 in use")

Per iteration: Pattern fast path -> Reasoning -> Tool check -> Risk gate -> Execute -> Reflect.
Terminal states: solved, exhausted, cancelled, failed. Every session ends in
exactly one of them and is handed to the audit logger once.
"""

import argparse
import concurrent.futures
import os
import signal
import sys
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Optional

from dotenv import load_dotenv

from agent_config import (
    PROVIDER_GEMINI,
    PROVIDER_OLLAMA,
    PROVIDERS,
    AgentConfig,
    ConfigError,
    load_config,
)
from agent_models import (
    STATUS_CANCELLED,
    STATUS_EXHAUSTED,
    STATUS_FAILED,
    STATUS_SOLVED,
    Action,
    ConfirmationRefused,
    ExecutionError,
    RiskAssessment,
    RiskTier,
    Session,
    Solution,
    Step,
)
from audit_logger import AuditLogger, JsonlAuditLogger
from command_executor import CommandExecutor
from gemini_reasoner import GeminiReasoner
from ollama_reasoner import OllamaReasoner
from pattern_matcher import PatternMatcher, default_matcher
from reasoning_boundary import (
    PURPOSE_NEXT_STEP,
    PURPOSE_REFLECT,
    ClarificationDecision,
    Decision,
    FallbackReasoner,
    ReasoningBoundary,
    ReasoningRequest,
    ReasoningUnavailable,
    SolutionDecision,
    validate_decision,
)
from risk_classifier import MODE_TYPED, classify, assess
from tool_registry import ToolRegistry, UnknownTool, default_registry


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EXIT_SOLVED = 0
EXIT_FAILED = 1
EXIT_UNRESOLVED = 2

_PREFIX = "[Diagnostic Agent]"


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancellationToken:
    """Thread-safe cancel flag. Callbacks run once, on the first cancel()."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], object]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def on_cancel(self, callback: Callable[[], object]):
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------

@dataclass
class ConfirmationDecision:
    action: str                          # "approve" | "deny"
    typed_phrase: Optional[str] = None


def _default_confirm_callback(command: str, rationale: str, risk: RiskAssessment,
                              expected_phrase: Optional[str]) -> ConfirmationDecision:
    # Fail-closed: nobody to ask, nothing runs
    return ConfirmationDecision(action="deny")


def terminal_confirm_callback(command: str, rationale: str, risk: RiskAssessment,
                              expected_phrase: Optional[str]) -> ConfirmationDecision:
    """Block, print a risk alert box, and wait for the operator's decision."""
    W = 71
    def _row(label: str, value: str):
        content = f"{label}{value}"[: W - 4]
        print(f"│  {content:<{W - 4}}│")

    def _clip(text: str) -> str:
        return text[:55] + ("…" if len(text) > 55 else "")

    print("\n┌" + "─" * (W - 2) + "┐")
    _row("", "RISK GATE")
    _row(f"TIER: {risk.tier.label}  │  ", f"RULE: {risk.rule}")
    _row("COMMAND:    ", _clip(command))
    _row("RATIONALE:  ", _clip(rationale or "-"))
    if risk.safer_alternative:
        _row("SAFER:      ", _clip(risk.safer_alternative))
    print("│" + " " * (W - 2) + "│")
    if expected_phrase:
        _row("", f"Type {expected_phrase} to run this command, anything else denies")
    else:
        _row("", "[A]pprove   [D]eny")
    print("└" + "─" * (W - 2) + "┘")

    if expected_phrase:
        typed = input("Confirmation: ").strip()
        if typed == expected_phrase:
            return ConfirmationDecision(action="approve", typed_phrase=typed)
        return ConfirmationDecision(action="deny", typed_phrase=typed)

    choice = input("Your choice: ").strip().lower()
    if choice == "a":
        return ConfirmationDecision(action="approve")
    return ConfirmationDecision(action="deny")


def terminal_clarify_callback(question: str) -> Optional[str]:
    print(f"\n{_PREFIX} Question: {question}")
    answer = input("Answer (Enter to skip): ").strip()
    return answer or None


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------

class DiagnosticAgent:
    """Runs diagnostic sessions. Registries are shared read-only; sessions are independent."""

    def __init__(
        self,
        reasoner: ReasoningBoundary,
        config: Optional[AgentConfig] = None,
        registry: Optional[ToolRegistry] = None,
        matcher: Optional[PatternMatcher] = None,
        executor: Optional[CommandExecutor] = None,
        audit_logger: Optional[AuditLogger] = None,
        confirm_callback: Optional[Callable] = None,
        clarify_callback: Optional[Callable[[str], Optional[str]]] = None,
        quiet: bool = False,
    ):
        self._reasoner = reasoner
        self._config = config or AgentConfig()
        self._registry = registry or default_registry()
        self._matcher = matcher or default_matcher()
        self._executor = executor
        self._audit_logger = audit_logger
        self._confirm_callback = confirm_callback or _default_confirm_callback
        self._clarify_callback = clarify_callback
        self._quiet = quiet
        self._policy = self._config.confirmation_policy()
        self.last_audit_error: Optional[str] = None

    @property
    def config(self) -> AgentConfig:
        return self._config

    def run(self, problem: str, cancel_token: Optional[CancellationToken] = None) -> Session:
        """Drive one session to a terminal state and return it (sealed)."""
        token = cancel_token or CancellationToken()
        # Per-run executor unless one was injected; terminate() must only hit this session
        executor = self._executor or CommandExecutor(timeout_seconds=self._config.command_timeout)
        token.on_cancel(executor.terminate)
        session = Session(problem=problem, production=self._config.production)
        started = time.monotonic()
        self._say(f"Session {session.session_id}: {problem}")

        status = None
        solution = None
        failure = None
        pending: Optional[Decision] = None

        try:
            while status is None:
                if token.is_cancelled:
                    status = STATUS_CANCELLED
                    break
                if time.monotonic() - started >= self._config.max_execution_time:
                    status = STATUS_EXHAUSTED
                    break

                step = Step(index=len(session.history) + 1)
                status, solution, pending = self._iterate(session, step, token, executor, pending)

                if status is None and len(session.history) >= self._config.max_iterations:
                    status = STATUS_EXHAUSTED
                elif status is None and time.monotonic() - started >= self._config.max_execution_time:
                    status = STATUS_EXHAUSTED
        except ReasoningUnavailable as e:
            status = STATUS_FAILED
            failure = str(e)
            print(f"[ERROR] {e}")
        except ExecutionError as e:
            status = STATUS_FAILED
            failure = str(e)
            print(f"[ERROR] {e}")

        session.seal(status, time.monotonic() - started, solution=solution, failure_reason=failure)
        self._say(f"Session {session.session_id} {status} after {len(session.history)} step(s)"
                  f" in {session.duration_seconds}s")
        self._record(session)
        return session

    # --- one iteration ---

    def _iterate(self, session: Session, step: Step, token: CancellationToken,
                 executor: CommandExecutor, pending: Optional[Decision]):
        """Run one iteration. Returns (status or None, solution, pending decision)."""
        hint = None
        previous = session.history[-1].observation if session.history else None
        match = self._matcher.match(previous)
        if match is not None and match.pattern.confidence >= self._config.pattern_confidence_threshold:
            step.pattern = match.pattern.name
            if match.pattern.conclusive:
                step.thought = f"Recognized known error signature: {match.pattern.name}"
                step.reflection = match.reflection()
                session.append(step)
                self._say(f"Pattern match ({match.pattern.name}) is conclusive")
                return STATUS_SOLVED, self._finalize_solution(match.to_solution()), None
            hint = match.reflection()
            pending = None
            self._say(f"Pattern hint: {match.pattern.name}")

        if pending is not None:
            decision = pending
            step.thought = getattr(decision, "rationale", "") or getattr(decision, "question", "")
        else:
            decision = self._consult(self._request(session, PURPOSE_NEXT_STEP, hint=hint))
            step.thought = decision.thought
        if step.thought:
            self._say(f"Thought: {step.thought}")

        if isinstance(decision, SolutionDecision):
            session.append(step)
            return STATUS_SOLVED, self._finalize_solution(decision), None

        if isinstance(decision, ClarificationDecision):
            step.thought = step.thought or decision.question
            step.reflection = self._clarify(decision.question)
            session.append(step)
            return None, None, None

        try:
            descriptor = self._registry.resolve(decision.command)
        except UnknownTool as e:
            step.rejected_command = decision.command
            step.reflection = (f"Rejected: {e}. Use one of the registered tools: "
                               f"{', '.join(self._registry.keywords)}.")
            self._say(step.reflection)
            session.append(step)
            return None, None, None

        step.action = Action(tool=descriptor.keyword, command=decision.command, rationale=decision.rationale)
        step.risk = assess(decision.command, self._policy, descriptor.default_tier)
        self._say(f"Action [{descriptor.keyword}] {decision.command}  (risk: {step.risk.tier.label})")

        if step.risk.requires_confirmation:
            try:
                self._confirm(step.action, step.risk)
            except ConfirmationRefused as e:
                step.reflection = f"Not executed: {e}"
                self._say(step.reflection)
                session.append(step)
                return STATUS_CANCELLED, None, None

        if token.is_cancelled:
            step.reflection = "Not executed: session cancelled"
            session.append(step)
            return STATUS_CANCELLED, None, None

        try:
            step.observation = executor.run(decision.command, should_cancel=lambda: token.is_cancelled)
        except ExecutionError:
            session.append(step)
            raise
        obs = step.observation
        if obs.timed_out:
            self._say(f"Timed out after {obs.duration_seconds}s")
        else:
            self._say(f"Exit code {obs.exit_code} ({obs.duration_seconds}s)")

        if obs.cancelled or token.is_cancelled:
            step.reflection = "Cancelled while the command was running"
            session.append(step)
            return STATUS_CANCELLED, None, None

        try:
            reflection = self._consult(
                self._request(session, PURPOSE_REFLECT, current=step, latest=obs))
        except ReasoningUnavailable:
            session.append(step)
            raise
        step.reflection = reflection.thought or getattr(reflection, "question", "")
        if step.reflection:
            self._say(f"Reflection: {step.reflection}")
        session.append(step)

        if isinstance(reflection, SolutionDecision):
            return STATUS_SOLVED, self._finalize_solution(reflection), None
        # The next move proposed during reflection is used by the next iteration
        return None, None, reflection

    # --- collaborators ---

    def _request(self, session: Session, purpose: str, hint: Optional[str] = None,
                 current: Optional[Step] = None, latest=None) -> ReasoningRequest:
        steps = list(session.history)
        if current is not None:
            steps.append(current)
        window = steps[-self._config.history_window:]
        return ReasoningRequest(
            problem=session.problem,
            history=tuple(window),
            latest_observation=latest if latest is not None else session.latest_observation,
            purpose=purpose,
            omitted_steps=len(steps) - len(window),
            hint=hint,
            tools=self._registry.describe(),
            production=session.production,
        )

    def _consult(self, request: ReasoningRequest) -> Decision:
        """Ask the reasoner, retrying with doubling backoff. Raises ReasoningUnavailable."""
        attempts = self._config.reasoning_attempts
        last_error = None
        for attempt in range(attempts):
            try:
                return validate_decision(self._call_reasoner(request))
            except Exception as e:
                last_error = e
                self._say(f"Reasoning call failed ({attempt + 1}/{attempts}): {e}")
                if attempt < attempts - 1:
                    wait_sec = self._config.reasoning_backoff_seconds * (2 ** attempt)
                    if wait_sec > 0:
                        time.sleep(wait_sec)
        raise ReasoningUnavailable(
            f"reasoning engine unavailable after {attempts} attempt(s): {last_error}",
            attempts=attempts,
        )

    def _call_reasoner(self, request: ReasoningRequest) -> Decision:
        timeout = self._config.reasoning_timeout
        if not timeout:
            return self._reasoner.decide(request)
        # A fresh worker per call: a hung call must not block the retry behind it
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="reasoner")
        try:
            return pool.submit(self._reasoner.decide, request).result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            raise TimeoutError(f"no decision within {timeout}s") from None
        finally:
            pool.shutdown(wait=False)

    def _confirm(self, action: Action, risk: RiskAssessment):
        expected = self._config.typed_confirmation_phrase if risk.confirmation_mode == MODE_TYPED else None
        try:
            decision = self._confirm_callback(action.command, action.rationale, risk, expected)
        except Exception as e:
            raise ConfirmationRefused(f"confirmation unavailable ({type(e).__name__})") from e
        if decision is None or decision.action != "approve":
            raise ConfirmationRefused("operator denied the command")
        if expected is not None and (decision.typed_phrase or "").strip() != expected:
            raise ConfirmationRefused("typed confirmation did not match")

    def _clarify(self, question: str) -> str:
        self._say(f"Clarification needed: {question}")
        answer = None
        if self._clarify_callback is not None:
            try:
                answer = self._clarify_callback(question)
            except Exception as e:
                print(f"WARNING: clarification prompt failed: {e}", file=sys.stderr)
        if answer:
            return f"Operator answered: {answer}"
        return "No operator answer; continue with the information at hand."

    def _finalize_solution(self, source) -> Solution:
        """Build the Solution, tiering any remediation option that arrived untiered."""
        options = []
        for opt in source.options:
            if opt.tier is None:
                tier = classify(opt.command).tier if opt.command else None
                opt = replace(opt, tier=tier if tier is not None else RiskTier.LOW)
            options.append(opt)
        return Solution(
            root_cause=source.root_cause,
            options=tuple(options),
            confidence=source.confidence,
            category=source.category,
            evidence=tuple(source.evidence),
        )

    def _record(self, session: Session):
        """Hand the sealed session to the audit logger. Failure is reported, never raised."""
        self.last_audit_error = None
        if self._audit_logger is None:
            return
        try:
            self._audit_logger.record(session)
        except Exception as e:
            self.last_audit_error = str(e)
            print(f"WARNING: Audit log write failure: {e}", file=sys.stderr)

    def _say(self, message: str):
        if not self._quiet:
            print(f"{_PREFIX} {message}")


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def render_report(session: Session, audit_path: Optional[str] = None) -> str:
    sol = session.solution
    lines = [
        f"# Diagnostic Report: {session.session_id}",
        "",
        f"**Problem:** {session.problem}",
        f"**Status:** {session.status}",
        f"**Duration:** {session.duration_seconds}s  |  **Steps:** {len(session.history)}"
        f"  |  **Commands run:** {session.actions_executed}",
        f"**Environment:** {'production' if session.production else 'non-production'}",
        "",
    ]
    if sol is not None:
        lines += [
            "## Root Cause",
            f"{sol.root_cause}",
            "",
            f"_Category: {sol.category}  |  Confidence: {sol.confidence}/100_",
            "",
        ]
        if sol.evidence:
            lines += ["### Evidence"] + [f"- {e}" for e in sol.evidence] + [""]
        if sol.options:
            lines += ["## Remediation Options", "| # | Option | Command | Risk |", "|---|---|---|---|"]
            for i, opt in enumerate(sol.options, 1):
                cmd = f"`{opt.command}`" if opt.command else "-"
                lines.append(f"| {i} | {opt.description} | {cmd} | {opt.tier.label} |")
            lines.append("")
    elif session.failure_reason:
        lines += ["## Failure", session.failure_reason, ""]
    else:
        lines += ["## Outcome", "No root cause was established.", ""]

    if session.history:
        lines += ["## Steps", "| # | Command | Risk | Outcome | Reflection |", "|---|---|---|---|---|"]
        for s in session.history:
            cmd = f"`{s.action.command}`" if s.action else (f"~~{s.rejected_command}~~" if s.rejected_command else "-")
            risk = s.risk.tier.label if s.risk else "-"
            outcome = s.observation.outcome if s.observation else ("pattern" if s.pattern else "-")
            reflection = (s.reflection or "").replace("\n", " ").replace("|", "\\|")[:120]
            lines.append(f"| {s.index} | {cmd} | {risk} | {outcome} | {reflection} |")
        lines.append("")

    if audit_path:
        lines += ["## Audit", f"Full step history with raw output: {audit_path}"]
    return "\n".join(lines)


def write_report(session: Session, report_dir: str, audit_path: Optional[str] = None) -> Optional[str]:
    """Write the Markdown report. Returns its path, or None if it could not be written."""
    out = Path(report_dir) / f"diag_report_{session.session_id}.md"
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(render_report(session, audit_path))
    except OSError as e:
        print(f"WARNING: Could not write report: {e}", file=sys.stderr)
        return None
    return str(out)


def exit_code_for(session: Session) -> int:
    if session.status == STATUS_SOLVED:
        return EXIT_SOLVED
    if session.status == STATUS_FAILED:
        return EXIT_FAILED
    return EXIT_UNRESOLVED


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _read_problem() -> str:
    print("What problem should I investigate?")
    print("(Multi-line OK, finish with an empty line)")
    lines = []
    while True:
        try:
            line = input("> " if not lines else "  ")
            if line == "" and lines:
                break
            if line:
                lines.append(line)
        except EOFError:
            break
    return " ".join(lines).strip()


def _install_sigint(token: CancellationToken):
    """First Ctrl-C cancels the session; a second one interrupts immediately."""
    def _handler(signum, frame):
        if token.is_cancelled:
            signal.signal(signal.SIGINT, signal.default_int_handler)
            raise KeyboardInterrupt
        print(f"\n{_PREFIX} Cancelling (Ctrl-C again to abort)…")
        token.cancel()
    signal.signal(signal.SIGINT, _handler)


def build_reasoner(config: AgentConfig, api_key: Optional[str]) -> ReasoningBoundary:
    """Reasoning backend for `config.provider`.

    auto uses Gemini with Ollama as fallback, or Ollama alone when there is no
    Gemini key.
    """
    def _ollama():
        return OllamaReasoner(config.ollama_model, config.ollama_base_url,
                              timeout_seconds=config.reasoning_timeout)

    if config.provider == PROVIDER_OLLAMA or not api_key:
        return _ollama()
    gemini = GeminiReasoner.from_api_key(api_key, config.model, timeout_seconds=config.reasoning_timeout)
    if config.provider == PROVIDER_GEMINI:
        return gemini
    return FallbackReasoner(gemini, _ollama(), primary_name="Gemini", fallback_name="Ollama")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Diagnostic Agent: autonomous infrastructure troubleshooter")
    parser.add_argument("problem",            nargs="*", help="Problem statement (prompted for when omitted)")
    parser.add_argument("--provider",         choices=PROVIDERS, default=None,
                        help="Reasoning backend: gemini, ollama (local) or auto (Gemini, falling back to Ollama)")
    parser.add_argument("--model",            default=None, help="Gemini model (default from DIAG_MODEL or gemini-2.0-flash)")
    parser.add_argument("--ollama-model",     default=None, help="Local Ollama model (default llama3.2)")
    parser.add_argument("--audit-dir",        default=None, help="Audit and report directory (default: ./audit)")
    parser.add_argument("--max-iterations",   type=int,   default=None, help="Iteration budget")
    parser.add_argument("--max-time",         type=float, default=None, help="Wall-clock budget in seconds")
    parser.add_argument("--command-timeout",  type=float, default=None, help="Per-command timeout in seconds")
    parser.add_argument("--production",       action="store_true", default=None,
                        help="Target is production: escalate confirmation requirements")
    parser.add_argument("--no-confirm",       action="store_true",
                        help="Skip confirmation for Medium/High commands (Critical still requires typing)")
    parser.add_argument("--quiet",            action="store_true", help="Only print the final summary")
    return parser


def main(argv=None):
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = load_config().with_overrides(
            provider           = args.provider,
            model              = args.model,
            ollama_model       = args.ollama_model,
            audit_dir          = args.audit_dir,
            max_iterations     = args.max_iterations,
            max_execution_time = args.max_time,
            command_timeout    = args.command_timeout,
            production         = args.production,
            confirm_destructive = False if args.no_confirm else None,
        )
    except ConfigError as e:
        print(f"[ERROR] Invalid configuration: {e}")
        sys.exit(EXIT_FAILED)

    # Guard: the Gemini-only provider needs GEMINI_API_KEY before anything is built
    api_key = os.environ.get("GEMINI_API_KEY")
    if config.provider == PROVIDER_GEMINI and not api_key:
        print("[ERROR] GEMINI_API_KEY is not set.")
        print("        Set it in your environment, add GEMINI_API_KEY=... to a .env file,")
        print("        or run a local model with --provider ollama.")
        sys.exit(EXIT_FAILED)

    problem = " ".join(args.problem).strip() or _read_problem()
    if not problem:
        print("[ERROR] No problem statement provided. Exiting.")
        sys.exit(EXIT_FAILED)

    reasoner = build_reasoner(config, api_key)
    audit = JsonlAuditLogger(config.audit_dir)
    agent = DiagnosticAgent(
        reasoner,
        config           = config,
        audit_logger     = audit,
        confirm_callback = terminal_confirm_callback,
        clarify_callback = terminal_clarify_callback,
        quiet            = args.quiet,
    )

    token = CancellationToken()
    _install_sigint(token)

    W = 60
    print("\n" + "═" * W)
    print(f"  DIAGNOSTIC AGENT  |  {'PRODUCTION' if config.production else 'non-production'}"
          f"  |  budget {config.max_iterations} steps / {int(config.max_execution_time)}s")
    print("═" * W)

    session = agent.run(problem, token)
    report = write_report(session, config.audit_dir, audit_path=str(audit.path))

    print("\n" + "═" * W)
    print(f"  STATUS: {session.status.upper()}  |  Steps: {len(session.history)}")
    if session.solution is not None:
        print(f"  ROOT CAUSE: {session.solution.root_cause}")
        for i, opt in enumerate(session.solution.options, 1):
            print(f"    {i}. [{opt.tier.label}] {opt.description}" + (f": {opt.command}" if opt.command else ""))
    if session.failure_reason:
        print(f"  FAILURE: {session.failure_reason}")
    print(f"  REPORT: {report or 'not written'}")
    print("═" * W)
    sys.exit(exit_code_for(session))


if __name__ == "__main__":
    main()
