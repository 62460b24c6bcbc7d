"""Shared fixtures for diagnostic agent tests.

Fixtures are auto-injected by pytest. Helper functions are in helpers.py.
"""

import sys
from pathlib import Path

import pytest

# Add project root and tests directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from agent_config import AgentConfig
from audit_logger import JsonlAuditLogger
from diagnostic_agent import DiagnosticAgent
from helpers import ConfirmTracker, StubExecutor


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_audit_dir(tmp_path):
    return str(tmp_path / "audit")


@pytest.fixture
def fast_config():
    """Small budgets, no backoff sleeps."""
    return AgentConfig(
        max_iterations=5,
        max_execution_time=60,
        command_timeout=5,
        reasoning_timeout=None,
        reasoning_attempts=3,
        reasoning_backoff_seconds=0,
    )


@pytest.fixture
def make_agent(fast_config, tmp_audit_dir):
    """Factory fixture: DiagnosticAgent wired with test doubles by default."""
    def _make(
        reasoner,
        config=None,
        executor=None,
        confirm_callback=None,
        clarify_callback=None,
        audit_logger=None,
        with_audit=True,
        **overrides,
    ):
        cfg = config or fast_config
        if overrides:
            cfg = cfg.with_overrides(**overrides)
        if audit_logger is None and with_audit:
            audit_logger = JsonlAuditLogger(tmp_audit_dir)
        return DiagnosticAgent(
            reasoner,
            config=cfg,
            executor=executor if executor is not None else StubExecutor(),
            audit_logger=audit_logger,
            confirm_callback=confirm_callback or ConfirmTracker("approve"),
            clarify_callback=clarify_callback,
            quiet=True,
        )
    return _make
