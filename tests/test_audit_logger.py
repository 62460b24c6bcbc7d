"""Audit logger: JSONL records for finished sessions."""

import json

import pytest

from agent_models import (
    STATUS_SOLVED,
    Action,
    RiskTier,
    Session,
    Solution,
    Step,
)
from audit_logger import AUDIT_FILENAME, JsonlAuditLogger, read_audit_records
from helpers import observation, option
from risk_classifier import assess


def _solved_session():
    session = Session(problem="nginx won't start", production=True)
    session.append(Step(
        index=1,
        thought="Check what holds port 80",
        action=Action(tool="network", command="lsof -i :80 -P -n", rationale="port owner"),
        observation=observation(stdout="apache2 1234 root 4u IPv6 TCP *:80 (LISTEN)"),
        reflection="Apache owns port 80",
        risk=assess("lsof -i :80 -P -n"),
    ))
    session.seal(STATUS_SOLVED, 1.23456, solution=Solution(
        root_cause="Apache holds port 80",
        options=(option("Stop Apache", "systemctl stop apache2", RiskTier.MEDIUM),),
        confidence=95,
        category="port_conflict",
        evidence=("apache2 LISTEN on *:80",),
    ))
    return session


@pytest.mark.p1
class TestJsonlAuditLogger:

    def test_writes_one_line(self, tmp_audit_dir):
        logger = JsonlAuditLogger(tmp_audit_dir)
        logger.record(_solved_session())
        lines = logger.path.read_text().splitlines()
        assert len(lines) == 1
        assert logger.path.name == AUDIT_FILENAME

    def test_record_fields(self, tmp_audit_dir):
        session = _solved_session()
        JsonlAuditLogger(tmp_audit_dir).record(session)
        entry = read_audit_records(tmp_audit_dir)[0]
        assert entry["session_id"] == session.session_id
        assert entry["status"] == STATUS_SOLVED
        assert entry["production"] is True
        assert entry["duration_seconds"] == 1.235
        assert entry["iterations"] == 1
        assert entry["actions_executed"] == 1
        assert "timestamp" in entry
        assert entry["solution"]["options"][0] == {
            "description": "Stop Apache", "command": "systemctl stop apache2", "tier": "Medium",
        }
        step = entry["steps"][0]
        assert step["risk"]["tier"] == "Low"
        assert step["observation"]["stdout"].startswith("apache2")
        assert step["action"]["command"] == "lsof -i :80 -P -n"

    def test_appends(self, tmp_audit_dir):
        logger = JsonlAuditLogger(tmp_audit_dir)
        logger.record(_solved_session())
        logger.record(_solved_session())
        assert len(read_audit_records(tmp_audit_dir)) == 2

    def test_active_session_rejected(self, tmp_audit_dir):
        with pytest.raises(ValueError):
            JsonlAuditLogger(tmp_audit_dir).record(Session(problem="x"))

    def test_unwritable_directory_raises(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(OSError):
            JsonlAuditLogger(str(blocker / "audit")).record(_solved_session())

    def test_read_missing_file(self, tmp_path):
        assert read_audit_records(str(tmp_path / "nowhere")) == []

    def test_records_are_json(self, tmp_audit_dir):
        logger = JsonlAuditLogger(tmp_audit_dir)
        logger.record(_solved_session())
        json.loads(logger.path.read_text().strip())
