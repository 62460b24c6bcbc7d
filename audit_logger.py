"""Audit logger: one append-only JSONL record per finished session."""

import abc
import json
from datetime import datetime, timezone
from pathlib import Path

from agent_models import Session


AUDIT_FILENAME = "agent_sessions.jsonl"


class AuditLogger(abc.ABC):
    @abc.abstractmethod
    def record(self, session: Session):
        """Persist one terminal session. May raise; callers treat failure as non-fatal."""


class JsonlAuditLogger(AuditLogger):
    def __init__(self, audit_dir: str):
        self._audit_dir = Path(audit_dir)

    @property
    def path(self) -> Path:
        return self._audit_dir / AUDIT_FILENAME

    def record(self, session: Session):
        if not session.is_terminal:
            raise ValueError(f"session {session.session_id} is still {session.status}")
        entry = {"timestamp": datetime.now(timezone.utc).isoformat()}
        entry.update(session.to_dict())
        self._audit_dir.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")


def read_audit_records(audit_dir: str) -> list[dict]:
    """All records in `audit_dir`, oldest first."""
    filepath = Path(audit_dir) / AUDIT_FILENAME
    if not filepath.exists():
        return []
    records = []
    for line in filepath.read_text().splitlines():
        if line.strip():
            records.append(json.loads(line))
    return records
