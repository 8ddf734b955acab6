import json
import logging
from pathlib import Path
from typing import List, Union

from .audit import AuditEvent, AuditSink

logger = logging.getLogger(__name__)

AUDIT_FILE = Path("data/audit.jsonl")


class JsonlAuditSink(AuditSink):
    """Append-only JSON lines audit log."""

    def __init__(self, path: Union[str, Path] = AUDIT_FILE):
        self.path = Path(path)

    def ensure_dir(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

    async def record(self, event: AuditEvent) -> None:
        self.ensure_dir()
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(event.model_dump_json() + "\n")


def load_recent(path: Union[str, Path] = AUDIT_FILE, limit: int = 100) -> List[AuditEvent]:
    """Load the last `limit` audit events; unparseable lines are skipped."""
    path = Path(path)
    if not path.exists():
        return []

    events = []
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                events.append(AuditEvent.model_validate(json.loads(line)))
            except (ValueError, TypeError) as e:
                logger.warning("Skipping malformed audit line %s:%d (%s)", path, lineno, e)
                continue

    return events[-limit:]
