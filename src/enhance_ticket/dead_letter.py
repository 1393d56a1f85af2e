"""Dead-letter log for workflows that failed with an unhandled error.

Entries are appended as JSON lines so failed runs can be found and
replayed by hand. Writing an entry never raises.
"""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from enhance_ticket.logging import get_logger

logger = get_logger(__name__)

_write_lock = threading.Lock()


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class DeadLetterEntry:
    issue_id: str
    workflow: str
    error: str
    timestamp: str = field(default_factory=_utc_now)


def write_dead_letter(path: Path, entry: DeadLetterEntry) -> bool:
    """Append an entry to the dead-letter file.

    Relative paths are resolved against the current working directory and
    missing parent directories are created.

    Returns:
        True if the entry was written, False if writing failed (logged).
    """
    try:
        target = path if path.is_absolute() else Path.cwd() / path
        target.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(asdict(entry), ensure_ascii=False)
        with _write_lock, target.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
    except OSError as e:
        logger.error("Failed to write dead-letter entry for %s: %s", entry.issue_id, e)
        return False
    return True
