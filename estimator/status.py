import re
from enum import Enum
from typing import Dict, List, Optional, Tuple


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    AI_STARTED = "ai_started"
    COMPLETE = "complete"
    FAILED = "failed"


# Spellings seen in the job table over time. Writes always use the enum value;
# these are only used when reading or matching stored rows.
KNOWN_SPELLINGS: Dict[JobStatus, Tuple[str, ...]] = {
    JobStatus.QUEUED: ("queued", "queue", "pending", "new"),
    JobStatus.PROCESSING: ("processing", "in_progress", "in-progress", "in progress", "inprogress", "running"),
    JobStatus.AI_STARTED: ("ai_started", "ai-started", "ai started", "aistarted", "ai_processing"),
    JobStatus.COMPLETE: ("complete", "completed", "done", "success"),
    JobStatus.FAILED: ("failed", "failure", "error", "errored"),
}


def _squash(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", (value or "").lower())


_BY_SQUASHED: Dict[str, JobStatus] = {
    _squash(spelling): status
    for status, spellings in KNOWN_SPELLINGS.items()
    for spelling in spellings
}


def normalize_status(raw: Optional[str]) -> Optional[JobStatus]:
    if not raw:
        return None
    return _BY_SQUASHED.get(_squash(raw))


def spellings_for(*statuses: JobStatus) -> List[str]:
    """Stored spellings (compared lower-cased) that count as any of `statuses`."""
    out: List[str] = []
    for status in statuses:
        for spelling in KNOWN_SPELLINGS[status]:
            if spelling not in out:
                out.append(spelling)
    return out
