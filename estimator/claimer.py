import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from estimator.db import EstimateJobRow, utcnow
from estimator.models import Job
from estimator.status import JobStatus, normalize_status
from estimator.store import JobStore, row_to_job

logger = logging.getLogger(__name__)

CANDIDATES_PER_PASS = 5


class JobClaimer:
    """
    Picks the next job and marks it `processing` before anything else happens.

    Queued jobs always come first (oldest first). Only when none is queued are
    in-progress jobs past the staleness threshold reclaimed. The claim is a
    conditional update on the status and progress timestamp that were read,
    so two invocations rarely both win, but nothing stronger is promised.
    """

    def __init__(
        self,
        store: JobStore,
        stale_after: timedelta = timedelta(minutes=20),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.stale_after = stale_after
        self.clock = clock

    def claim_next(self, config_version_id: Optional[int] = None) -> Optional[Job]:
        queued = self.store.find_oldest([JobStatus.QUEUED], limit=CANDIDATES_PER_PASS)
        for row in queued:
            job = self._try_claim(row, config_version_id, reclaim=False)
            if job:
                return job

        cutoff = self.clock() - self.stale_after
        stale = self.store.find_stale(cutoff, limit=CANDIDATES_PER_PASS)
        for row in stale:
            job = self._try_claim(row, config_version_id, reclaim=True)
            if job:
                return job
        return None

    def _try_claim(self, row: EstimateJobRow, config_version_id: Optional[int], reclaim: bool) -> Optional[Job]:
        now = self.clock()
        won = self.store.compare_and_set(
            row.id,
            {"status": row.status, "started_at": row.started_at, "ai_started_at": row.ai_started_at},
            status=JobStatus.PROCESSING.value,
            started_at=now,
            ai_started_at=None,
            error=None,
            email_error=None,
            config_version_id=config_version_id,
        )
        if not won:
            logger.info("claim[%s]: lost race, trying next candidate", row.id)
            return None

        if reclaim:
            previous = normalize_status(row.status)
            logger.warning(
                "claim[%s]: reclaimed stale job (was %r as %s, started_at=%s, ai_started_at=%s)",
                row.id, row.status, previous.value if previous else "unknown", row.started_at, row.ai_started_at,
            )
        else:
            logger.info("claim[%s]: claimed queued job", row.id)

        job = row_to_job(row)
        return job.model_copy(update={"status": JobStatus.PROCESSING.value, "started_at": now, "ai_started_at": None})
