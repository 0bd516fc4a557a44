import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from estimator.assembler import diagnostics_records, estimate_text
from estimator.db import utcnow
from estimator.errors import PricingDiagnostic
from estimator.models import Estimate
from estimator.status import JobStatus
from estimator.store import JobStore

logger = logging.getLogger(__name__)


class LifecycleTracker:
    """
    Writes every state transition of a claimed job. Statuses are always
    written in canonical spelling, and `complete` carries the estimate in the
    same write so no reader ever sees one without the other.
    """

    def __init__(self, store: JobStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def mark_ai_started(self, job_id: str) -> None:
        self.store.update(job_id, status=JobStatus.AI_STARTED.value, ai_started_at=self.clock())
        logger.info("lifecycle[%s]: ai_started", job_id)

    def mark_complete(
        self,
        job_id: str,
        estimate: Estimate,
        diagnostics: Sequence[PricingDiagnostic] = (),
        audit: Optional[Dict[str, Any]] = None,
    ) -> None:
        now = self.clock()
        self.store.update(
            job_id,
            status=JobStatus.COMPLETE.value,
            ai_completed_at=now,
            completed_at=now,
            estimate_json=estimate.model_dump(mode="json"),
            estimate_text=estimate_text(estimate),
            validation_errors=diagnostics_records(diagnostics),
            unmapped_items=[u.model_dump(mode="json") for u in estimate.unmapped_items],
            ai_audit=audit,
            error=None,
        )
        logger.info("lifecycle[%s]: complete total=%s", job_id, estimate.total)

    def mark_failed(
        self,
        job_id: str,
        error: str,
        diagnostics: Sequence[PricingDiagnostic] = (),
        audit: Optional[Dict[str, Any]] = None,
    ) -> None:
        fields: Dict[str, Any] = {
            "status": JobStatus.FAILED.value,
            "error": error or "Unknown error",
            "validation_errors": diagnostics_records(diagnostics),
        }
        if audit is not None:
            fields["ai_audit"] = audit
        self.store.update(job_id, **fields)
        logger.error("lifecycle[%s]: failed: %s", job_id, error)

    def mark_email_sent(self, job_id: str, recipients: List[str]) -> None:
        self.store.update(job_id, email_sent_at=self.clock(), email_error=None)
        logger.info("lifecycle[%s]: emailed %s", job_id, ", ".join(recipients))

    def mark_email_failed(self, job_id: str, error: str) -> None:
        self.store.update(job_id, email_error=error)
        logger.warning("lifecycle[%s]: email failed: %s", job_id, error)
