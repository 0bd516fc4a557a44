import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import jinja2
from sqlalchemy.orm import sessionmaker

from estimator.assembler import assemble_estimate, render_email
from estimator.claimer import JobClaimer
from estimator.config_loader import load_active_snapshot
from estimator.db import make_engine, make_session_factory, utcnow
from estimator.delivery import Mailer, OutboundEmail, build_mailer, recipients_for
from estimator.documents import DocumentIngestor
from estimator.errors import DeliveryError, EstimatorError, PricingDiagnostic
from estimator.lifecycle import LifecycleTracker
from estimator.llm import ModelClient, build_model_client
from estimator.models import ConfigSnapshot, Estimate, Job
from estimator.orchestrator import EstimateOrchestrator
from estimator.pricing import price_line_items
from estimator.settings import Settings
from estimator.status import JobStatus
from estimator.store import JobStore

logger = logging.getLogger(__name__)

NO_JOBS_MESSAGE = "No queued or stale jobs"


def _elapsed_s(start: float) -> float:
    return round(time.perf_counter() - start, 3)


def _log_timing_summary(job_id: str, timings: Dict[str, float]) -> None:
    logger.info(
        "pipeline[%s]: timing fetch=%.3fs stage_a=%.3fs stage_b=%.3fs pricing=%.3fs email=%.3fs total=%.3fs",
        job_id,
        timings.get("fetch", 0.0),
        timings.get("stage_a", 0.0),
        timings.get("stage_b", 0.0),
        timings.get("pricing", 0.0),
        timings.get("email", 0.0),
        timings.get("total", 0.0),
    )


@dataclass
class ProcessResult:
    ok: bool
    job_id: Optional[str] = None
    status: Optional[str] = None
    emailed: bool = False
    error: Optional[str] = None
    email_error: Optional[str] = None
    message: Optional[str] = None
    timings: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Worker:
    """Everything one invocation needs, wired once from settings."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        model_client: ModelClient,
        ingestor: DocumentIngestor,
        mailer: Mailer,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.store = JobStore(session_factory)
        self.claimer = JobClaimer(self.store, stale_after=timedelta(minutes=settings.stale_minutes), clock=clock)
        self.lifecycle = LifecycleTracker(self.store, clock=clock)
        self.ingestor = ingestor
        self.mailer = mailer
        self.orchestrator = EstimateOrchestrator(
            model_client,
            timeout_seconds=settings.model_timeout_seconds,
            shortlist_limit=settings.catalog_shortlist_limit,
            skip_rule_keys=(settings.tax_rule_key,),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Worker":
        engine = make_engine(settings.database_url)
        return cls(
            settings=settings,
            session_factory=make_session_factory(engine),
            model_client=build_model_client(settings),
            ingestor=DocumentIngestor(
                timeout_seconds=settings.fetch_timeout_seconds,
                max_chars=settings.max_prompt_chars,
                max_bytes=settings.max_document_bytes,
                ocr_fallback=settings.ocr_fallback,
            ),
            mailer=build_mailer(settings),
        )

    def load_snapshot(self) -> ConfigSnapshot:
        return load_active_snapshot(
            self.session_factory,
            default_tax_rate=self.settings.default_tax_rate,
            tax_rule_key=self.settings.tax_rule_key,
        )

    def health(self) -> Dict[str, Any]:
        """Store reachability plus the active snapshot; raises if either is unusable."""
        jobs = self.store.ping()
        snapshot = self.load_snapshot()
        return {
            "ok": True,
            **jobs,
            "config_version_id": snapshot.version_id,
            "catalog_items": len(snapshot.catalog),
        }

    def process_next_job(self) -> ProcessResult:
        """
        Claim and run at most one job to a terminal state.

        Configuration errors surface before any claim and propagate untouched.
        Once a job is claimed, every failure ends as `failed` with an error
        message and the invocation returns normally.
        """
        snapshot = self.load_snapshot()

        job = self.claimer.claim_next(config_version_id=snapshot.version_id)
        if job is None:
            logger.info("pipeline: %s", NO_JOBS_MESSAGE)
            return ProcessResult(ok=True, message=NO_JOBS_MESSAGE)

        req_start = time.perf_counter()
        timings: Dict[str, float] = {}
        diagnostics: List[PricingDiagnostic] = []

        try:
            estimate = self._run_job(job, snapshot, timings, diagnostics)
        except Exception as e:
            if not isinstance(e, EstimatorError):
                logger.exception("pipeline[%s]: unexpected error", job.id)
            message = str(e) or type(e).__name__
            try:
                self.lifecycle.mark_failed(job.id, message, diagnostics)
            except Exception:
                logger.exception("pipeline[%s]: could not record failure %r", job.id, message)
            timings["total"] = _elapsed_s(req_start)
            _log_timing_summary(job.id, timings)
            return ProcessResult(ok=False, job_id=job.id, status=JobStatus.FAILED.value, error=message, timings=timings)

        emailed, email_error = self._deliver(job, estimate, snapshot, timings)
        timings["total"] = _elapsed_s(req_start)
        _log_timing_summary(job.id, timings)
        return ProcessResult(
            ok=True,
            job_id=job.id,
            status=JobStatus.COMPLETE.value,
            emailed=emailed,
            email_error=email_error,
            timings=timings,
        )

    def _run_job(self, job: Job, snapshot: ConfigSnapshot, timings: Dict[str, float], diagnostics: List[PricingDiagnostic]):
        fetch_start = time.perf_counter()
        text = self.ingestor.combined_text(job.documents)
        timings["fetch"] = _elapsed_s(fetch_start)

        self.lifecycle.mark_ai_started(job.id)

        stage_a_start = time.perf_counter()
        items, raw_extraction = self.orchestrator.extract_items(job, text)
        timings["stage_a"] = _elapsed_s(stage_a_start)

        stage_b_start = time.perf_counter()
        if items:
            skeleton, raw_mapping, shortlist_codes = self.orchestrator.map_items(job, items, snapshot)
        else:
            skeleton, raw_mapping, shortlist_codes = self.orchestrator.empty_skeleton(), "", []
        timings["stage_b"] = _elapsed_s(stage_b_start)

        pricing_start = time.perf_counter()
        priced = price_line_items(skeleton.line_items, snapshot.catalog_by_code)
        assembled = assemble_estimate(skeleton, priced, snapshot, trip_fee_code=self.settings.trip_fee_code)
        diagnostics.extend(assembled.diagnostics)
        timings["pricing"] = _elapsed_s(pricing_start)

        if not assembled.estimate.is_consistent():
            raise ValueError(f"Estimate totals do not reconcile for job {job.id}")

        audit = {
            "config_version_id": snapshot.version_id,
            "extracted_items": [i.model_dump() for i in items],
            "shortlist_codes": shortlist_codes,
            "raw_extraction": raw_extraction,
            "raw_mapping": raw_mapping,
        }
        self.lifecycle.mark_complete(job.id, assembled.estimate, diagnostics, audit=audit)
        return assembled.estimate

    def _deliver(self, job: Job, estimate: Estimate, snapshot: ConfigSnapshot, timings: Dict[str, float]):
        """The job is already complete here; nothing raised below may escape the invocation."""
        email_start = time.perf_counter()
        to = recipients_for(job, self.settings.internal_copy_email)
        try:
            subject, html = render_email(
                job,
                estimate,
                snapshot,
                template_key=self.settings.email_template_key,
                company_name=self.settings.company_name,
            )
            self.mailer.send(OutboundEmail(to=to, subject=subject, html=html))
        except Exception as e:
            if not isinstance(e, (DeliveryError, jinja2.TemplateError)):
                logger.exception("pipeline[%s]: unexpected email error", job.id)
            message = str(e) or type(e).__name__
            try:
                self.lifecycle.mark_email_failed(job.id, message)
            except Exception:
                logger.exception("pipeline[%s]: could not record email failure %r", job.id, message)
            timings["email"] = _elapsed_s(email_start)
            return False, message

        try:
            self.lifecycle.mark_email_sent(job.id, to)
        except Exception:
            logger.exception("pipeline[%s]: email sent but could not record it", job.id)
        timings["email"] = _elapsed_s(email_start)
        return True, None
