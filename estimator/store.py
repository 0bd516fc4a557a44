import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import sessionmaker

from estimator.db import EstimateJobRow
from estimator.models import DocumentRef, Job
from estimator.status import JobStatus, spellings_for

logger = logging.getLogger(__name__)

# Document columns in fetch order, with the label used to delimit their text.
DOCUMENT_COLUMNS = (("BINSR", "binsr_url"), ("INSPECTION", "inspection_url"))


def _status_in(statuses: Sequence[JobStatus]):
    return func.lower(func.trim(EstimateJobRow.status)).in_(spellings_for(*statuses))


def row_to_job(row: EstimateJobRow) -> Job:
    documents = [
        DocumentRef(label=label, url=getattr(row, column).strip())
        for label, column in DOCUMENT_COLUMNS
        if (getattr(row, column) or "").strip()
    ]
    name = row.name or " ".join(p for p in (row.first_name, row.last_name) if p) or None
    return Job(
        id=row.id,
        status=row.status,
        name=name,
        email=row.email,
        phone=row.phone,
        notes=row.notes,
        property_address=row.property_address,
        city=row.city,
        zip=row.zip,
        documents=documents,
        created_at=row.created_at,
        started_at=row.started_at,
        ai_started_at=row.ai_started_at,
    )


class JobStore:
    """Thin access layer over the shared `estimate_jobs` table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, job_id: str) -> Optional[EstimateJobRow]:
        with self._session_factory() as session:
            return session.get(EstimateJobRow, job_id)

    def find_oldest(self, statuses: Sequence[JobStatus], limit: int = 1) -> List[EstimateJobRow]:
        stmt = (
            select(EstimateJobRow)
            .where(_status_in(statuses))
            .order_by(EstimateJobRow.created_at.asc(), EstimateJobRow.id.asc())
            .limit(limit)
        )
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def find_stale(self, cutoff: datetime, limit: int = 1) -> List[EstimateJobRow]:
        """
        In-progress rows whose progress timestamp for their current phase is
        older than `cutoff`. A missing timestamp counts as stale.
        """
        processing_stale = and_(
            _status_in([JobStatus.PROCESSING]),
            or_(EstimateJobRow.started_at.is_(None), EstimateJobRow.started_at < cutoff),
        )
        progress_at = func.coalesce(EstimateJobRow.ai_started_at, EstimateJobRow.started_at)
        ai_stale = and_(
            _status_in([JobStatus.AI_STARTED]),
            or_(progress_at.is_(None), progress_at < cutoff),
        )
        stmt = (
            select(EstimateJobRow)
            .where(or_(processing_stale, ai_stale))
            .order_by(EstimateJobRow.created_at.asc(), EstimateJobRow.id.asc())
            .limit(limit)
        )
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def compare_and_set(self, job_id: str, expected: Dict[str, Any], **fields: Any) -> bool:
        """
        Update only if the row still holds the `expected` column values exactly
        as they were read. Returns False when another invocation got there first.
        """
        conditions = [EstimateJobRow.id == job_id]
        for column, value in expected.items():
            attr = getattr(EstimateJobRow, column)
            conditions.append(attr.is_(None) if value is None else attr == value)
        stmt = update(EstimateJobRow).where(*conditions).values(**fields)
        with self._session_factory() as session:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    def update(self, job_id: str, **fields: Any) -> None:
        stmt = update(EstimateJobRow).where(EstimateJobRow.id == job_id).values(**fields)
        with self._session_factory() as session:
            result = session.execute(stmt)
            session.commit()
        if result.rowcount != 1:
            logger.warning("store.update[%s]: expected 1 row, touched %s", job_id, result.rowcount)

    def ping(self) -> Dict[str, Any]:
        with self._session_factory() as session:
            count = session.scalar(select(func.count()).select_from(EstimateJobRow))
        return {"jobs": int(count or 0)}
