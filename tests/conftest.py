"""Shared fixtures: an in-memory job/config store, scripted model and fake I/O collaborators."""
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

# Ensure repository root is on sys.path so `app` resolves without installation
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from estimator.db import (
    AliasRow,
    Base,
    ConfigVersionRow,
    EstimateJobRow,
    EstimateRuleRow,
    PricebookItemRow,
    TemplateRow,
    TripFeeRow,
    make_session_factory,
)
from estimator.delivery import OutboundEmail
from estimator.errors import DeliveryError
from estimator.pipeline import Worker
from estimator.settings import Settings

FIXED_NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

STAGE_A_SMOKE = '{"items": [{"phrase": "missing smoke detector", "qty": null, "note": "hallway"}]}'
STAGE_B_SMOKE = (
    '{"summary": "Install one smoke detector in the hallway.", '
    '"line_items": [{"code": "SMOKE01", "description": "Install smoke detector", "qty": 1}], '
    '"assumptions": ["Standard ceiling height"], "unmapped": []}'
)


class FakeModelClient:
    """Returns scripted raw output per stage and records every request."""

    def __init__(self, responses: Optional[Dict[str, Union[str, Exception]]] = None):
        self.responses = dict(responses or {})
        self.calls: List[Dict] = []

    def complete_json(self, *, stage, system, prompt, schema, timeout):
        self.calls.append({"stage": stage, "system": system, "prompt": prompt, "schema": schema, "timeout": timeout})
        out = self.responses.get(stage, "")
        if isinstance(out, Exception):
            raise out
        return out


class FakeIngestor:
    def __init__(self, text: str = "===== BINSR TEXT START =====\nSmoke detector missing in hallway.\n===== BINSR TEXT END =====", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.seen: List = []

    def combined_text(self, documents):
        self.seen.append(list(documents))
        if self.error:
            raise self.error
        return self.text

    def close(self):
        pass


class RecordingMailer:
    def __init__(self, fail_with: Optional[str] = None):
        self.sent: List[OutboundEmail] = []
        self.fail_with = fail_with

    def send(self, message: OutboundEmail) -> None:
        if self.fail_with:
            raise DeliveryError(self.fail_with)
        self.sent.append(message)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def seed_config(session_factory):
    """Insert an active snapshot; keyword arguments override the defaults."""

    def _seed(
        catalog=(("SMOKE01", "Smoke detector install", "45.00"), ("X1", "Outlet replacement", "125.00")),
        aliases=(("smoke detector", "SMOKE01"), ("outlet", "X1")),
        rules=(("tax_rate", "0.10", 10), ("scope", "Quote like-for-like replacements only.", 20)),
        trip_fee: Optional[str] = None,
        templates=(),
        active_versions: int = 1,
    ):
        with session_factory() as session:
            for i in range(active_versions):
                session.add(ConfigVersionRow(label=f"v{i + 1}", active=True))
            for code, name, price in catalog:
                session.add(PricebookItemRow(code=code, name=name, unit="ea", unit_price=Decimal(price)))
            for alias, code in aliases:
                session.add(AliasRow(alias=alias, code=code))
            for key, text, priority in rules:
                session.add(EstimateRuleRow(rule_key=key, rule_text=text, priority=priority))
            if trip_fee is not None:
                session.add(TripFeeRow(label="Standard trip", base_fee=Decimal(trip_fee)))
            for key, subject, body in templates:
                session.add(TemplateRow(template_key=key, subject=subject, body_html=body))
            session.commit()

    return _seed


@pytest.fixture
def add_job(session_factory):
    def _add(status="queued", created_offset_min=0, started_offset_min=None, ai_started_offset_min=None, **fields):
        row = EstimateJobRow(
            status=status,
            created_at=FIXED_NOW - timedelta(minutes=60) + timedelta(minutes=created_offset_min),
            started_at=FIXED_NOW - timedelta(minutes=started_offset_min) if started_offset_min is not None else None,
            ai_started_at=FIXED_NOW - timedelta(minutes=ai_started_offset_min) if ai_started_offset_min is not None else None,
            **{
                "name": "Pat Buyer",
                "email": "pat@example.com",
                "binsr_url": "https://files.example.com/binsr.pdf",
                **fields,
            },
        )
        with session_factory() as session:
            session.add(row)
            session.commit()
            return row.id

    return _add


@pytest.fixture
def settings():
    return Settings(anthropic_api_key="test-key", database_url="sqlite://")


@pytest.fixture
def make_worker(settings, session_factory):
    def _make(model=None, ingestor=None, mailer=None, **overrides):
        cfg = settings.model_copy(update=overrides) if overrides else settings
        return Worker(
            settings=cfg,
            session_factory=session_factory,
            model_client=model or FakeModelClient({"extraction": STAGE_A_SMOKE, "mapping": STAGE_B_SMOKE}),
            ingestor=ingestor or FakeIngestor(),
            mailer=mailer or RecordingMailer(),
            clock=lambda: FIXED_NOW,
        )

    return _make
