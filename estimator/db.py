from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

# Tables are owned by the intake/config collaborators; these mappings only
# describe the columns the worker reads and writes.


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EstimateJobRow(Base):
    __tablename__ = "estimate_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: uuid4().hex)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="queued", index=True)

    # contact / intake
    name: Mapped[Optional[str]] = mapped_column(String(200))
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    email: Mapped[Optional[str]] = mapped_column(String(320))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    property_address: Mapped[Optional[str]] = mapped_column(String(300))
    city: Mapped[Optional[str]] = mapped_column(String(120))
    zip: Mapped[Optional[str]] = mapped_column(String(10))
    binsr_url: Mapped[Optional[str]] = mapped_column(Text)
    inspection_url: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    # lifecycle
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    ai_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    ai_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    email_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error: Mapped[Optional[str]] = mapped_column(Text)
    email_error: Mapped[Optional[str]] = mapped_column(Text)
    config_version_id: Mapped[Optional[int]] = mapped_column(Integer)

    # results
    estimate_json: Mapped[Optional[Any]] = mapped_column(JSON)
    estimate_text: Mapped[Optional[str]] = mapped_column(Text)
    validation_errors: Mapped[Optional[Any]] = mapped_column(JSON)
    unmapped_items: Mapped[Optional[Any]] = mapped_column(JSON)
    ai_audit: Mapped[Optional[Any]] = mapped_column(JSON)

    def __repr__(self) -> str:
        return f"<EstimateJob id={self.id} status={self.status}>"


class ConfigVersionRow(Base):
    __tablename__ = "config_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    label: Mapped[Optional[str]] = mapped_column(String(200))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class PricebookItemRow(Base):
    __tablename__ = "pricebook_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    unit: Mapped[Optional[str]] = mapped_column(String(40))
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    min_qty: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class AliasRow(Base):
    __tablename__ = "aliases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alias: Mapped[str] = mapped_column(String(300), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class TripFeeRow(Base):
    __tablename__ = "trip_fees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    label: Mapped[str] = mapped_column(String(200), nullable=False)
    base_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    per_mile: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    after_hours_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class EstimateRuleRow(Base):
    __tablename__ = "estimate_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_key: Mapped[str] = mapped_column(String(100), nullable=False)
    rule_text: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class TemplateRow(Base):
    __tablename__ = "templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    template_key: Mapped[str] = mapped_column(String(100), nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    body_html: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


def make_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
