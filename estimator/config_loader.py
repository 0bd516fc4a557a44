import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from estimator.db import (
    AliasRow,
    ConfigVersionRow,
    EstimateRuleRow,
    PricebookItemRow,
    TemplateRow,
    TripFeeRow,
)
from estimator.errors import ConfigurationError
from estimator.models import (
    AliasEntry,
    CatalogEntry,
    ConfigSnapshot,
    EmailTemplate,
    RuleEntry,
    TripFeePolicy,
)

logger = logging.getLogger(__name__)

_NUMBER = re.compile(r"\d+(?:\.\d+)?|\.\d+")


def parse_tax_rate(text: Optional[str]) -> Optional[Decimal]:
    """
    "11.2%", "11.2" and "0.112" all mean 0.112. Anything with a percent sign
    or above 1 is a percentage; otherwise the value is already a fraction.
    Returns None when the text holds no usable number.
    """
    if text is None:
        return None
    s = str(text).strip()
    m = _NUMBER.search(s.replace(",", ""))
    if not m:
        return None
    try:
        value = Decimal(m.group(0))
    except InvalidOperation:
        return None
    if "%" in s or value > 1:
        value = value / Decimal(100)
    return value


def resolve_tax_rate(rules: Iterable[RuleEntry], rule_key: str, default: Decimal) -> Decimal:
    # rules arrive sorted by priority; the first matching key wins
    for rule in rules:
        if rule.rule_key.strip().lower() != rule_key.lower():
            continue
        rate = parse_tax_rate(rule.rule_text)
        if rate is None:
            logger.warning("config: tax rule %r is not numeric (%r), using default %s", rule_key, rule.rule_text, default)
            return default
        return rate
    return default


def _load(session, label: str, stmt):
    try:
        return list(session.scalars(stmt))
    except SQLAlchemyError as e:
        raise ConfigurationError(f"{label} load failed: {e}") from e


def load_active_snapshot(
    session_factory: sessionmaker,
    default_tax_rate: Decimal = Decimal("0"),
    tax_rule_key: str = "tax_rate",
) -> ConfigSnapshot:
    with session_factory() as session:
        versions = _load(
            session,
            "config_versions",
            select(ConfigVersionRow).where(ConfigVersionRow.active.is_(True)).limit(2),
        )
        if not versions:
            raise ConfigurationError("No active config_versions row found.")
        if len(versions) > 1:
            raise ConfigurationError("More than one active config_versions row; refusing to guess.")
        version = versions[0]

        pricebook = _load(
            session,
            "pricebook_items",
            select(PricebookItemRow).where(PricebookItemRow.active.is_(True)).order_by(PricebookItemRow.id),
        )
        aliases = _load(
            session,
            "aliases",
            select(AliasRow).where(AliasRow.active.is_(True)).order_by(AliasRow.id),
        )
        trip_fees = _load(
            session,
            "trip_fees",
            select(TripFeeRow).where(TripFeeRow.active.is_(True)).order_by(TripFeeRow.id),
        )
        rules = _load(
            session,
            "estimate_rules",
            select(EstimateRuleRow)
            .where(EstimateRuleRow.active.is_(True))
            .order_by(EstimateRuleRow.priority.asc(), EstimateRuleRow.id.asc()),
        )
        templates = _load(
            session,
            "templates",
            select(TemplateRow).where(TemplateRow.active.is_(True)).order_by(TemplateRow.id),
        )

    try:
        catalog = [
            CatalogEntry(
                code=p.code.strip(),
                name=p.name,
                unit=p.unit,
                unit_price=Decimal(p.unit_price),
                min_qty=Decimal(p.min_qty) if p.min_qty is not None else None,
                notes=p.notes,
            )
            for p in pricebook
        ]
        alias_entries = [AliasEntry(alias=a.alias, code=a.code.strip()) for a in aliases]
        rule_entries = [RuleEntry(rule_key=r.rule_key, rule_text=r.rule_text, priority=r.priority) for r in rules]
        fee_entries = [
            TripFeePolicy(
                label=t.label,
                base_fee=Decimal(t.base_fee),
                per_mile=t.per_mile,
                after_hours_fee=t.after_hours_fee,
            )
            for t in trip_fees
        ]
        template_entries = [
            EmailTemplate(template_key=t.template_key, subject=t.subject, body_html=t.body_html)
            for t in templates
        ]
    except (ValueError, TypeError, InvalidOperation) as e:
        raise ConfigurationError(f"Config snapshot {version.id} has unreadable rows: {e}") from e

    catalog_by_code = {c.code: c for c in catalog}
    alias_by_phrase = {a.alias.strip().lower(): a.code for a in alias_entries if a.alias.strip()}
    tax_rate = resolve_tax_rate(rule_entries, tax_rule_key, default_tax_rate)

    logger.info(
        "config: loaded snapshot %s (%s) catalog=%s aliases=%s rules=%s trip_fees=%s templates=%s tax_rate=%s",
        version.id,
        version.label,
        len(catalog),
        len(alias_by_phrase),
        len(rule_entries),
        len(fee_entries),
        len(template_entries),
        tax_rate,
    )
    return ConfigSnapshot(
        version_id=version.id,
        label=version.label,
        catalog=catalog,
        aliases=alias_entries,
        rules=rule_entries,
        trip_fees=fee_entries,
        templates=template_entries,
        catalog_by_code=catalog_by_code,
        alias_by_phrase=alias_by_phrase,
        tax_rate=tax_rate,
    )
