import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import jinja2
from jinja2.sandbox import SandboxedEnvironment

from estimator.errors import TRIP_FEE_MISMATCH, TRIP_FEE_MISSING, PricingDiagnostic
from estimator.models import (
    ConfigSnapshot,
    Estimate,
    EstimateSkeleton,
    Job,
    PricedLineItem,
    UnmappedItem,
    round2,
)
from estimator.pricing import PricingResult

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"
DEFAULT_TEMPLATE_FILE = "estimate_email.html"
DEFAULT_SUBJECT = "{{ company_name }} Estimate - Job {{ job.id }}"
MAX_EMAIL_LINE_ITEMS = 60
MAX_EMAIL_ASSUMPTIONS = 20


@dataclass(frozen=True)
class TaxBreakdown:
    subtotal: Decimal
    tax_rate: Decimal
    tax: Decimal
    total: Decimal


def calc_tax(subtotal: Decimal, tax_rate: Decimal) -> TaxBreakdown:
    subtotal = round2(subtotal)
    rate = Decimal(tax_rate)
    tax = round2(subtotal * rate)
    return TaxBreakdown(subtotal, rate, tax, round2(subtotal + tax))


def trip_fee_line(snapshot: ConfigSnapshot, trip_fee_code: str) -> Tuple[Optional[PricedLineItem], List[PricingDiagnostic]]:
    """
    The synthetic trip-fee line for the active policy, priced at the policy's
    base fee. It needs the reserved catalog entry to exist; without it the
    fee is skipped and a diagnostic is returned instead.
    """
    policy = snapshot.trip_fee_policy
    if policy is None:
        return None, []

    entry = snapshot.catalog_by_code.get(trip_fee_code)
    if entry is None:
        return None, [PricingDiagnostic(
            kind=TRIP_FEE_MISSING,
            code=trip_fee_code,
            message=f"Trip fee policy {policy.label!r} is active but catalog entry {trip_fee_code} is missing; trip fee skipped",
        )]

    fee = round2(policy.base_fee)
    diagnostics: List[PricingDiagnostic] = []
    if round2(entry.unit_price) != fee:
        diagnostics.append(PricingDiagnostic(
            kind=TRIP_FEE_MISMATCH,
            code=trip_fee_code,
            message=f"Trip fee catalog price {round2(entry.unit_price)} differs from policy base fee {fee}; using policy",
        ))
    line = PricedLineItem(
        code=entry.code,
        name=entry.name,
        description=policy.label,
        qty=Decimal(1),
        unit_price=fee,
        total=fee,
    )
    return line, diagnostics


@dataclass
class AssemblyResult:
    estimate: Estimate
    diagnostics: List[PricingDiagnostic] = field(default_factory=list)


def assemble_estimate(
    skeleton: EstimateSkeleton,
    pricing: PricingResult,
    snapshot: ConfigSnapshot,
    trip_fee_code: str = "TRIP_FEE",
) -> AssemblyResult:
    diagnostics = list(pricing.diagnostics)
    items = list(pricing.priced_items)

    trip_line, trip_diags = trip_fee_line(snapshot, trip_fee_code)
    diagnostics.extend(trip_diags)
    if trip_line is not None:
        # the trip fee is never taken from mapping output
        dropped = [li for li in items if li.code == trip_fee_code]
        if dropped:
            items = [li for li in items if li.code != trip_fee_code]
            diagnostics.append(PricingDiagnostic(
                kind=TRIP_FEE_MISMATCH,
                code=trip_fee_code,
                message=f"Dropped {len(dropped)} mapped {trip_fee_code} line(s); trip fee comes from policy",
            ))
        items.append(trip_line)

    subtotal = round2(sum((li.total for li in items), Decimal("0")))
    tax = calc_tax(subtotal, snapshot.tax_rate)

    unmapped = [UnmappedItem(item=u.item, reason=u.reason) for u in skeleton.unmapped]
    unmapped.extend(pricing.unmapped)

    estimate = Estimate(
        summary=skeleton.summary,
        line_items=items,
        subtotal=tax.subtotal,
        trip_fee=trip_line.total if trip_line else Decimal("0.00"),
        tax_rate=tax.tax_rate,
        tax=tax.tax,
        total=tax.total,
        assumptions=list(skeleton.assumptions),
        unmapped_items=unmapped,
    )
    logger.info(
        "assembler: %s lines subtotal=%s tax=%s total=%s unmapped=%s diagnostics=%s",
        len(items), estimate.subtotal, estimate.tax, estimate.total, len(unmapped), len(diagnostics),
    )
    return AssemblyResult(estimate=estimate, diagnostics=diagnostics)


def estimate_text(estimate: Estimate) -> str:
    return json.dumps(estimate.model_dump(mode="json"), indent=2, ensure_ascii=False)


# ---------------- Email rendering ----------------
def _money(value) -> str:
    if value is None or isinstance(value, jinja2.Undefined):
        return ""
    return f"${round2(value):,.2f}"


def _qty(value) -> str:
    if value is None or isinstance(value, jinja2.Undefined):
        return ""
    d = Decimal(value)
    return format(d.normalize(), "f") if d == d.to_integral_value() else str(d)


def _environment(loader: Optional[jinja2.BaseLoader] = None, autoescape: bool = True) -> SandboxedEnvironment:
    env = SandboxedEnvironment(loader=loader, autoescape=autoescape, undefined=jinja2.ChainableUndefined)
    env.filters["money"] = _money
    env.filters["qty"] = _qty
    return env


_file_env = _environment(jinja2.FileSystemLoader(str(TEMPLATES_DIR)))
_html_env = _environment()
_text_env = _environment(autoescape=False)


def render_email(
    job: Job,
    estimate: Estimate,
    snapshot: ConfigSnapshot,
    template_key: str = "estimate_email",
    company_name: str = "BINSR Pros",
) -> Tuple[str, str]:
    """
    Returns (subject, html). Uses the snapshot's template for `template_key`
    when there is one, otherwise the built-in file template. All values are
    HTML-escaped; templates run sandboxed since they come from the database.
    """
    context = {
        "job": job,
        "estimate": estimate,
        "line_items": estimate.line_items[:MAX_EMAIL_LINE_ITEMS],
        "assumptions": estimate.assumptions[:MAX_EMAIL_ASSUMPTIONS],
        "unmapped_items": estimate.unmapped_items,
        "company_name": company_name,
    }

    stored = snapshot.template(template_key)
    if stored is not None:
        subject = _text_env.from_string(stored.subject).render(**context)
        html = _html_env.from_string(stored.body_html).render(**context)
    else:
        subject = _text_env.from_string(DEFAULT_SUBJECT).render(**context)
        html = _file_env.get_template(DEFAULT_TEMPLATE_FILE).render(**context)
    return " ".join(subject.split()), html


def diagnostics_records(diagnostics: Sequence[PricingDiagnostic]) -> List[dict]:
    return [d.to_record() for d in diagnostics]
