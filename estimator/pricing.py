import math
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Mapping, Optional, Sequence

from estimator.errors import PRICE_OVERRIDE, UNMAPPED_CODE, PricingDiagnostic
from estimator.models import CatalogEntry, MappedLineItem, PricedLineItem, UnmappedItem, round2

CODE_NOT_IN_CATALOG = "code not in catalog"


@dataclass(frozen=True)
class PricingResult:
    priced_items: List[PricedLineItem]
    subtotal: Decimal
    unmapped: List[UnmappedItem] = field(default_factory=list)
    diagnostics: List[PricingDiagnostic] = field(default_factory=list)


def _as_decimal(x) -> Optional[Decimal]:
    if x is None or isinstance(x, bool):
        return None
    if isinstance(x, float) and not math.isfinite(x):
        return None
    try:
        d = Decimal(str(x))
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def resolve_quantity(qty, entry: CatalogEntry) -> Decimal:
    q = _as_decimal(qty)
    if q is not None and q > 0:
        return q
    if entry.min_qty is not None and entry.min_qty > 0:
        return Decimal(entry.min_qty)
    return Decimal(1)


def price_line_items(
    items: Sequence[MappedLineItem],
    catalog: Mapping[str, CatalogEntry],
) -> PricingResult:
    """
    Price mapped items strictly from the catalog.

    Unknown codes go to `unmapped` and the batch carries on. A price supplied
    alongside an item is never used; if it disagrees with the catalog a
    diagnostic is recorded. Output order follows input order, and the same
    inputs always give the same result.
    """
    priced: List[PricedLineItem] = []
    unmapped: List[UnmappedItem] = []
    diagnostics: List[PricingDiagnostic] = []

    for item in items:
        code = (item.code or "").strip()
        entry = catalog.get(code)
        if entry is None:
            unmapped.append(UnmappedItem(item=item.description or code, reason=CODE_NOT_IN_CATALOG, code=code or None))
            diagnostics.append(PricingDiagnostic(
                kind=UNMAPPED_CODE,
                code=code or None,
                message=f"Code {code!r} not in catalog; left unpriced",
            ))
            continue

        qty = resolve_quantity(item.qty, entry)
        unit_price = round2(entry.unit_price)
        priced.append(PricedLineItem(
            code=entry.code,
            name=entry.name,
            description=item.description or "",
            qty=qty,
            unit_price=unit_price,
            total=round2(qty * unit_price),
        ))

        supplied = _as_decimal(item.unit_price)
        if supplied is not None and round2(supplied) != unit_price:
            diagnostics.append(PricingDiagnostic(
                kind=PRICE_OVERRIDE,
                code=entry.code,
                message=f"Unit price overridden for {entry.code}: model={round2(supplied)} pricebook={unit_price}",
            ))

    subtotal = round2(sum((p.total for p in priced), Decimal("0")))
    return PricingResult(priced_items=priced, subtotal=subtotal, unmapped=unmapped, diagnostics=diagnostics)
