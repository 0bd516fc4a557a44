from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Annotated, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

CENTS = Decimal("0.01")


def round2(x) -> Decimal:
    return Decimal(x).quantize(CENTS, rounding=ROUND_HALF_UP)


# Decimals stay exact in memory and become plain JSON numbers when persisted.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]
Quantity = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]
Rate = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

# ---------------- Configuration snapshot ----------------
class CatalogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    name: str
    unit: Optional[str] = None
    unit_price: Money
    min_qty: Optional[Decimal] = None
    notes: Optional[str] = None


class AliasEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    alias: str
    code: str


class RuleEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_key: str
    rule_text: str
    priority: int = 100


class TripFeePolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    base_fee: Money
    per_mile: Optional[Decimal] = None
    after_hours_fee: Optional[Decimal] = None


class EmailTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    template_key: str
    subject: str
    body_html: str


class ConfigSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    version_id: int
    label: Optional[str] = None
    catalog: List[CatalogEntry]
    aliases: List[AliasEntry]
    rules: List[RuleEntry]
    trip_fees: List[TripFeePolicy]
    templates: List[EmailTemplate]
    catalog_by_code: Dict[str, CatalogEntry]
    alias_by_phrase: Dict[str, str]
    tax_rate: Rate

    @property
    def trip_fee_policy(self) -> Optional[TripFeePolicy]:
        return self.trip_fees[0] if self.trip_fees else None

    def template(self, key: str) -> Optional[EmailTemplate]:
        for t in self.templates:
            if t.template_key == key:
                return t
        return None


# ---------------- Jobs ----------------
class DocumentRef(BaseModel):
    label: str
    url: str


class Job(BaseModel):
    id: str
    status: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None
    property_address: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None
    documents: List[DocumentRef] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ai_started_at: Optional[datetime] = None


# ---------------- Model stage outputs (untrusted) ----------------
class ExtractedItem(BaseModel):
    model_config = ConfigDict(extra="ignore", strict=True)

    phrase: str
    qty: Optional[float] = None
    note: Optional[str] = None


class ExtractionOutput(BaseModel):
    model_config = ConfigDict(extra="ignore", strict=True)

    items: List[ExtractedItem]


class MappedLineItem(BaseModel):
    model_config = ConfigDict(extra="ignore", strict=True)

    code: str
    description: str = ""
    qty: Optional[float] = None
    # Not part of the mapping contract; captured only so tampering is visible.
    unit_price: Optional[float] = None


class ModelUnmappedItem(BaseModel):
    model_config = ConfigDict(extra="ignore", strict=True)

    item: str
    reason: str


class EstimateSkeleton(BaseModel):
    model_config = ConfigDict(extra="ignore", strict=True)

    summary: str
    line_items: List[MappedLineItem]
    assumptions: List[str] = Field(default_factory=list)
    unmapped: List[ModelUnmappedItem] = Field(default_factory=list)


# ---------------- Priced output ----------------
class PricedLineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    name: str
    description: str
    qty: Quantity
    unit_price: Money
    total: Money


class UnmappedItem(BaseModel):
    item: str
    reason: str
    code: Optional[str] = None


class Estimate(BaseModel):
    """
    Priced estimate. `subtotal` is the sum of every line item, the trip-fee
    line included, so `trip_fee` is reported for display only and must not be
    added again: `total = subtotal + tax`.
    """

    summary: str
    line_items: List[PricedLineItem]
    subtotal: Money
    trip_fee: Money = Field(
        default=Decimal("0.00"),
        description="Informational copy of the trip-fee line. That line is already in line_items and subtotal; total = subtotal + tax.",
    )
    tax_rate: Rate
    tax: Money
    total: Money
    assumptions: List[str] = Field(default_factory=list)
    unmapped_items: List[UnmappedItem] = Field(default_factory=list)

    def is_consistent(self) -> bool:
        """Line totals sum to subtotal, subtotal plus tax is total, and nothing is negative."""
        lines = round2(sum((li.total for li in self.line_items), Decimal("0")))
        return (
            lines == self.subtotal
            and round2(self.subtotal + self.tax) == self.total
            and all(v >= 0 for v in (self.subtotal, self.trip_fee, self.tax, self.total))
        )
