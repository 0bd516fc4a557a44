import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError

from estimator.errors import ModelOutputError
from estimator.llm import ModelClient
from estimator.models import (
    CatalogEntry,
    ConfigSnapshot,
    EstimateSkeleton,
    ExtractedItem,
    ExtractionOutput,
    Job,
)

logger = logging.getLogger(__name__)

STAGE_EXTRACT = "extraction"
STAGE_MAP = "mapping"

NO_ITEMS_SUMMARY = "No actionable repair items were found in the provided documents."

# ---------------- Output contracts ----------------
# Neither schema has a price or tax field: the model is never asked for money.
EXTRACTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["items"],
    "properties": {
        "items": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["phrase", "qty", "note"],
                "properties": {
                    "phrase": {"type": "string"},
                    "qty": {"type": ["number", "null"]},
                    "note": {"type": ["string", "null"]},
                },
            },
        },
    },
}

MAPPING_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["summary", "line_items", "assumptions", "unmapped"],
    "properties": {
        "summary": {"type": "string"},
        "line_items": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["code", "description", "qty"],
                "properties": {
                    "code": {"type": "string"},
                    "description": {"type": "string"},
                    "qty": {"type": ["number", "null"]},
                },
            },
        },
        "assumptions": {"type": "array", "items": {"type": "string"}},
        "unmapped": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["item", "reason"],
                "properties": {
                    "item": {"type": "string"},
                    "reason": {"type": "string"},
                },
            },
        },
    },
}

# ---------------- Prompts ----------------
NEGATIVE_EXAMPLES = """
NEVER EXTRACT these meta-instructions:
- "Seller to repair all items outlined in attached Inspection Report"
- "Buyer to complete all inspection recommendations"
- "Repair per inspector's recommendations"
- "All noted defects to be corrected"
- "Repair/Replacement to be made on the following items"
"""

EXTRACTION_SYSTEM = f"""You are a repair estimator's assistant reading home inspection documents
(BINSR repair requests and full inspection reports).

Extract every specific, actionable repair task a contractor could quote.
Skip standards-of-practice text, limitations, disclaimers and educational content.

{NEGATIVE_EXAMPLES}
For each task give:
- "phrase": the repair in plain words, close to the source wording
- "qty": a count only if the document states one, else null
- "note": location or other detail worth keeping, else null

Never attach prices, costs, or tax to anything.
"""

MAPPING_SYSTEM = """You map extracted home-repair items onto a contractor's price catalog.

Rules:
- Use ONLY codes that appear in the CATALOG given below. Never invent a code.
- One line item per repair; reuse a code with the correct qty rather than repeating it.
- If no catalog code fits an item, list it under "unmapped" with a short reason.
- Never supply prices, unit prices, totals, or tax. Pricing is done elsewhere.
- "summary" is two or three sentences for the homeowner.
- "assumptions" lists anything you assumed about scope or quantity.
"""

_FENCE_OPEN = re.compile(r"^```[\w-]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")

M = TypeVar("M", bound=BaseModel)


def parse_model_json(raw: Optional[str], model: Type[M], stage: str) -> M:
    """
    Markdown code fences are tolerated. Anything else that is not one JSON
    object of the expected shape is an error; nothing is repaired or guessed.
    """
    if raw is None or not str(raw).strip():
        raise ModelOutputError("model response missing output", stage=stage)
    s = str(raw).strip()
    if s.startswith("```"):
        s = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", s))
    try:
        data = json.loads(s)
    except json.JSONDecodeError as e:
        raise ModelOutputError(f"Failed to parse model JSON output: {e}", stage=stage) from e
    if not isinstance(data, dict):
        raise ModelOutputError(f"expected a JSON object, got {type(data).__name__}", stage=stage)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()[:5]
        )
        raise ModelOutputError(f"output does not match schema ({problems})", stage=stage) from e


# ---------------- Shortlisting ----------------
def best_alias_code(phrase: str, alias_by_phrase: Dict[str, str]) -> Optional[str]:
    text = (phrase or "").lower()
    best: Optional[str] = None
    best_len = 0
    for alias, code in alias_by_phrase.items():
        if alias and len(alias) > best_len and alias in text:
            best, best_len = code, len(alias)
    return best


def shortlist_catalog(
    items: Sequence[ExtractedItem],
    snapshot: ConfigSnapshot,
    limit: int = 600,
) -> List[CatalogEntry]:
    """
    Catalog entries the mapping call is allowed to see: one candidate per
    item from its longest matching alias, falling back to the head of the
    full catalog when no alias matches at all.
    """
    codes: List[str] = []
    for item in items:
        code = best_alias_code(item.phrase, snapshot.alias_by_phrase)
        if code and code in snapshot.catalog_by_code and code not in codes:
            codes.append(code)
    if not codes:
        return list(snapshot.catalog[:limit])
    return [snapshot.catalog_by_code[c] for c in codes[:limit]]


def render_rules(snapshot: ConfigSnapshot, skip_keys: Sequence[str] = ()) -> str:
    skip = {k.lower() for k in skip_keys}
    lines = [f"- {r.rule_text.strip()}" for r in snapshot.rules if r.rule_key.strip().lower() not in skip and r.rule_text.strip()]
    return "\n".join(lines) if lines else "- (none)"


# ---------------- Orchestration ----------------
class EstimateOrchestrator:
    def __init__(
        self,
        client: ModelClient,
        timeout_seconds: float = 120.0,
        shortlist_limit: int = 600,
        skip_rule_keys: Sequence[str] = ("tax_rate",),
    ):
        self.client = client
        self.timeout = timeout_seconds
        self.shortlist_limit = shortlist_limit
        self.skip_rule_keys = tuple(skip_rule_keys)

    def extract_items(self, job: Job, text: str) -> tuple:
        locality = " ".join(p.strip() for p in (job.city, job.zip) if p and p.strip())
        prop = ", ".join(p for p in ((job.property_address or "").strip(), locality) if p)
        prompt = f"""Customer:
- Name: {job.name or ""}
- Email: {job.email or ""}
- Phone: {job.phone or ""}
- Property: {prop}
- Notes: {job.notes or ""}

DOCUMENT TEXT:
{text}
"""
        raw = self.client.complete_json(
            stage=STAGE_EXTRACT,
            system=EXTRACTION_SYSTEM,
            prompt=prompt,
            schema=EXTRACTION_SCHEMA,
            timeout=self.timeout,
        )
        parsed = parse_model_json(raw, ExtractionOutput, STAGE_EXTRACT)
        items = [i for i in parsed.items if i.phrase.strip()]
        logger.info("orchestrator[%s]: extracted %s items", job.id, len(items))
        return items, raw

    def map_items(self, job: Job, items: Sequence[ExtractedItem], snapshot: ConfigSnapshot) -> tuple:
        shortlist = shortlist_catalog(items, snapshot, self.shortlist_limit)
        catalog_payload = [
            {"code": c.code, "name": c.name, "unit": c.unit, "min_qty": float(c.min_qty) if c.min_qty is not None else None, "notes": c.notes}
            for c in shortlist
        ]
        items_payload = [{"index": i, **it.model_dump()} for i, it in enumerate(items)]
        prompt = f"""BUSINESS RULES:
{render_rules(snapshot, self.skip_rule_keys)}

CATALOG ({len(catalog_payload)} entries, the only codes you may use):
{json.dumps(catalog_payload, ensure_ascii=False)}

EXTRACTED ITEMS:
{json.dumps(items_payload, ensure_ascii=False)}
"""
        raw = self.client.complete_json(
            stage=STAGE_MAP,
            system=MAPPING_SYSTEM,
            prompt=prompt,
            schema=MAPPING_SCHEMA,
            timeout=self.timeout,
        )
        skeleton = parse_model_json(raw, EstimateSkeleton, STAGE_MAP)
        logger.info(
            "orchestrator[%s]: mapped %s line items, %s unmapped, shortlist=%s",
            job.id, len(skeleton.line_items), len(skeleton.unmapped), len(shortlist),
        )
        return skeleton, raw, [c.code for c in shortlist]

    def empty_skeleton(self) -> EstimateSkeleton:
        return EstimateSkeleton(summary=NO_ITEMS_SUMMARY, line_items=[])
