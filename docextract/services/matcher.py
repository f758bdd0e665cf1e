"""
Field matching — reconcile user-requested field names with the names the
analysis service chose for what it found.

Pure functions, no I/O. Five tiers, first hit wins:

1. exact            "InvoiceTotal"  == "InvoiceTotal"
2. case-insensitive "InvoiceTotal"  ~  "invoicetotal"
3. substring        "Total"         in "InvoiceTotal"   (either direction)
4. normalized       "CustomerName"  ~  "Customer Name"  (non-alphanumerics stripped, either direction)
5. fuzzy-prefix     "DueDate"       ~  "Date"           (leading domain prefix stripped, then equal)

Tiers 3–5 scan service keys in the order the service returned them.
"""

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

FUZZY_PREFIXES = ("Invoice", "Customer", "Vendor", "Billing", "Shipping", "Total", "Amount", "Due")

_PREFIX_RE = re.compile(rf"^({'|'.join(FUZZY_PREFIXES)})", re.IGNORECASE)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


class MatchTier(str, enum.Enum):
    EXACT = "exact"
    CASE_INSENSITIVE = "case-insensitive"
    SUBSTRING = "substring"
    NORMALIZED = "normalized"
    FUZZY_PREFIX = "fuzzy-prefix"


@dataclass
class FieldMatch:
    requested_name: str
    matched_name: str
    tier: MatchTier
    data: dict[str, Any]


@dataclass
class ExtractedField:
    """Projection of one service field onto one requested field."""

    requested_name: str
    matched_name: Optional[str] = None
    tier: Optional[MatchTier] = None
    value: Optional[str] = None
    confidence: Optional[float] = None
    page_number: Optional[int] = None
    bounding_box: Optional[list[float]] = field(default=None)

    @property
    def matched(self) -> bool:
        return self.matched_name is not None

    @property
    def found(self) -> bool:
        """Matched a service field AND that field carried a value."""
        return self.matched and self.value is not None

    @property
    def has_location(self) -> bool:
        return bool(self.page_number) and bool(self.bounding_box)


def normalize_name(name: str) -> str:
    return _NON_ALNUM_RE.sub("", name.lower())


def strip_prefix(name: str) -> str:
    return _PREFIX_RE.sub("", name, count=1)


def _contains_either_way(a: str, b: str) -> bool:
    return a in b or b in a


def match_field(requested: str, fields: dict[str, Any]) -> Optional[FieldMatch]:
    """Find the service field that best corresponds to `requested`, or None."""
    if requested in fields:
        return FieldMatch(requested, requested, MatchTier.EXACT, fields[requested])

    lowered = requested.lower()
    keys = list(fields)

    for key in keys:
        if key.lower() == lowered:
            return FieldMatch(requested, key, MatchTier.CASE_INSENSITIVE, fields[key])

    for key in keys:
        if _contains_either_way(key.lower(), lowered):
            return FieldMatch(requested, key, MatchTier.SUBSTRING, fields[key])

    normalized = normalize_name(requested)
    for key in keys:
        if _contains_either_way(normalize_name(key), normalized):
            return FieldMatch(requested, key, MatchTier.NORMALIZED, fields[key])

    remainder = strip_prefix(requested).lower()
    for key in keys:
        if strip_prefix(key).lower() == remainder:
            return FieldMatch(requested, key, MatchTier.FUZZY_PREFIX, fields[key])

    return None


def _stringify_number(number: Any) -> str:
    # 1234.0 renders as "1234", matching how the service prints integral amounts
    if isinstance(number, float) and number.is_integer():
        return str(int(number))
    return str(number)


def _pick_value(data: dict[str, Any]) -> Optional[str]:
    if data.get("content"):
        return str(data["content"])
    if data.get("valueString"):
        return str(data["valueString"])
    if data.get("valueNumber") is not None:
        return _stringify_number(data["valueNumber"])
    if data.get("value"):
        return str(data["value"])
    return None


def _first_region(data: dict[str, Any]) -> tuple[Optional[int], Optional[list[float]]]:
    regions = data.get("boundingRegions") or []
    if not regions:
        return None, None
    first = regions[0]
    # Older API versions call the polygon "boundingBox"
    return first.get("pageNumber"), first.get("polygon") or first.get("boundingBox")


def extract_value(match: FieldMatch) -> ExtractedField:
    data = match.data or {}
    page_number, bounding_box = _first_region(data)
    confidence = data.get("confidence")
    return ExtractedField(
        requested_name=match.requested_name,
        matched_name=match.matched_name,
        tier=match.tier,
        value=_pick_value(data),
        confidence=float(confidence) if confidence is not None else None,
        page_number=page_number,
        bounding_box=bounding_box,
    )


def resolve_field(requested: str, fields: dict[str, Any]) -> ExtractedField:
    """Match and project in one step. Unmatched fields come back empty."""
    match = match_field(requested, fields)
    if match is None:
        logger.debug("Field %r: no match among %d service fields", requested, len(fields))
        return ExtractedField(requested_name=requested)

    result = extract_value(match)
    if match.tier is not MatchTier.EXACT:
        logger.debug("Field %r matched %r via %s", requested, match.matched_name, match.tier.value)
    return result
