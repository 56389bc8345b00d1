"""Package size parsing. "12 oz", "12OZ" and "12 Oz." all normalize to the same quantity."""

import re
from dataclasses import dataclass

# unit alias -> (family, factor to the family's base unit)
UNITS: dict[str, tuple[str, float]] = {
    "mg": ("mass", 0.001),
    "g": ("mass", 1.0),
    "gr": ("mass", 1.0),
    "gram": ("mass", 1.0),
    "grams": ("mass", 1.0),
    "kg": ("mass", 1000.0),
    "oz": ("mass", 28.3495),
    "ounce": ("mass", 28.3495),
    "ounces": ("mass", 28.3495),
    "lb": ("mass", 453.592),
    "lbs": ("mass", 453.592),
    "pound": ("mass", 453.592),
    "pounds": ("mass", 453.592),
    "ml": ("volume", 1.0),
    "cl": ("volume", 10.0),
    "l": ("volume", 1000.0),
    "lt": ("volume", 1000.0),
    "liter": ("volume", 1000.0),
    "litre": ("volume", 1000.0),
    "floz": ("volume", 29.5735),
    "gal": ("volume", 3785.41),
    "ct": ("count", 1.0),
    "count": ("count", 1.0),
    "pk": ("count", 1.0),
    "pack": ("count", 1.0),
    "pcs": ("count", 1.0),
}

_QUANTITY = re.compile(r"(\d+(?:[.,]\d+)?)\s*(fl\.?\s*oz|[a-z]+)?", re.IGNORECASE)


@dataclass(frozen=True)
class Quantity:
    value: float
    family: str | None = None
    base_value: float | None = None


def parse_size(text: str | None) -> Quantity | None:
    """First number in the text, with its unit when one is recognized."""
    if not text:
        return None
    match = _QUANTITY.search(text)
    if not match:
        return None

    value = float(match.group(1).replace(",", "."))
    raw_unit = (match.group(2) or "").lower()
    unit = re.sub(r"[\s.]", "", raw_unit)
    if unit in UNITS:
        family, factor = UNITS[unit]
        return Quantity(value=value, family=family, base_value=value * factor)
    return Quantity(value=value)


def normalize_size(text: str | None) -> str:
    """Comparable text form: lower case, no spaces or dots."""
    return re.sub(r"[\s.]", "", (text or "").lower())


def size_similarity(extracted: str, catalog: str | None) -> tuple[float, str | None]:
    """
    Similarity in [0, 1] and the reason it passed, if any.

    Same-family quantities compare in base units, otherwise the bare numbers
    compare. Sizes within 20% of each other map linearly onto 1.0..0.0.
    Without parseable numbers, text containment scores 0.65.
    """
    if not catalog:
        return 0.0, None

    left, right = parse_size(extracted), parse_size(catalog)
    if left is not None and right is not None:
        if left.family and left.family == right.family:
            a, b = left.base_value, right.base_value
        else:
            a, b = left.value, right.value
        largest = max(a, b)
        if largest == 0:
            similarity = 1.0 if a == b else 0.0
        else:
            similarity = max(0.0, 1.0 - (abs(a - b) / largest) * 5)
        if similarity > 0.5:
            return similarity, f"Size match: {extracted} ≈ {catalog}"
        return similarity, None

    x, y = normalize_size(extracted), normalize_size(catalog)
    if x and y and (x in y or y in x):
        return 0.65, "Size text match"
    return 0.0, None
