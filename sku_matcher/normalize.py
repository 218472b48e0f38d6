"""Line Normalization Utilities.

This module canonicalizes raw OCR line text into comparable forms:
1. Vendor SKUs are uppercased and stripped of separators
2. Descriptions are uppercased with punctuation collapsed
3. Units are mapped onto a fixed set of canonical units
4. Quantities and prices are parsed into Decimals, failing closed

Every function here is pure and idempotent: feeding its output back in
returns the same value.

Examples:
    " abc 123 " → "ABC123"
    "abc--123/" → "ABC-123"
    "each"      → "EA"
    "1,200"     → Decimal("1200")
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Set, Tuple

from sku_matcher.models import NormalizedLine


MAX_QUANTITY = Decimal("1000000")

FLAG_QTY_PARSE_FAILED = "qty_parse_failed"
FLAG_QTY_OUT_OF_RANGE = "qty_out_of_range"
FLAG_PRICE_PARSE_FAILED = "price_parse_failed"
FLAG_EMPTY_SKU = "empty_sku"

# Synonym table: canonical unit -> accepted spellings
UNIT_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "EA": ("EA", "EACH", "PC", "PCS", "PIECE", "PIECES", "UNIT", "UNITS", "CT", "COUNT"),
    "CASE": ("CASE", "CASES", "CS", "CSE"),
    "BOX": ("BOX", "BOXES", "BX"),
    "DOZEN": ("DOZEN", "DOZ", "DZ"),
    "PACK": ("PACK", "PACKS", "PK", "PKG"),
    "LB": ("LB", "LBS", "POUND", "POUNDS"),
    "KG": ("KG", "KGS", "KILO", "KILOS", "KILOGRAM", "KILOGRAMS"),
    "G": ("G", "GR", "GRAM", "GRAMS"),
    "OZ": ("OZ", "OUNCE", "OUNCES"),
    "GAL": ("GAL", "GALLON", "GALLONS"),
    "L": ("L", "LT", "LTR", "LITER", "LITERS", "LITRE", "LITRES"),
    "ML": ("ML", "MILLILITER", "MILLILITERS"),
    "QT": ("QT", "QUART", "QUARTS"),
}

_UNIT_LOOKUP: Dict[str, str] = {
    spelling: canonical
    for canonical, spellings in UNIT_SYNONYMS.items()
    for spelling in spellings
}

DEFAULT_UNIT = "EA"

# Noise words dropped when tokenizing descriptions
NOISE_WORDS: Set[str] = {"THE", "AND", "OF", "FOR", "A", "AN", "WITH", "W"}


def normalize_sku(raw: Optional[str]) -> str:
    """Normalize a vendor SKU for alias and catalog lookup.

    Uppercases, keeps letters, digits and internal hyphens, and drops
    every other separator.

    Examples:
        >>> normalize_sku(" abc-123 ")
        'ABC-123'
        >>> normalize_sku("abc 123")
        'ABC123'
        >>> normalize_sku("--ab//c--1--")
        'ABC-1'
    """
    if not raw:
        return ""

    text = raw.strip().upper()
    text = re.sub(r"[^A-Z0-9-]", "", text)
    text = re.sub(r"-{2,}", "-", text)
    return text.strip("-")


def normalize_description(raw: Optional[str]) -> str:
    """Normalize a line description for fuzzy matching.

    Examples:
        >>> normalize_description("Widget, blue (large)")
        'WIDGET BLUE LARGE'
    """
    if not raw:
        return ""

    text = raw.upper()
    text = re.sub(r"[^A-Z0-9%./\- ]", " ", text)
    text = re.sub(r"(?<![0-9])[./]|[./](?![0-9])", " ", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def normalize_unit(raw: Optional[str]) -> str:
    """Map a unit onto its canonical spelling.

    Unrecognized units pass through trimmed and uppercased; an empty unit
    is treated as each.
    """
    if raw is None:
        return DEFAULT_UNIT

    text = raw.strip().upper()
    if not text:
        return DEFAULT_UNIT

    key = text.rstrip(".")
    return _UNIT_LOOKUP.get(key, text)


def _clean_number(raw: str) -> str:
    text = raw.strip()
    for char in (",", " ", "$", "€", "£"):
        text = text.replace(char, "")
    return text


def parse_decimal(raw) -> Optional[Decimal]:
    """Parse a numeric string or number. Returns None when it can't be parsed."""
    if raw is None:
        return None
    if isinstance(raw, Decimal):
        value = raw
    elif isinstance(raw, (int, float)):
        value = Decimal(str(raw))
    else:
        text = _clean_number(str(raw))
        if not text:
            return None
        try:
            value = Decimal(text)
        except InvalidOperation:
            return None
    if not value.is_finite():
        return None
    return value


def parse_quantity(raw) -> Tuple[Decimal, List[str]]:
    """Parse a quantity, failing closed.

    Returns:
        Tuple of (quantity, flags). Invalid, negative or out-of-range
        input yields quantity 0 and a flag instead of raising.
    """
    value = parse_decimal(raw)
    if value is None or value < 0:
        return Decimal("0"), [FLAG_QTY_PARSE_FAILED]
    if value > MAX_QUANTITY:
        return Decimal("0"), [FLAG_QTY_OUT_OF_RANGE]
    return value, []


def parse_money(raw) -> Tuple[Decimal, List[str]]:
    """Parse a price, failing closed to 0 with a flag."""
    value = parse_decimal(raw)
    if value is None or value < 0:
        return Decimal("0"), [FLAG_PRICE_PARSE_FAILED]
    return value, []


def normalize_line(
    raw_sku: Optional[str],
    raw_description: Optional[str],
    raw_qty,
    raw_unit: Optional[str],
) -> NormalizedLine:
    """Normalize one raw line into a NormalizedLine.

    Never raises for bad input; failures are reported through flags so the
    line can still be surfaced for manual handling.
    """
    quantity, flags = parse_quantity(raw_qty)
    vendor_sku = normalize_sku(raw_sku)
    if not vendor_sku:
        flags = flags + [FLAG_EMPTY_SKU]

    return NormalizedLine(
        vendor_sku=vendor_sku,
        description=normalize_description(raw_description),
        quantity=quantity,
        unit=normalize_unit(raw_unit),
        flags=flags,
    )


def tokenize(text: str) -> List[str]:
    """Tokenize a normalized description into significant unique tokens.

    Examples:
        >>> tokenize("BLUE WIDGET WITH CAP")
        ['BLUE', 'WIDGET', 'CAP']
    """
    if not text:
        return []

    seen = set()
    result = []
    for token in text.upper().split():
        if token in NOISE_WORDS or len(token) < 2:
            continue
        if token not in seen:
            seen.add(token)
            result.append(token)
    return result


def token_similarity(tokens1: List[str], tokens2: List[str]) -> float:
    """Jaccard similarity with partial credit for prefix/substring tokens.

    Returns:
        Similarity score from 0.0 to 1.0
    """
    if not tokens1 or not tokens2:
        return 0.0

    set1 = set(tokens1)
    set2 = set(tokens2)
    intersection = set1 & set2
    union = set1 | set2

    partial = 0.0
    for t1 in set1 - intersection:
        for t2 in set2 - intersection:
            if len(t1) >= 3 and len(t2) >= 3 and (t1 in t2 or t2 in t1):
                partial += 0.5
                break

    return min(1.0, (len(intersection) + partial) / len(union))


def levenshtein_distance(s1: str, s2: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)."""
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    if not s2:
        return len(s1)

    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (c1 != c2),
            ))
        previous = current
    return previous[-1]


def string_similarity(s1: str, s2: str) -> float:
    """Normalized edit-distance similarity from 0.0 to 1.0."""
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    longest = max(len(s1), len(s2))
    return 1.0 - levenshtein_distance(s1, s2) / longest


def text_similarity(description: str, product_name: str) -> float:
    """Combined description/product-name similarity used by the fuzzy tier."""
    desc = normalize_description(description)
    name = normalize_description(product_name)
    if not desc or not name:
        return 0.0
    return max(
        token_similarity(tokenize(desc), tokenize(name)),
        string_similarity(desc, name),
    )
