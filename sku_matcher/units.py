"""Unit conversion between vendor units and stock units."""

from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Tuple

from core.errors import ValidationError
from sku_matcher.models import UnitConversion
from sku_matcher.normalize import normalize_unit


# Physical measures. Pack sizes (CASE, BOX) vary by vendor and are not listed.
DEFAULT_CONVERSIONS: Dict[Tuple[str, str], Decimal] = {
    ("GAL", "L"): Decimal("3.78541"),
    ("L", "GAL"): Decimal("0.264172"),
    ("QT", "L"): Decimal("0.946353"),
    ("DOZEN", "EA"): Decimal("12"),
    ("LB", "KG"): Decimal("0.453592"),
    ("KG", "LB"): Decimal("2.20462"),
    ("OZ", "G"): Decimal("28.3495"),
}

QTY_PLACES = Decimal("0.0001")
PRICE_PLACES = Decimal("0.0001")

# Relative difference tolerated against a known factor
FACTOR_TOLERANCE = Decimal("0.001")


class UnitConverter:
    """Checks and applies alias unit conversions.

    Example:
        converter = UnitConverter()
        converter.factor("gallon", "l")  # Decimal("3.78541")
        conversion = converter.validate(UnitConversion(multiplier=12, from_unit="cs", to_unit="each"))
    """

    def __init__(self, conversions: Optional[Dict[Tuple[str, str], Decimal]] = None):
        self._conversions = dict(DEFAULT_CONVERSIONS)
        if conversions:
            self._conversions.update(conversions)

    def factor(self, from_unit: str, to_unit: str) -> Optional[Decimal]:
        """Get the multiplier between two units, or None if unknown."""
        src = normalize_unit(from_unit)
        dst = normalize_unit(to_unit)
        if src == dst:
            return Decimal("1")
        return self._conversions.get((src, dst))

    def validate(self, conversion: UnitConversion) -> UnitConversion:
        """Normalize an alias conversion's units and check its multiplier.

        A multiplier between units with a known factor must agree with it;
        any other pair (a pack size) is accepted as given.

        Raises:
            ValidationError: If the multiplier contradicts a known factor
        """
        src = normalize_unit(conversion.from_unit)
        dst = normalize_unit(conversion.to_unit)
        expected = self.factor(src, dst)
        if expected is not None and abs(conversion.multiplier - expected) > expected * FACTOR_TOLERANCE:
            raise ValidationError(
                f"Conversion {src} -> {dst} must use multiplier {expected}, got {conversion.multiplier}"
            )
        return UnitConversion(multiplier=conversion.multiplier, from_unit=src, to_unit=dst)

    @staticmethod
    def apply_alias_conversion(
        qty: Decimal,
        unit_price: Decimal,
        conversion: UnitConversion,
    ) -> Tuple[Decimal, Decimal, str]:
        """Apply an alias conversion to a line.

        The quantity is multiplied and the unit price divided, so the
        extended price of the line is preserved.

        Returns:
            Tuple of (quantity, unit_price, unit) in stock units
        """
        multiplier = conversion.multiplier
        new_qty = (qty * multiplier).quantize(QTY_PLACES, rounding=ROUND_HALF_UP)
        new_price = (unit_price / multiplier).quantize(PRICE_PLACES, rounding=ROUND_HALF_UP)
        return new_qty, new_price, normalize_unit(conversion.to_unit)
