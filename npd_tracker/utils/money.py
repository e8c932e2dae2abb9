"""Rupiah amount parsing and formatting helpers."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from npd_tracker.core.exceptions import ValidationError


def parse_amount(value, field: str, *, required: bool = True, allow_zero: bool = True) -> Decimal | None:
    """
    Coerce a JSON/CSV value to a non-negative Decimal.

    Accepts numbers and numeric strings ("1500000", "1500000.50").
    Raises ValidationError naming ``field`` on anything else.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} wajib diisi", details={field: "required"})
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} harus berupa angka", details={field: "not a number"})
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} harus berupa angka", details={field: "not a number"}) from None
    if not amount.is_finite():
        raise ValidationError(f"{field} harus berupa angka", details={field: "not a number"})
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f"{field} harus lebih besar dari 0" if not allow_zero
                              else f"{field} tidak boleh negatif",
                              details={field: "out of range"})
    return amount


def group_thousands(amount, separator: str = ".") -> str:
    """1234567 → '1.234.567' (rounded to whole rupiah)."""
    value = Decimal(str(amount or 0)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    return sign + f"{abs(int(value)):,}".replace(",", separator)


def format_rupiah(amount) -> str:
    return f"Rp {group_thousands(amount)}"
