"""
Proportional distribution of a disbursed amount across weighted lines.

Each line's share is ``total * weight / sum(weights)``, truncated to the
currency minor unit (1 rupiah). The rounding remainder goes entirely to
the largest-weight line (the first one on ties), so the shares always
add up to ``total`` exactly.

Usage:
    from npd_tracker.services.distribution import distribute

    distribute(100, [1, 2])   # [Decimal('33'), Decimal('67')]
"""

from decimal import ROUND_DOWN, Decimal, InvalidOperation

from npd_tracker.core.exceptions import ValidationError

MINOR_UNIT = Decimal("1")


def _to_decimal(value, field: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", details={field: repr(value)})
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", details={field: repr(value)}) from None
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite", details={field: repr(value)})
    return result


def distribute(total, weights) -> list[Decimal]:
    """
    Allocate ``total`` across ``weights`` proportionally.

    Args:
        total: Amount to distribute (non-negative).
        weights: Ordered per-line weights (non-negative), e.g. line ``jumlah``.

    Returns:
        One Decimal share per weight, in input order. If every weight is
        zero, every share is zero.

    Raises:
        ValidationError: negative total or weight, or a non-numeric value.
    """
    total_d = _to_decimal(total, "total")
    if total_d < 0:
        raise ValidationError("Total distribusi tidak boleh negatif", details={"total": str(total_d)})

    weights_d = [_to_decimal(w, f"weights[{i}]") for i, w in enumerate(weights)]
    negative = [i for i, w in enumerate(weights_d) if w < 0]
    if negative:
        raise ValidationError(
            "Bobot distribusi tidak boleh negatif",
            details={"negative_indexes": negative},
        )
    if not weights_d:
        return []

    weight_sum = sum(weights_d, Decimal("0"))
    if weight_sum == 0:
        return [Decimal("0") for _ in weights_d]

    shares = [
        (total_d * w / weight_sum).quantize(MINOR_UNIT, rounding=ROUND_DOWN)
        for w in weights_d
    ]

    remainder = total_d - sum(shares, Decimal("0"))
    if remainder:
        largest = max(range(len(weights_d)), key=lambda i: (weights_d[i], -i))
        shares[largest] += remainder
    return shares
