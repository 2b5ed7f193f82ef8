import re
from decimal import Decimal, InvalidOperation
from typing import Union

CENT = Decimal("0.01")
_GROUPED_THOUSANDS = re.compile(r"\d{1,3}(\.\d{3})+")


def to_cents(value: Union[Decimal, int, str]) -> int:
    """Convert a major-unit amount into integer cents.

    Rejects values that are not finite or carry more than two fractional
    digits. The sign is preserved; callers decide whether it is allowed.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Amount must be finite")
    if amount != amount.quantize(CENT):
        raise ValueError("Amount cannot have more than two decimal places")
    return int((amount * 100).to_integral_value())


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def parse_amount(value: str) -> int:
    """Parse typed rupiah amounts such as ``Rp 25.000`` or ``1.234,56``."""
    clean = value.strip().replace("Rp", "").replace(" ", "").replace("_", "")
    if "," in clean:
        clean = clean.replace(".", "").replace(",", ".")
    elif _GROUPED_THOUSANDS.fullmatch(clean):
        clean = clean.replace(".", "")
    return to_cents(clean)
