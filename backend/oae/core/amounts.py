from decimal import Decimal, InvalidOperation
from typing import Optional

from oae.core.errors import InvalidInput


def to_amount(value, field: str = "amount", allow_none: bool = False) -> Optional[Decimal]:
    """Parse a user-supplied amount into a Decimal; floats go through str()."""
    if value is None or value == "":
        if allow_none:
            return None
        raise InvalidInput(f"{field} is required")
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise InvalidInput(f"{field} is not a number") from e
    if not amount.is_finite() or amount < 0:
        raise InvalidInput(f"{field} must be a non-negative number")
    return amount
