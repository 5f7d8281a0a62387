from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union


def _group_indian(whole: str) -> str:
    # Indian numbering: last three digits, then pairs (1,00,000)
    if len(whole) <= 3:
        return whole
    head, tail = whole[:-3], whole[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return ",".join(groups + [tail])


def format_inr(amount: Union[Decimal, int, float, str], symbol: bool = True) -> str:
    """Format an amount as INR with Indian digit grouping and at most two decimals."""
    prefix = "₹" if symbol else ""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        return f"{prefix}0"
    if not value.is_finite():
        return f"{prefix}0"

    value = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    value = abs(value)
    whole, _, fraction = f"{value:f}".partition(".")
    fraction = fraction.rstrip("0")
    text = _group_indian(whole) + (f".{fraction}" if fraction else "")
    return f"{sign}{prefix}{text}"
