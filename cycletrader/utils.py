from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Convert exchange payload values (str/int/float/Decimal) to ``Decimal``.

    Floats go through ``str`` so ``0.1`` stays ``Decimal("0.1")``. Empty or
    unparsable values return ``default``.
    """
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return default
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return default
    if not result.is_finite():
        return default
    return result


def format_decimal(value: Decimal, precision: int = 8) -> str:
    quantized = value.quantize(Decimal(1).scaleb(-precision)) if precision > 0 else value.quantize(Decimal(1))
    text = f"{quantized:f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def step_precision(step: Optional[Decimal]) -> int:
    if not step or step <= 0:
        return 8
    exponent = step.normalize().as_tuple().exponent
    return max(-int(exponent), 0)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def file_stamp(ts: datetime) -> str:
    """ISO timestamp safe for file names (colons replaced)."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S.%fZ")


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc).isoformat()
    return value.isoformat()


def decimal_to_json(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return f"{value.normalize():f}"
