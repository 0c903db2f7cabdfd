import datetime
import uuid
from decimal import ROUND_HALF_UP, Decimal

MONEY_QUANT = Decimal("0.01")


def to_decimal(value):
    """Coerce form/JSON input to Decimal; blanks count as zero and floats go through str."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value) if isinstance(value, float) else value)


def to_money(value):
    return to_decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def to_json_compatible(value):
    """Recursively convert ids, amounts and timestamps for storage in a JSONField."""
    if isinstance(value, dict):
        return {key: to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_compatible(item) for item in value]
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    return value
