"""
Typed JSON payloads stored alongside orders and positions.

Conditional orders carry two payloads whose shape depends on a discriminant:
the trigger condition (keyed by trigger_type) and the action to execute.
Positions carry AI-declared exit conditions, a loose bag of optional fields.

Everything crossing the store boundary goes through the encode_*/decode_*
functions here. Decoders raise PayloadError on malformed input so callers can
skip the single record and keep their batch going.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from .exceptions import PayloadError
from .models import to_naive_utc


@dataclass(frozen=True)
class PriceCondition:
    """Fires when price crosses a level (direction comes from trigger_type)."""
    price: float


@dataclass(frozen=True)
class TimeCondition:
    """Fires once the clock reaches trigger_at (naive UTC)."""
    trigger_at: datetime


@dataclass(frozen=True)
class IndicatorCondition:
    indicator: str
    operator: str  # above, below, crosses_above, crosses_below
    value: float


TriggerCondition = Union[PriceCondition, TimeCondition, IndicatorCondition]

# trigger_type -> condition class
CONDITION_TYPES = {
    "price_above": PriceCondition,
    "price_below": PriceCondition,
    "time": TimeCondition,
    "indicator": IndicatorCondition,
}

INDICATOR_OPERATORS = ("above", "below", "crosses_above", "crosses_below")


@dataclass(frozen=True)
class OrderAction:
    """What to do when a conditional order fires."""
    type: str  # "buy" or "sell"
    shares: Optional[float] = None
    pct: Optional[float] = None
    limit_price: Optional[float] = None


@dataclass(frozen=True)
class AiExitConditions:
    """Exit conditions proposed by the decision model for a position."""
    max_hold_days: Optional[float] = None
    price_target: Optional[float] = None
    stop_on_reversal: Optional[bool] = None


def _load_object(raw: Optional[str], what: str) -> dict:
    if raw is None or raw == "":
        raise PayloadError(f"{what} payload is empty")
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise PayloadError(f"{what} payload is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise PayloadError(f"{what} payload must be a JSON object, got {type(data).__name__}")
    return data


def _number(data: dict, key: str, what: str, required: bool = True) -> Optional[float]:
    value = data.get(key)
    if value is None:
        if required:
            raise PayloadError(f"{what} payload is missing '{key}'")
        return None
    # bool is an int subclass, reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PayloadError(f"{what} payload field '{key}' must be a number, got {value!r}")
    return float(value)


def _pick(data: dict, *keys):
    """First present key wins (snake_case preferred over the camelCase the model sometimes emits)."""
    for key in keys:
        if data.get(key) is not None:
            return key
    return keys[0]


# ── Trigger conditions ───────────────────────────────────────────────


def decode_trigger_condition(trigger_type: str, raw: Optional[str]) -> TriggerCondition:
    """Decode a stored trigger condition according to its trigger_type."""
    if trigger_type not in CONDITION_TYPES:
        raise PayloadError(f"Unknown trigger type '{trigger_type}'")

    data = _load_object(raw, "Trigger condition")

    if trigger_type in ("price_above", "price_below"):
        return PriceCondition(price=_number(data, "price", "Trigger condition"))

    if trigger_type == "time":
        key = _pick(data, "trigger_at", "triggerAt")
        value = data.get(key)
        if not isinstance(value, str):
            raise PayloadError(f"Time condition needs an ISO timestamp in '{key}', got {value!r}")
        try:
            trigger_at = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise PayloadError(f"Time condition has invalid timestamp {value!r}") from e
        return TimeCondition(trigger_at=to_naive_utc(trigger_at))

    indicator = data.get("indicator")
    operator = data.get("operator")
    if not isinstance(indicator, str) or not indicator:
        raise PayloadError("Indicator condition is missing 'indicator'")
    if operator not in INDICATOR_OPERATORS:
        raise PayloadError(f"Indicator condition has invalid operator {operator!r}")
    return IndicatorCondition(
        indicator=indicator,
        operator=operator,
        value=_number(data, "value", "Indicator condition"),
    )


def encode_trigger_condition(trigger_type: str, condition: TriggerCondition) -> str:
    """Encode a trigger condition, checking it matches trigger_type."""
    expected = CONDITION_TYPES.get(trigger_type)
    if expected is None:
        raise PayloadError(f"Unknown trigger type '{trigger_type}'")
    if not isinstance(condition, expected):
        raise PayloadError(
            f"Trigger type '{trigger_type}' needs a {expected.__name__}, got {type(condition).__name__}"
        )

    if isinstance(condition, PriceCondition):
        return json.dumps({"price": condition.price})
    if isinstance(condition, TimeCondition):
        return json.dumps({"trigger_at": to_naive_utc(condition.trigger_at).isoformat()})
    return json.dumps({
        "indicator": condition.indicator,
        "operator": condition.operator,
        "value": condition.value,
    })


# ── Actions ──────────────────────────────────────────────────────────


def decode_action(raw: Optional[str]) -> OrderAction:
    data = _load_object(raw, "Action")
    action_type = data.get("type")
    if action_type not in ("buy", "sell"):
        raise PayloadError(f"Action type must be 'buy' or 'sell', got {action_type!r}")
    return OrderAction(
        type=action_type,
        shares=_number(data, "shares", "Action", required=False),
        pct=_number(data, "pct", "Action", required=False),
        limit_price=_number(data, _pick(data, "limit_price", "limitPrice"), "Action", required=False),
    )


def encode_action(action: OrderAction) -> str:
    if action.type not in ("buy", "sell"):
        raise PayloadError(f"Action type must be 'buy' or 'sell', got {action.type!r}")
    data = {"type": action.type}
    if action.shares is not None:
        data["shares"] = action.shares
    if action.pct is not None:
        data["pct"] = action.pct
    if action.limit_price is not None:
        data["limit_price"] = action.limit_price
    return json.dumps(data)


# ── AI exit conditions ───────────────────────────────────────────────


def decode_exit_conditions(raw: Optional[str]) -> AiExitConditions:
    data = _load_object(raw, "AI exit conditions")
    stop_on_reversal = data.get(_pick(data, "stop_on_reversal", "stopOnReversal"))
    if stop_on_reversal is not None and not isinstance(stop_on_reversal, bool):
        raise PayloadError(f"AI exit conditions field 'stop_on_reversal' must be a boolean, got {stop_on_reversal!r}")
    return AiExitConditions(
        max_hold_days=_number(data, _pick(data, "max_hold_days", "maxHoldDays"), "AI exit conditions", required=False),
        price_target=_number(data, _pick(data, "price_target", "priceTarget"), "AI exit conditions", required=False),
        stop_on_reversal=stop_on_reversal,
    )


def encode_exit_conditions(conditions: AiExitConditions) -> str:
    data = {}
    if conditions.max_hold_days is not None:
        data["max_hold_days"] = conditions.max_hold_days
    if conditions.price_target is not None:
        data["price_target"] = conditions.price_target
    if conditions.stop_on_reversal is not None:
        data["stop_on_reversal"] = conditions.stop_on_reversal
    return json.dumps(data)
