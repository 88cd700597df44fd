"""
Rule-Based Unit Calculator

Turns a request into billable units: base units of the resolved rule plus
an optional per-item component. A missing or unusable item value never
fails the request, it just adds nothing.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol

from ..core.types import RequestInfo, UnitsResult
from .rules import RuleProvider

NO_MATCH_REASON = "no_match"


class UnitCalculator(Protocol):
    """Computes billable units for a handled request."""

    def calculate(self, request: RequestInfo) -> UnitsResult:
        ...


def coerce_quantity(value: Any) -> Optional[Decimal]:
    """
    Coerce a dynamically typed item value to Decimal.

    Decimal passes through, int and float are widened, strings are parsed
    as decimal literals. Anything else, including bools and non-finite
    numbers, is treated as absent and returns None.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        return Decimal(value)
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            return None
    else:
        return None

    if not result.is_finite():
        return None
    return result


class RuleBasedUnitCalculator:
    """Calculator backed by a RuleProvider. Stateless and thread-safe."""

    def __init__(self, provider: RuleProvider):
        self.provider = provider

    def calculate(self, request: RequestInfo) -> UnitsResult:
        rule = self.provider.resolve_rule(request)
        if rule is None:
            return UnitsResult(units=Decimal("0"), reason=NO_MATCH_REASON, rule_id=None)

        units = rule.base_units

        if rule.is_variable:
            quantity = coerce_quantity(request.items.get(rule.item_key))
            if quantity is not None:
                # Not clamped: a negative rate is passed through as configured
                units = units + rule.per_item_units * quantity

        return UnitsResult(units=units, reason=f"rule:{rule.rule_id}", rule_id=rule.rule_id)
