"""
Unit Rules and Longest-Prefix Resolution

A rule charges `base_units` for every matching request, plus
`per_item_units` for each unit of the request item named `item_key`.

Resolution scans the endpoint key first and the raw path second. Within a
candidate the longest case-insensitive prefix wins, ties go to the rule
registered first, and an endpoint-key match always beats a path match.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple, Union
import json
import structlog

from ..core.errors import RuleConfigError
from ..core.types import RequestInfo

logger = structlog.get_logger()


@dataclass(frozen=True)
class UnitRule:
    """Declarative billing rule matched by prefix."""
    prefix: str
    base_units: Decimal
    per_item_units: Optional[Decimal] = None
    item_key: Optional[str] = None
    rule_id: Optional[str] = None

    def __post_init__(self):
        if self.rule_id is None:
            object.__setattr__(self, "rule_id", self.prefix)

    @property
    def is_variable(self) -> bool:
        return self.per_item_units is not None and bool(self.item_key and self.item_key.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.rule_id,
            "prefix": self.prefix,
            "base_units": str(self.base_units),
            "per_item_units": str(self.per_item_units) if self.per_item_units is not None else None,
            "item_key": self.item_key,
        }


class RuleProvider(Protocol):
    """Resolves the single best rule for a request."""

    def resolve_rule(self, request: RequestInfo) -> Optional[UnitRule]:
        ...


class PrefixRuleResolver:
    """
    Longest-prefix rule resolver.

    The rule set is held as an immutable tuple and swapped whole by
    `replace_rules`, so readers never see a half-updated set.
    """

    def __init__(self, rules: Iterable[UnitRule] = ()):
        self._rules: Tuple[UnitRule, ...] = tuple(rules)

    @property
    def rules(self) -> Tuple[UnitRule, ...]:
        return self._rules

    def replace_rules(self, rules: Iterable[UnitRule]) -> None:
        self._rules = tuple(rules)
        logger.info("unit_rules_replaced", count=len(self._rules))

    def resolve_rule(self, request: RequestInfo) -> Optional[UnitRule]:
        rules = self._rules

        best = self._longest_match(rules, request.endpoint.value)
        if best is not None:
            return best

        return self._longest_match(rules, request.path)

    @staticmethod
    def _longest_match(rules: Tuple[UnitRule, ...], candidate: Optional[str]) -> Optional[UnitRule]:
        if not candidate:
            return None

        folded = candidate.casefold()
        best: Optional[UnitRule] = None
        best_len = -1

        for rule in rules:
            prefix = rule.prefix
            # Strictly greater keeps the first-registered rule on ties
            if prefix and len(prefix) > best_len and folded.startswith(prefix.casefold()):
                best = rule
                best_len = len(prefix)

        return best


def _to_decimal(value: Any, field_name: str, rule_ref: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise RuleConfigError(f"{rule_ref}: '{field_name}' must be a number or numeric string")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise RuleConfigError(f"{rule_ref}: '{field_name}' is not a decimal: {value!r}")
    if not result.is_finite():
        raise RuleConfigError(f"{rule_ref}: '{field_name}' must be finite")
    return result


def parse_rules(data: Dict[str, Any]) -> List[UnitRule]:
    """
    Build rules from a decoded rules document.

    Expected shape: {"rules": [{"id", "prefix", "base_units",
    "per_item_units"?, "item_key"?}, ...]}
    """
    if not isinstance(data, dict) or "rules" not in data:
        raise RuleConfigError("Rules document must be an object with a 'rules' list")

    raw_rules = data["rules"]
    if not isinstance(raw_rules, list):
        raise RuleConfigError("'rules' must be a list")

    allowed_keys = {"id", "prefix", "base_units", "per_item_units", "item_key"}
    rules: List[UnitRule] = []
    seen_ids = set()

    for index, raw in enumerate(raw_rules):
        rule_ref = f"rules[{index}]"
        if not isinstance(raw, dict):
            raise RuleConfigError(f"{rule_ref} must be an object")

        unknown = set(raw.keys()) - allowed_keys
        if unknown:
            raise RuleConfigError(f"{rule_ref}: unknown keys {sorted(unknown)}")

        prefix = raw.get("prefix")
        if not isinstance(prefix, str) or not prefix:
            raise RuleConfigError(f"{rule_ref}: 'prefix' must be a non-empty string")

        if "base_units" not in raw:
            raise RuleConfigError(f"{rule_ref}: missing 'base_units'")
        base_units = _to_decimal(raw["base_units"], "base_units", rule_ref)

        has_rate = raw.get("per_item_units") is not None
        has_key = raw.get("item_key") is not None
        if has_rate != has_key:
            raise RuleConfigError(f"{rule_ref}: 'per_item_units' and 'item_key' must be given together")

        per_item = _to_decimal(raw["per_item_units"], "per_item_units", rule_ref) if has_rate else None
        item_key = raw.get("item_key")
        if has_key and (not isinstance(item_key, str) or not item_key.strip()):
            raise RuleConfigError(f"{rule_ref}: 'item_key' must be a non-empty string")

        rule_id = raw.get("id", prefix)
        if not isinstance(rule_id, str) or not rule_id:
            raise RuleConfigError(f"{rule_ref}: 'id' must be a non-empty string")
        if rule_id in seen_ids:
            raise RuleConfigError(f"{rule_ref}: duplicate rule id '{rule_id}'")
        seen_ids.add(rule_id)

        rules.append(UnitRule(
            prefix=prefix,
            base_units=base_units,
            per_item_units=per_item,
            item_key=item_key,
            rule_id=rule_id,
        ))

    return rules


def load_rules(path: Union[str, Path]) -> List[UnitRule]:
    """Load rules from a JSON file."""
    rules_path = Path(path)
    if not rules_path.exists():
        raise RuleConfigError(f"Rules file not found: {path}")

    with open(rules_path, "r", encoding="utf-8") as f:
        try:
            # parse_float keeps rates like 0.02 exact
            data = json.load(f, parse_float=Decimal)
        except json.JSONDecodeError as e:
            raise RuleConfigError(f"Invalid JSON in rules file {path}: {e}") from e

    rules = parse_rules(data)
    logger.info("unit_rules_loaded", path=str(rules_path), count=len(rules))
    return rules
