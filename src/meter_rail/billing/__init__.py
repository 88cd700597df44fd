"""
METER RAIL - Billing Module

Unit rules, the rule-based calculator, usage sinks and the usage meter that
ties them to the dedupe store.
"""

from .rules import UnitRule, RuleProvider, PrefixRuleResolver, parse_rules, load_rules
from .calculator import UnitCalculator, RuleBasedUnitCalculator, coerce_quantity
from .sinks import UsageSink, CollectingUsageSink, FileUsageSink
from .meter import UsageMeter, DEFAULT_DEDUPE_TTL

__all__ = [
    "UnitRule",
    "RuleProvider",
    "PrefixRuleResolver",
    "parse_rules",
    "load_rules",
    "UnitCalculator",
    "RuleBasedUnitCalculator",
    "coerce_quantity",
    "UsageSink",
    "CollectingUsageSink",
    "FileUsageSink",
    "UsageMeter",
    "DEFAULT_DEDUPE_TTL",
]
