"""
Trigger evaluation: decides whether a rule's market condition holds.
Pure functions over the price snapshot supplied by the engine.
"""
from typing import Dict, Mapping, Optional

from src.rules.models import (
    MomentumTrigger,
    PriceDropTrigger,
    PricePoint,
    Rule,
    Trigger,
    TrendTrigger,
)


def change_pct(latest: float, reference: float) -> float:
    """Percentage change from reference to latest (0 when reference <= 0)."""
    if not reference or reference <= 0:
        return 0.0
    return (latest - reference) / reference * 100


def matches(trigger: Trigger, pct: float) -> bool:
    """Apply one trigger's comparator to one asset's change."""
    if isinstance(trigger, PriceDropTrigger):
        return pct <= -abs(trigger.value)
    if isinstance(trigger, TrendTrigger):
        return pct >= trigger.value
    if isinstance(trigger, MomentumTrigger):
        # Same comparator as trend
        return pct >= trigger.value
    return False


def evaluate(rule: Rule, prices_by_asset: Mapping[str, PricePoint]) -> bool:
    """
    Check rule trigger against current prices.

    Args:
        rule: Rule to evaluate
        prices_by_asset: asset_id -> PricePoint for the rule's window.
            Missing assets count as price 0 (no change).

    Returns:
        True if any target satisfies the trigger (first match wins).
    """
    if not rule.targets or rule.trigger is None:
        return False

    for asset_id in rule.targets:
        point = prices_by_asset.get(asset_id)
        if point is None:
            continue
        if matches(rule.trigger, change_pct(point.latest, point.reference)):
            return True

    return False


def changes_by_asset(rule: Rule, prices_by_asset: Mapping[str, PricePoint]) -> Dict[str, Optional[float]]:
    """Per-target change (None when the asset has no price), for log details."""
    result: Dict[str, Optional[float]] = {}
    for asset_id in rule.targets:
        point = prices_by_asset.get(asset_id)
        result[asset_id] = None if point is None else round(change_pct(point.latest, point.reference), 6)
    return result
