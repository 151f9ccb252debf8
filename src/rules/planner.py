"""
Trade planner: splits a rule's budget evenly across its targets.
Deterministic, so preview and execution paths compute the same plan.
"""
from typing import Mapping

from src.rules.models import Leg, PricePoint, Rule, TradePlan


def plan(rule: Rule, prices_by_asset: Mapping[str, PricePoint]) -> TradePlan:
    """
    Build the trade plan for a matched rule.

    Each target gets max_spend_usd / len(targets); quantity is spend / latest
    price, or 0 when the price is unknown.
    """
    if not rule.targets:
        return TradePlan(total_spend_usd=0.0, legs=[])

    per_leg_spend = rule.max_spend_usd / max(1, len(rule.targets))
    legs = []
    for asset_id in rule.targets:
        point = prices_by_asset.get(asset_id)
        price = point.latest if point is not None and point.latest > 0 else 0.0
        quantity = per_leg_spend / price if price > 0 else 0.0
        legs.append(Leg(asset_id=asset_id, price=price, quantity=quantity, spend_usd=per_leg_spend))

    return TradePlan(total_spend_usd=sum(leg.spend_usd for leg in legs), legs=legs)
