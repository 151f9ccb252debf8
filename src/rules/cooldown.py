# -*- coding: utf-8 -*-
"""
Cooldown guard: enforces minimum spacing between successful firings.

Stateless. The last successful fire time is reconstructed from the log on
every check, so the guard survives restarts without a cached field.
"""
from datetime import datetime
from typing import Optional

from src.rules.models import Rule
from src.utils.time import minutes_between


def can_fire(rule: Rule, last_successful_fire_at: Optional[datetime], now: datetime) -> bool:
    """
    Check if the rule may fire now.

    Args:
        rule: Rule being considered
        last_successful_fire_at: newest successful firing of this rule, or None
        now: current time

    Returns:
        True when cooldown is 0, the rule never fired, or enough minutes elapsed.
    """
    if not rule.cooldown_minutes:
        return True
    if last_successful_fire_at is None:
        return True
    return minutes_between(last_successful_fire_at, now) >= rule.cooldown_minutes


def minutes_remaining(rule: Rule, last_successful_fire_at: Optional[datetime], now: datetime) -> float:
    """Minutes left before the rule may fire again (0 if it can fire)."""
    if can_fire(rule, last_successful_fire_at, now):
        return 0.0
    return max(0.0, rule.cooldown_minutes - minutes_between(last_successful_fire_at, now))
