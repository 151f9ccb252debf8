# -*- coding: utf-8 -*-
"""
Human-readable formatting for rules, triggers and cycle summaries.
Used by the CLI listing and log messages.
"""
from typing import Optional

from src.rules.models import (
    MomentumTrigger,
    PollSummary,
    PriceDropTrigger,
    Rule,
    RuleKind,
    Trigger,
    TrendTrigger,
)


def format_usd(amount: float) -> str:
    """
    Format USD amount: $1,234.50

    Args:
        amount: Value in dollars

    Returns:
        Formatted string
    """
    return f"${amount:,.2f}"


def format_percentage(value: float) -> str:
    """Format percentage with up to 2 decimals: 5%, 0.5%, 12.25%"""
    formatted = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{formatted}%"


def format_trigger(trigger: Optional[Trigger]) -> str:
    if trigger is None:
        return "none"
    if isinstance(trigger, PriceDropTrigger):
        return f"Price drop ≥ {format_percentage(trigger.value)}"
    if isinstance(trigger, TrendTrigger):
        return f"Trend ≥ {format_percentage(trigger.value)} ({trigger.window})"
    if isinstance(trigger, MomentumTrigger):
        return f"Momentum ≥ {format_percentage(trigger.value)} ({trigger.lookback_days}d)"
    return str(trigger)


def _trigger_clause(trigger: Optional[Trigger]) -> str:
    if isinstance(trigger, PriceDropTrigger):
        return f"on a {format_percentage(trigger.value)} drop"
    if isinstance(trigger, TrendTrigger):
        return f"when {trigger.window} trend ≥ {format_percentage(trigger.value)}"
    if isinstance(trigger, MomentumTrigger):
        return f"when momentum({trigger.lookback_days}d) ≥ {format_percentage(trigger.value)}"
    return "(invalid trigger)"


def describe_rule(rule: Rule) -> str:
    """
    One-line description of a rule.

    Example:
        "DCA buy bitcoin, ethereum on a 5% drop. Limits: $100.00, slippage 0.5%, cooldown 60m."
    """
    action = {
        RuleKind.DCA: "DCA buy",
        RuleKind.REBALANCE: "rebalance",
        RuleKind.ROTATE: "rotate",
    }[rule.kind]

    if rule.targets:
        coins = ", ".join(rule.targets)
    elif rule.rotate_top_n:
        coins = f"Top {rule.rotate_top_n}"
    else:
        coins = "coins"

    return (
        f"{action} {coins} {_trigger_clause(rule.trigger)}. "
        f"Limits: {format_usd(rule.max_spend_usd)}, "
        f"slippage {format_percentage(rule.max_slippage_percent)}, "
        f"cooldown {rule.cooldown_minutes}m."
    )


def format_summary(summary: PollSummary) -> str:
    if summary.skipped:
        return "Poll skipped (cycle already running)"
    text = f"Checked {summary.checked} rule(s), fired {len(summary.triggered)}"
    if summary.errors:
        text += f", {len(summary.errors)} error(s)"
    return text
