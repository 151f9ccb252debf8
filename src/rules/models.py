# -*- coding: utf-8 -*-
"""
Domain types for rule automation.

Trigger payloads arrive as loose JSON; they are decoded once into one of the
trigger dataclasses below (at the repository boundary) so the evaluator never
probes free-form fields.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from src.errors import ConfigurationError
from src.utils.windows import DEFAULT_WINDOW, VALID_WINDOWS


class RuleKind(str, Enum):
    DCA = "dca"
    REBALANCE = "rebalance"
    ROTATE = "rotate"


class RuleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class LogAction(str, Enum):
    RULE_CREATED = "rule_created"
    POLLER_CHECKED = "poller_checked"
    POLLER_TRIGGERED = "poller_triggered"
    POLLER_TRIGGER_FAILED = "poller_trigger_failed"
    POLLER_ERROR = "poller_error"
    EXECUTE_RULE = "execute_rule"


class LogStatus(str, Enum):
    SUCCESS = "success"
    SIMULATED = "simulated"
    FAILED = "failed"
    ERROR = "error"


# ==================== TRIGGERS ====================

@dataclass(frozen=True)
class PriceDropTrigger:
    """Fires when any target dropped at least `value` percent."""
    value: float
    type: str = field(default="price_drop_pct", init=False)


@dataclass(frozen=True)
class TrendTrigger:
    """Fires when any target rose at least `value` percent over `window`."""
    value: float
    window: str = DEFAULT_WINDOW
    type: str = field(default="trend_pct", init=False)


@dataclass(frozen=True)
class MomentumTrigger:
    """
    Momentum over `lookback_days`.
    Evaluated with the trend comparator on the default window; the lookback
    is carried for display only.
    """
    value: float
    lookback_days: int = 0
    type: str = field(default="momentum_pct", init=False)


Trigger = Union[PriceDropTrigger, TrendTrigger, MomentumTrigger]


def _number(payload: Dict[str, Any], key: str, default: Any = None) -> float:
    raw = payload.get(key, default)
    if raw is None or isinstance(raw, bool):
        raise ConfigurationError(f"Trigger field '{key}' is missing")
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Trigger field '{key}' is not numeric: {raw!r}")


def parse_trigger(payload: Any) -> Trigger:
    """
    Decode a trigger payload.

    Accepts the tagged shape `{"type": "price_drop_pct", "value": 5}` as well as
    the single-key shape `{"price_drop_pct": 5}`.

    Raises:
        ConfigurationError: unknown type, missing or non-numeric fields.
    """
    if not isinstance(payload, dict) or not payload:
        raise ConfigurationError(f"Trigger payload must be a non-empty object, got {payload!r}")

    payload = dict(payload)
    kind = payload.get("type")
    if kind is None:
        for candidate in ("price_drop_pct", "trend_pct", "momentum_pct", "momentum"):
            if candidate in payload:
                kind = candidate
                payload.setdefault("value", payload[candidate])
                break

    if kind == "price_drop_pct":
        return PriceDropTrigger(value=_number(payload, "value"))

    if kind == "trend_pct":
        window = payload.get("window", DEFAULT_WINDOW)
        if window not in VALID_WINDOWS:
            raise ConfigurationError(f"Unknown trend window: {window!r}")
        return TrendTrigger(value=_number(payload, "value"), window=window)

    if kind in ("momentum", "momentum_pct"):
        lookback = payload.get("lookbackDays", payload.get("lookback_days", 0))
        try:
            lookback_days = int(lookback or 0)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Momentum lookback is not an integer: {lookback!r}")
        return MomentumTrigger(value=_number(payload, "value"), lookback_days=lookback_days)

    raise ConfigurationError(f"Unknown trigger type: {kind!r}")


def trigger_to_dict(trigger: Optional[Trigger]) -> Optional[Dict[str, Any]]:
    if trigger is None:
        return None
    if isinstance(trigger, TrendTrigger):
        return {"type": trigger.type, "value": trigger.value, "window": trigger.window}
    if isinstance(trigger, MomentumTrigger):
        return {"type": trigger.type, "value": trigger.value, "lookbackDays": trigger.lookback_days}
    return {"type": trigger.type, "value": trigger.value}


# ==================== RULES & LOGS ====================

@dataclass
class Rule:
    """A user's standing automation instruction."""
    id: str
    owner_address: str
    kind: RuleKind
    targets: List[str]
    max_spend_usd: float
    max_slippage_percent: float
    trigger: Optional[Trigger]
    cooldown_minutes: int
    status: RuleStatus
    created_at: datetime
    rotate_top_n: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ownerAddress": self.owner_address,
            "type": self.kind.value,
            "targets": list(self.targets),
            "rotateTopN": self.rotate_top_n,
            "maxSpendUSD": self.max_spend_usd,
            "maxSlippage": self.max_slippage_percent,
            "trigger": trigger_to_dict(self.trigger),
            "cooldownMinutes": self.cooldown_minutes,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class LogEntry:
    """Immutable record of one engine decision or action."""
    id: str
    owner_address: str
    rule_id: Optional[str]
    action: LogAction
    details: Dict[str, Any]
    status: LogStatus
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ownerAddress": self.owner_address,
            "ruleId": self.rule_id,
            "action": self.action.value,
            "details": self.details,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
        }


# ==================== PRICES & PLANS ====================

@dataclass(frozen=True)
class PricePoint:
    """Latest and reference price of one asset for one window."""
    latest: float
    reference: float


@dataclass(frozen=True)
class Leg:
    asset_id: str
    price: float
    quantity: float
    spend_usd: float
    side: str = "buy"

    @property
    def is_actionable(self) -> bool:
        return self.price > 0 and self.quantity > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assetId": self.asset_id,
            "side": self.side,
            "price": self.price,
            "quantity": self.quantity,
            "spendUSD": self.spend_usd,
        }


@dataclass(frozen=True)
class TradePlan:
    total_spend_usd: float
    legs: List[Leg] = field(default_factory=list)

    def first_actionable_leg(self) -> Optional[Leg]:
        return next((leg for leg in self.legs if leg.is_actionable), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalSpendUSD": self.total_spend_usd,
            "legs": [leg.to_dict() for leg in self.legs],
        }


@dataclass
class PollSummary:
    """Result of one poll cycle."""
    checked: int = 0
    triggered: List[str] = field(default_factory=list)
    errors: List[Dict[str, Optional[str]]] = field(default_factory=list)
    skipped: bool = False

    def add_error(self, rule_id: Optional[str], error: str):
        self.errors.append({"rule_id": rule_id, "error": error})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "triggered": list(self.triggered),
            "errors": [dict(e) for e in self.errors],
            "skipped": self.skipped,
        }


# ==================== PAYLOAD DECODING ====================

def _first(payload: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


def decode_trigger_safely(payload: Any, rule_id: str = "?") -> Optional[Trigger]:
    """Decode a stored trigger, returning None (never matches) when malformed."""
    try:
        return parse_trigger(payload)
    except ConfigurationError as e:
        logger.warning(f"Rule {rule_id} has an invalid trigger, it will never match: {e}")
        return None


def rule_from_payload(payload: Dict[str, Any], rule_id: str, created_at: datetime) -> Rule:
    """
    Build a Rule from an API-style payload (camelCase or snake_case keys).

    Raises:
        ConfigurationError: unknown kind/status, negative limits or a bad trigger.
    """
    kind_raw = str(_first(payload, "type", "kind", default="rebalance")).lower()
    status_raw = str(_first(payload, "status", default="active")).lower()
    try:
        kind = RuleKind(kind_raw)
        status = RuleStatus(status_raw)
    except ValueError as e:
        raise ConfigurationError(str(e))

    targets = _first(payload, "targets", "coins", default=[])
    if not isinstance(targets, (list, tuple)):
        raise ConfigurationError(f"targets must be a list, got {targets!r}")

    try:
        max_spend = float(_first(payload, "maxSpendUSD", "maxSpendUsd", "max_spend_usd", default=0))
        max_slippage = float(_first(payload, "maxSlippage", "maxSlippagePercent",
                                    "max_slippage_percent", default=0))
        cooldown = int(_first(payload, "cooldownMinutes", "cooldown_minutes", default=0))
        top_n = _first(payload, "rotateTopN", "rotate_top_n")
        top_n = int(top_n) if top_n is not None else None
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid rule limits: {e}")

    if max_spend < 0 or max_slippage < 0 or cooldown < 0:
        raise ConfigurationError("Spend, slippage and cooldown must be non-negative")
    if top_n is not None and top_n <= 0:
        raise ConfigurationError("rotateTopN must be a positive integer")

    return Rule(
        id=rule_id,
        owner_address=str(_first(payload, "ownerAddress", "owner_address",
                                 default="0x0000000000000000000000000000000000000000")),
        kind=kind,
        targets=[str(t) for t in targets],
        max_spend_usd=max_spend,
        max_slippage_percent=max_slippage,
        trigger=parse_trigger(payload.get("trigger")),
        cooldown_minutes=cooldown,
        status=status,
        created_at=created_at,
        rotate_top_n=top_n,
    )
