"""
Rule/log repository backed by SQLAlchemy.

Rules are decoded into domain objects here, once, so the engine only sees
typed triggers. The log table is append-only: nothing in this module updates
or deletes log rows.
"""
import random
import string
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.errors import ConfigurationError, RepositoryFailure
from src.rules.models import (
    LogAction,
    LogEntry,
    LogStatus,
    Rule,
    RuleKind,
    RuleStatus,
    decode_trigger_safely,
    rule_from_payload,
    trigger_to_dict,
)
from src.storage.models import LogRow, RuleRow
from src.utils.time import from_ms, to_ms, utc_now

# Cooldown is consumed by fired entries only, simulated or submitted
FIRED_STATUSES = (LogStatus.SUCCESS.value, LogStatus.SIMULATED.value)

# Fields the external API may change on an existing rule
MUTABLE_FIELDS = {
    "owner_address", "kind", "targets", "rotate_top_n", "max_spend_usd",
    "max_slippage_percent", "trigger", "cooldown_minutes", "status",
}


def generate_id(prefix: str) -> str:
    """Ids look like `log_1700000000000_k3x9qa`."""
    rnd = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{prefix}_{int(time.time() * 1000)}_{rnd}"


def _row_to_rule(row: RuleRow) -> Rule:
    return Rule(
        id=row.id,
        owner_address=row.owner_address,
        kind=RuleKind(row.kind),
        targets=list(row.targets or []),
        max_spend_usd=float(row.max_spend_usd or 0.0),
        max_slippage_percent=float(row.max_slippage_percent or 0.0),
        trigger=decode_trigger_safely(row.trigger, row.id),
        cooldown_minutes=int(row.cooldown_minutes or 0),
        status=RuleStatus(row.status),
        created_at=from_ms(row.created_at),
        rotate_top_n=row.rotate_top_n,
    )


def _decode_rows(rows: List[RuleRow]) -> List[Rule]:
    """Decode rows one by one; undecodable rows are logged and skipped."""
    rules = []
    for row in rows:
        try:
            rules.append(_row_to_rule(row))
        except (ValueError, TypeError, ConfigurationError) as e:
            logger.error(f"Skipping undecodable rule {row.id}: {e}")
    return rules


def _validate_update(row: RuleRow, changes: Dict[str, Any]) -> Rule:
    """
    Merge changes over the stored columns and validate the result as a new payload.

    Raises:
        ConfigurationError: the merged rule is invalid (nothing is written)
    """
    payload = {
        "owner_address": row.owner_address,
        "kind": row.kind,
        "targets": row.targets,
        "rotate_top_n": row.rotate_top_n,
        "max_spend_usd": row.max_spend_usd,
        "max_slippage_percent": row.max_slippage_percent,
        "trigger": row.trigger,
        "cooldown_minutes": row.cooldown_minutes,
        "status": row.status,
    }
    for key, value in changes.items():
        if key == "trigger" and value is not None and not isinstance(value, dict):
            value = trigger_to_dict(value)
        elif key in ("kind", "status") and hasattr(value, "value"):
            value = value.value
        payload[key] = value

    # Undecodable stored trigger: validate the other fields, the column is left as stored
    if "trigger" not in changes and decode_trigger_safely(row.trigger, row.id) is None:
        payload["trigger"] = {"type": "price_drop_pct", "value": 0}

    return rule_from_payload(payload, rule_id=row.id, created_at=from_ms(row.created_at))


def _row_to_log(row: LogRow) -> LogEntry:
    return LogEntry(
        id=row.id,
        owner_address=row.owner_address,
        rule_id=row.rule_id,
        action=LogAction(row.action),
        details=dict(row.details or {}),
        status=LogStatus(row.status),
        created_at=from_ms(row.created_at),
    )


class RuleRepository:
    """Durable store of rules and the append-only decision log."""

    def __init__(self, session_factory=None):
        if session_factory is None:
            from src.storage.db import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Repository {operation} failed: {e}")
            raise RepositoryFailure(f"{operation} failed: {e}") from e

    # ==================== ENGINE-FACING ====================

    def list_active_rules(self) -> List[Rule]:
        with self._session("list_active_rules") as session:
            rows = session.scalars(
                select(RuleRow)
                .where(RuleRow.status == RuleStatus.ACTIVE.value)
                .order_by(RuleRow.created_at.asc())
            ).all()
            return _decode_rows(rows)

    def append_log(self, entry: LogEntry) -> LogEntry:
        with self._session("append_log") as session:
            session.add(LogRow(
                id=entry.id,
                owner_address=entry.owner_address,
                rule_id=entry.rule_id,
                action=entry.action.value,
                details=entry.details,
                status=entry.status.value,
                created_at=to_ms(entry.created_at),
            ))
            session.commit()
        return entry

    def last_successful_fire(self, rule_id: str) -> Optional[datetime]:
        """Timestamp of the newest fired `execute_rule` entry for this rule."""
        with self._session("last_successful_fire") as session:
            ts = session.scalar(
                select(func.max(LogRow.created_at)).where(
                    LogRow.rule_id == rule_id,
                    LogRow.action == LogAction.EXECUTE_RULE.value,
                    LogRow.status.in_(FIRED_STATUSES),
                )
            )
            return from_ms(ts)

    # ==================== RULE MANAGEMENT ====================

    def create_rule(self, payload: Dict[str, Any], now: Optional[datetime] = None) -> Rule:
        """
        Validate and persist a new rule, then log `rule_created`.

        Raises:
            ConfigurationError: invalid payload
            RepositoryFailure: store unavailable
        """
        now = now or utc_now()
        rule = rule_from_payload(payload, rule_id=generate_id("rule"), created_at=now)

        with self._session("create_rule") as session:
            session.add(RuleRow(
                id=rule.id,
                owner_address=rule.owner_address,
                kind=rule.kind.value,
                targets=list(rule.targets),
                rotate_top_n=rule.rotate_top_n,
                max_spend_usd=rule.max_spend_usd,
                max_slippage_percent=rule.max_slippage_percent,
                trigger=trigger_to_dict(rule.trigger),
                cooldown_minutes=rule.cooldown_minutes,
                status=rule.status.value,
                created_at=to_ms(now),
            ))
            session.commit()

        self.append_log(LogEntry(
            id=generate_id("log"),
            owner_address=rule.owner_address,
            rule_id=rule.id,
            action=LogAction.RULE_CREATED,
            details=rule.to_dict(),
            status=LogStatus.SUCCESS,
            created_at=now,
        ))
        logger.info(f"Rule created: {rule.id} ({rule.kind.value}, targets={rule.targets})")
        return rule

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        with self._session("get_rule") as session:
            row = session.get(RuleRow, rule_id)
            return _row_to_rule(row) if row else None

    def list_rules(self, owner: Optional[str] = None) -> List[Rule]:
        with self._session("list_rules") as session:
            stmt = select(RuleRow).order_by(RuleRow.created_at.desc())
            if owner:
                stmt = stmt.where(func.lower(RuleRow.owner_address) == owner.lower())
            return _decode_rows(session.scalars(stmt).all())

    def update_rule(self, rule_id: str, **changes) -> Optional[Rule]:
        """
        Apply changes to a rule. `id` and `created_at` cannot change.

        Raises:
            ValueError: unknown or immutable field
            ConfigurationError: the updated rule would be invalid (row left untouched)
        """
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        with self._session("update_rule") as session:
            row = session.get(RuleRow, rule_id)
            if row is None:
                return None

            rule = _validate_update(row, changes)
            row.owner_address = rule.owner_address
            row.kind = rule.kind.value
            row.targets = list(rule.targets)
            row.rotate_top_n = rule.rotate_top_n
            row.max_spend_usd = rule.max_spend_usd
            row.max_slippage_percent = rule.max_slippage_percent
            row.cooldown_minutes = rule.cooldown_minutes
            row.status = rule.status.value
            if "trigger" in changes:
                row.trigger = trigger_to_dict(rule.trigger)
            session.commit()
            return _row_to_rule(row)

    def set_status(self, rule_id: str, status: RuleStatus) -> Optional[Rule]:
        return self.update_rule(rule_id, status=status)

    # ==================== LOG QUERIES ====================

    def list_logs(
        self,
        owner: Optional[str] = None,
        rule_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[LogEntry]:
        """Newest first."""
        with self._session("list_logs") as session:
            stmt = select(LogRow).order_by(LogRow.created_at.desc(), LogRow.seq.desc()).limit(limit)
            if owner:
                stmt = stmt.where(func.lower(LogRow.owner_address) == owner.lower())
            if rule_id:
                stmt = stmt.where(LogRow.rule_id == rule_id)
            return [_row_to_log(r) for r in session.scalars(stmt).all()]
