"""
Rule Poller Engine - evaluates active rules and fires trades.
This is the core of the automation system.

One cycle: load active rules -> batch-fetch prices -> per rule: evaluate,
log `poller_checked`, check cooldown, plan, execute one swap, log outcome.
Rules are processed sequentially so each rule's log order is deterministic.
"""
import asyncio
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from src.datafeeds.price_oracle import PriceOracle
from src.errors import ExecutorFailure
from src.execution.swap_executor import SwapExecutor, SwapRequest, SwapResult
from src.rules.cooldown import can_fire, minutes_remaining
from src.rules.models import (
    LogAction,
    LogEntry,
    LogStatus,
    PollSummary,
    PricePoint,
    Rule,
    TradePlan,
    TrendTrigger,
    trigger_to_dict,
)
from src.rules.planner import plan
from src.rules.trigger import changes_by_asset, evaluate
from src.storage.repo import RuleRepository, generate_id
from src.utils.time import utc_now
from src.utils.windows import DEFAULT_WINDOW

QuoteKey = Tuple[str, str]  # (asset_id, window)


class PollerEngine:
    """
    Runs poll cycles over all active rules.
    Overlapping invocations are rejected by a run-lock so a rule can never
    pass its cooldown check twice concurrently.
    """

    def __init__(
        self,
        repository: RuleRepository,
        oracle: PriceOracle,
        executor: SwapExecutor,
        funding_asset: str = "ETH",
        interval_seconds: float = 60,
        price_timeout_seconds: float = 10,
        default_window: str = DEFAULT_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            repository: rule/log store
            oracle: price source
            executor: swap backend
            funding_asset: asset sold to buy each leg
            interval_seconds: sleep between cycles in run()
            price_timeout_seconds: bound on each oracle call
            default_window: reference window for triggers without their own
            clock: current time provider
        """
        self.repository = repository
        self.oracle = oracle
        self.executor = executor
        self.funding_asset = funding_asset
        self.interval_seconds = interval_seconds
        self.price_timeout_seconds = price_timeout_seconds
        self.default_window = default_window
        self.clock = clock

        self.running = False
        self.cycles_run = 0
        self.last_summary: Optional[PollSummary] = None
        self.last_run_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    # ==================== PRICES ====================

    def _window_for(self, rule: Rule) -> str:
        if isinstance(rule.trigger, TrendTrigger):
            return rule.trigger.window
        return self.default_window

    async def _fetch_quote(self, asset_id: str, window: str) -> PricePoint:
        """Fetch one quote. Failures degrade to price 0 (no match, zero-quantity leg)."""
        try:
            quote = await asyncio.wait_for(
                asyncio.to_thread(self.oracle.get_price, asset_id, window),
                timeout=self.price_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Price fetch timed out for {asset_id} ({window}) after {self.price_timeout_seconds}s")
            return PricePoint(latest=0.0, reference=0.0)
        except Exception as e:
            logger.warning(f"Price unavailable for {asset_id} ({window}): {e}")
            return PricePoint(latest=0.0, reference=0.0)

        latest = quote.price if quote.price and quote.price > 0 else 0.0
        # No reference for the window means "no change"
        reference = quote.reference_price if quote.reference_price and quote.reference_price > 0 else latest
        return PricePoint(latest=latest, reference=reference)

    async def fetch_prices(self, rules: Iterable[Rule]) -> Dict[QuoteKey, PricePoint]:
        """One oracle call per distinct (asset, window) across all rules, issued concurrently."""
        keys = sorted({(asset_id, self._window_for(rule)) for rule in rules for asset_id in rule.targets})
        if not keys:
            return {}

        points = await asyncio.gather(*(self._fetch_quote(asset_id, window) for asset_id, window in keys))
        logger.debug(f"Fetched {len(keys)} quotes")
        return dict(zip(keys, points))

    def _prices_for(self, rule: Rule, quotes: Dict[QuoteKey, PricePoint]) -> Dict[str, PricePoint]:
        window = self._window_for(rule)
        return {
            asset_id: quotes.get((asset_id, window), PricePoint(latest=0.0, reference=0.0))
            for asset_id in rule.targets
        }

    # ==================== LOGGING ====================

    def _append(self, rule: Rule, action: LogAction, details: Dict, status: LogStatus,
                now: Optional[datetime]) -> LogEntry:
        entry = LogEntry(
            id=generate_id("log"),
            owner_address=rule.owner_address,
            rule_id=rule.id,
            action=action,
            details=details,
            status=status,
            created_at=now or self.clock(),
        )
        return self.repository.append_log(entry)

    def _record_rule_error(self, rule: Rule, error: Exception, now: Optional[datetime]):
        try:
            self._append(rule, LogAction.POLLER_ERROR, {"error": str(error) or error.__class__.__name__},
                         LogStatus.ERROR, now)
        except Exception as log_error:
            logger.error(f"Could not record poller_error for rule {rule.id}: {log_error}")

    # ==================== EXECUTION ====================

    async def _execute(self, rule: Rule, trade_plan: TradePlan) -> SwapResult:
        """
        Submit the first actionable leg only.
        A plan with no actionable leg (all prices unknown) is reported as simulated.
        """
        leg = trade_plan.first_actionable_leg()
        if leg is None:
            logger.info(f"Rule {rule.id}: no actionable leg, recording simulated execution")
            return SwapResult(tx_hash=None, simulated=True)

        request = SwapRequest(
            in_asset=self.funding_asset,
            out_asset=leg.asset_id,
            amount=leg.quantity,
            max_slippage_percent=rule.max_slippage_percent,
        )
        try:
            return await asyncio.to_thread(self.executor.swap, request)
        except ExecutorFailure:
            raise
        except Exception as e:
            raise ExecutorFailure(str(e) or e.__class__.__name__) from e

    async def _process_rule(self, rule: Rule, quotes: Dict[QuoteKey, PricePoint],
                            summary: PollSummary, now: Optional[datetime]):
        prices = self._prices_for(rule, quotes)
        matched = evaluate(rule, prices)

        self._append(rule, LogAction.POLLER_CHECKED, {
            "trigger": trigger_to_dict(rule.trigger),
            "matched": matched,
            "targets": list(rule.targets),
            "window": self._window_for(rule),
            "changes": changes_by_asset(rule, prices),
        }, LogStatus.SUCCESS, now)
        summary.checked += 1

        if not matched:
            logger.debug(f"Rule {rule.id}: no match")
            return

        cycle_now = now or self.clock()
        last_fire = self.repository.last_successful_fire(rule.id)
        if not can_fire(rule, last_fire, cycle_now):
            remaining = minutes_remaining(rule, last_fire, cycle_now)
            logger.info(f"Rule {rule.id}: matched but cooling down ({remaining:.1f} min left)")
            return

        trade_plan = plan(rule, prices)

        try:
            result = await self._execute(rule, trade_plan)
        except ExecutorFailure as e:
            error_text = str(e)
            logger.warning(f"Rule {rule.id}: execution failed: {error_text}")
            summary.add_error(rule.id, error_text)
            self._append(rule, LogAction.POLLER_TRIGGER_FAILED, {
                "error": error_text,
                "plan": trade_plan.to_dict(),
            }, LogStatus.FAILED, now)
            return

        self._append(rule, LogAction.EXECUTE_RULE, {
            "rule": rule.to_dict(),
            "prices": {a: {"latest": p.latest, "reference": p.reference} for a, p in prices.items()},
            "plan": trade_plan.to_dict(),
            "txHash": result.tx_hash,
            "txStatus": result.tx_status,
        }, LogStatus.SIMULATED if result.simulated else LogStatus.SUCCESS, now)
        self._append(rule, LogAction.POLLER_TRIGGERED, {
            "txHash": result.tx_hash,
            "txStatus": result.tx_status,
        }, LogStatus.SUCCESS, now)

        summary.triggered.append(rule.id)
        logger.info(
            f"Rule {rule.id} fired: {rule.kind.value} ${trade_plan.total_spend_usd:.2f} "
            f"across {len(trade_plan.legs)} legs ({result.tx_status}, tx={result.tx_hash})"
        )

    # ==================== CYCLE ====================

    async def run_poll_cycle(self, now: Optional[datetime] = None) -> PollSummary:
        """
        Run one poll cycle over all active rules. Never raises.

        Args:
            now: fixed time for this cycle (defaults to the engine clock per write)

        Returns:
            PollSummary; `skipped=True` if another cycle was already running.
        """
        if self._lock.locked():
            logger.warning("Poll cycle already in progress, skipping overlapping invocation")
            return PollSummary(skipped=True)

        async with self._lock:
            summary = await self._run_cycle(now)
            self.cycles_run += 1
            self.last_summary = summary
            self.last_run_at = self.clock()
            return summary

    async def _run_cycle(self, now: Optional[datetime]) -> PollSummary:
        summary = PollSummary()

        try:
            rules: List[Rule] = self.repository.list_active_rules()
        except Exception as e:
            logger.exception(f"Failed to load active rules: {e}")
            summary.add_error(None, str(e))
            return summary

        # Rules without targets are skipped without a log entry
        rules = [r for r in rules if r.is_active and r.targets]
        quotes = await self.fetch_prices(rules)

        for rule in rules:
            try:
                await self._process_rule(rule, quotes, summary, now)
            except Exception as e:
                logger.exception(f"Error processing rule {rule.id}: {e}")
                summary.add_error(rule.id, str(e) or e.__class__.__name__)
                self._record_rule_error(rule, e, now)

        logger.info(
            f"Poll cycle done: checked={summary.checked}, triggered={len(summary.triggered)}, "
            f"errors={len(summary.errors)}"
        )
        return summary

    async def run(self):
        """Main loop: one cycle every interval_seconds until stop()."""
        self.running = True
        logger.info(f"Poller engine started (interval {self.interval_seconds}s)")

        while self.running:
            try:
                await self.run_poll_cycle()
            except Exception as e:
                logger.exception(f"Error in poller loop: {e}")
            await asyncio.sleep(self.interval_seconds)

    async def stop(self):
        """Stop the poller loop gracefully."""
        logger.info("Stopping poller engine...")
        self.running = False


# Global engine instance
_engine_instance: Optional[PollerEngine] = None


def get_poller_engine() -> PollerEngine:
    """Get global poller engine instance (singleton), wired from config."""
    global _engine_instance
    if _engine_instance is None:
        from src.config import get_executor_config, get_oracle_config, get_poller_config
        from src.datafeeds.price_oracle import build_price_oracle
        from src.execution.swap_executor import build_swap_executor

        poller_config = get_poller_config()
        executor_config = get_executor_config()

        _engine_instance = PollerEngine(
            repository=RuleRepository(),
            oracle=build_price_oracle(get_oracle_config()),
            executor=build_swap_executor(executor_config),
            funding_asset=executor_config["funding_asset"],
            interval_seconds=poller_config["interval_seconds"],
            price_timeout_seconds=poller_config["price_timeout_seconds"],
            default_window=poller_config["default_window"],
        )
    return _engine_instance
