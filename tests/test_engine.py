"""Tests for the poller engine (one cycle over all active rules)."""
import asyncio
from datetime import timedelta
from typing import List
import pytest

from src.errors import ConfigurationError, RepositoryFailure
from src.execution.swap_executor import DryRunSwapExecutor
from src.rules.engine import PollerEngine
from src.rules.models import LogAction, LogStatus
from src.storage.models import RuleRow
from src.storage.repo import RuleRepository
from tests.helpers.fakes import T0, FakeExecutor, FakeOracle, rule_payload


def make_engine(repo, oracle=None, executor=None, **kwargs) -> PollerEngine:
    return PollerEngine(
        repository=repo,
        oracle=oracle or FakeOracle(),
        executor=executor or FakeExecutor(),
        funding_asset='ETH',
        price_timeout_seconds=kwargs.pop('price_timeout_seconds', 2),
        clock=lambda: T0,
        **kwargs,
    )


def cycle_actions(repo, rule_id) -> List[LogAction]:
    """Engine-written actions for a rule, oldest first."""
    logs = reversed(repo.list_logs(rule_id=rule_id))
    return [l.action for l in logs if l.action != LogAction.RULE_CREATED]


class TestFiring:
    """Matched rules fire once and leave an auditable trail."""

    @pytest.mark.asyncio
    async def test_price_drop_scenario(self, repo):
        """-15% drop on X fires a 200 USD buy of X."""
        rule = repo.create_rule(rule_payload(
            targets=['X'], maxSpendUSD=200, cooldownMinutes=30,
            trigger={'type': 'price_drop_pct', 'value': 10},
        ), now=T0)
        executor = FakeExecutor(tx_hash='0xfeed')
        engine = make_engine(repo, FakeOracle({'X': (8.5, 10)}), executor)

        summary = await engine.run_poll_cycle(now=T0 + timedelta(minutes=1))

        assert summary.checked == 1
        assert summary.triggered == [rule.id]
        assert summary.errors == []
        assert cycle_actions(repo, rule.id) == [
            LogAction.POLLER_CHECKED, LogAction.EXECUTE_RULE, LogAction.POLLER_TRIGGERED,
        ]

        logs = {l.action: l for l in repo.list_logs(rule_id=rule.id)}
        assert logs[LogAction.POLLER_CHECKED].details['matched'] is True
        assert logs[LogAction.POLLER_CHECKED].details['targets'] == ['X']

        execution = logs[LogAction.EXECUTE_RULE]
        assert execution.status == LogStatus.SUCCESS
        leg = execution.details['plan']['legs'][0]
        assert leg['assetId'] == 'X'
        assert leg['spendUSD'] == 200
        assert leg['quantity'] == pytest.approx(200 / 8.5)
        assert execution.details['txHash'] == '0xfeed'
        assert logs[LogAction.POLLER_TRIGGERED].details['txHash'] == '0xfeed'

        request = executor.requests[0]
        assert request.in_asset == 'ETH'
        assert request.out_asset == 'X'
        assert request.amount == pytest.approx(200 / 8.5)
        assert request.max_slippage_percent == 0.5

    @pytest.mark.asyncio
    async def test_no_match_only_logs_check(self, repo):
        rule = repo.create_rule(rule_payload(targets=['X']), now=T0)
        executor = FakeExecutor()
        engine = make_engine(repo, FakeOracle({'X': (96, 100)}), executor)

        summary = await engine.run_poll_cycle(now=T0)

        assert summary.checked == 1
        assert summary.triggered == []
        assert executor.requests == []
        assert cycle_actions(repo, rule.id) == [LogAction.POLLER_CHECKED]
        assert repo.list_logs(rule_id=rule.id, limit=1)[0].details['matched'] is False

    @pytest.mark.asyncio
    async def test_only_first_actionable_leg_is_submitted(self, repo):
        """Multi-target plan submits one swap for the first priced leg."""
        rule = repo.create_rule(rule_payload(
            targets=['A', 'B', 'C'], maxSpendUSD=90,
            trigger={'type': 'trend_pct', 'value': 0},
        ), now=T0)
        executor = FakeExecutor()
        oracle = FakeOracle({'B': (10, 10), 'C': (5, 5)})
        engine = make_engine(repo, oracle, executor)

        summary = await engine.run_poll_cycle(now=T0)

        assert summary.triggered == [rule.id]
        assert len(executor.requests) == 1
        assert executor.requests[0].out_asset == 'B'
        assert executor.requests[0].amount == pytest.approx(3)

    @pytest.mark.asyncio
    async def test_no_actionable_leg_is_simulated(self, repo):
        """All prices unknown: fired as simulated, executor not called."""
        rule = repo.create_rule(rule_payload(
            targets=['A'], trigger={'type': 'trend_pct', 'value': 0},
        ), now=T0)
        executor = FakeExecutor()
        engine = make_engine(repo, FakeOracle({}), executor)

        summary = await engine.run_poll_cycle(now=T0)

        assert summary.triggered == [rule.id]
        assert executor.requests == []
        execution = [l for l in repo.list_logs(rule_id=rule.id) if l.action == LogAction.EXECUTE_RULE][0]
        assert execution.status == LogStatus.SIMULATED
        assert execution.details['txStatus'] == 'simulated'

    @pytest.mark.asyncio
    async def test_dry_run_executor(self, repo):
        rule = repo.create_rule(rule_payload(targets=['X']), now=T0)
        engine = make_engine(repo, FakeOracle({'X': (90, 100)}), DryRunSwapExecutor())

        summary = await engine.run_poll_cycle(now=T0)

        assert summary.triggered == [rule.id]
        execution = [l for l in repo.list_logs(rule_id=rule.id) if l.action == LogAction.EXECUTE_RULE][0]
        assert execution.status == LogStatus.SIMULATED
        assert execution.details['txHash'] is None


class TestSkipping:
    """Rules that are not considered at all."""

    @pytest.mark.asyncio
    async def test_empty_targets_writes_nothing(self, repo):
        rule = repo.create_rule(rule_payload(type='rotate', targets=[], rotateTopN=5,
                                             trigger={'type': 'trend_pct', 'value': -100}), now=T0)
        oracle = FakeOracle()
        engine = make_engine(repo, oracle)

        summary = await engine.run_poll_cycle(now=T0)

        assert summary.checked == 0
        assert rule.id not in summary.triggered
        assert cycle_actions(repo, rule.id) == []
        assert oracle.calls == []

    @pytest.mark.asyncio
    async def test_paused_rules_not_evaluated(self, repo):
        rule = repo.create_rule(rule_payload(targets=['X'], status='paused'), now=T0)
        engine = make_engine(repo, FakeOracle({'X': (1, 100)}))

        summary = await engine.run_poll_cycle(now=T0)

        assert summary.checked == 0
        assert cycle_actions(repo, rule.id) == []

    @pytest.mark.asyncio
    async def test_one_check_per_rule_per_cycle(self, repo):
        rules = [
            repo.create_rule(rule_payload(targets=['X']), now=T0),
            repo.create_rule(rule_payload(targets=['Y']), now=T0),
            repo.create_rule(rule_payload(targets=['X', 'Y'], cooldownMinutes=60), now=T0),
        ]
        engine = make_engine(repo, FakeOracle({'X': (50, 100), 'Y': (100, 100)}))

        summary = await engine.run_poll_cycle(now=T0)

        assert summary.checked == 3
        for rule in rules:
            checks = [a for a in cycle_actions(repo, rule.id) if a == LogAction.POLLER_CHECKED]
            assert len(checks) == 1


class TestCooldown:
    """Cooldown is reconstructed from fired entries in the log."""

    @pytest.mark.asyncio
    async def test_cooldown_blocks_then_allows(self, repo):
        rule = repo.create_rule(rule_payload(targets=['X'], cooldownMinutes=30), now=T0)
        executor = FakeExecutor()
        engine = make_engine(repo, FakeOracle({'X': (80, 100)}), executor)

        first = await engine.run_poll_cycle(now=T0)
        blocked = await engine.run_poll_cycle(now=T0 + timedelta(minutes=10))
        allowed = await engine.run_poll_cycle(now=T0 + timedelta(minutes=31))

        assert first.triggered == [rule.id]
        assert blocked.triggered == []
        assert blocked.checked == 1
        assert allowed.triggered == [rule.id]
        assert len(executor.requests) == 2
        assert cycle_actions(repo, rule.id) == [
            LogAction.POLLER_CHECKED, LogAction.EXECUTE_RULE, LogAction.POLLER_TRIGGERED,
            LogAction.POLLER_CHECKED,
            LogAction.POLLER_CHECKED, LogAction.EXECUTE_RULE, LogAction.POLLER_TRIGGERED,
        ]

    @pytest.mark.asyncio
    async def test_restart_safe(self, repo):
        """A fresh engine sees the previous engine's firing."""
        repo.create_rule(rule_payload(targets=['X'], cooldownMinutes=60), now=T0)
        oracle = FakeOracle({'X': (80, 100)})

        first = await make_engine(repo, oracle).run_poll_cycle(now=T0)
        second = await make_engine(repo, oracle).run_poll_cycle(now=T0 + timedelta(minutes=5))

        assert len(first.triggered) == 1
        assert second.triggered == []


class TestFailures:
    """Failures are recorded per rule and never abort the cycle."""

    @pytest.mark.asyncio
    async def test_executor_failure_does_not_consume_cooldown(self, repo):
        rule = repo.create_rule(rule_payload(targets=['X'], cooldownMinutes=60), now=T0)
        executor = FakeExecutor(fail=True)
        engine = make_engine(repo, FakeOracle({'X': (80, 100)}), executor)

        first = await engine.run_poll_cycle(now=T0)
        second = await engine.run_poll_cycle(now=T0 + timedelta(minutes=1))

        assert len(executor.requests) == 2
        for summary in (first, second):
            assert summary.triggered == []
            assert summary.errors == [{'rule_id': rule.id, 'error': 'insufficient liquidity'}]
        failed = [l for l in repo.list_logs(rule_id=rule.id) if l.action == LogAction.POLLER_TRIGGER_FAILED]
        assert len(failed) == 2
        assert failed[0].status == LogStatus.FAILED
        assert failed[0].details['error'] == 'insufficient liquidity'
        assert repo.last_successful_fire(rule.id) is None

    @pytest.mark.asyncio
    async def test_executor_failure_with_zero_cooldown_retries_next_cycle(self, repo):
        repo.create_rule(rule_payload(targets=['X'], cooldownMinutes=0), now=T0)
        executor = FakeExecutor(error=RuntimeError('rpc down'))
        engine = make_engine(repo, FakeOracle({'X': (80, 100)}), executor)

        await engine.run_poll_cycle(now=T0)
        summary = await engine.run_poll_cycle(now=T0)

        assert len(executor.requests) == 2
        assert summary.errors[0]['error'] == 'rpc down'

    @pytest.mark.asyncio
    async def test_oracle_failure_degrades_to_no_match(self, repo):
        from src.errors import OracleUnavailable

        rule = repo.create_rule(rule_payload(targets=['X']), now=T0)
        engine = make_engine(repo, FakeOracle({'X': OracleUnavailable('503')}))

        summary = await engine.run_poll_cycle(now=T0)

        assert summary.checked == 1
        assert summary.errors == []
        assert repo.list_logs(rule_id=rule.id, limit=1)[0].details['matched'] is False

    @pytest.mark.asyncio
    async def test_oracle_timeout_degrades(self, repo):
        repo.create_rule(rule_payload(targets=['X']), now=T0)
        engine = make_engine(repo, FakeOracle({'X': (1, 100)}, delay=0.5), price_timeout_seconds=0.05)

        summary = await engine.run_poll_cycle(now=T0)

        assert summary.checked == 1
        assert summary.triggered == []

    @pytest.mark.asyncio
    async def test_missing_reference_means_no_change(self, repo):
        repo.create_rule(rule_payload(targets=['X']), now=T0)
        engine = make_engine(repo, FakeOracle({'X': (50, None)}))

        summary = await engine.run_poll_cycle(now=T0)

        assert summary.triggered == []

    @pytest.mark.asyncio
    async def test_repository_failure_is_isolated_per_rule(self, session_factory):
        class FlakyRepository(RuleRepository):
            def __init__(self, session_factory, broken_rule_id=None):
                super().__init__(session_factory)
                self.broken_rule_id = broken_rule_id

            def last_successful_fire(self, rule_id):
                if rule_id == self.broken_rule_id:
                    raise RepositoryFailure('database is locked')
                return super().last_successful_fire(rule_id)

        repo = FlakyRepository(session_factory)
        broken = repo.create_rule(rule_payload(targets=['X']), now=T0)
        healthy = repo.create_rule(rule_payload(targets=['X']), now=T0 + timedelta(seconds=1))
        repo.broken_rule_id = broken.id
        engine = make_engine(repo, FakeOracle({'X': (80, 100)}))

        summary = await engine.run_poll_cycle(now=T0)

        assert summary.triggered == [healthy.id]
        assert summary.errors == [{'rule_id': broken.id, 'error': 'database is locked'}]
        assert cycle_actions(repo, broken.id) == [LogAction.POLLER_CHECKED, LogAction.POLLER_ERROR]
        error_log = repo.list_logs(rule_id=broken.id, limit=1)[0]
        assert error_log.status == LogStatus.ERROR

    @pytest.mark.asyncio
    async def test_rule_loading_failure_returns_summary(self, repo):
        class DownRepository(RuleRepository):
            def list_active_rules(self):
                raise RepositoryFailure('connection refused')

        engine = make_engine(DownRepository(), FakeOracle())

        summary = await engine.run_poll_cycle(now=T0)

        assert summary.checked == 0
        assert summary.errors == [{'rule_id': None, 'error': 'connection refused'}]

    @pytest.mark.asyncio
    async def test_undecodable_stored_rule_does_not_block_others(self, repo, session_factory):
        """A row with an unknown kind is skipped; healthy rules are still checked and fired."""
        good = repo.create_rule(rule_payload(targets=['X']), now=T0)
        bad = repo.create_rule(rule_payload(targets=['Y']), now=T0)
        with session_factory() as session:
            session.get(RuleRow, bad.id).kind = 'swing'
            session.commit()
        engine = make_engine(repo, FakeOracle({'X': (80, 100), 'Y': (80, 100)}))

        summary = await engine.run_poll_cycle(now=T0)

        assert summary.checked == 1
        assert summary.triggered == [good.id]
        assert summary.errors == []
        assert cycle_actions(repo, bad.id) == []

    @pytest.mark.asyncio
    async def test_rejected_update_leaves_cycle_intact(self, repo):
        good = repo.create_rule(rule_payload(targets=['X']), now=T0)
        other = repo.create_rule(rule_payload(targets=['Y']), now=T0)
        with pytest.raises(ConfigurationError):
            repo.update_rule(other.id, kind='swing')
        engine = make_engine(repo, FakeOracle({'X': (80, 100), 'Y': (100, 100)}))

        summary = await engine.run_poll_cycle(now=T0)

        assert summary.checked == 2
        assert summary.triggered == [good.id]


class TestBatchingAndLocking:
    """Oracle calls are batched; cycles never overlap."""

    @pytest.mark.asyncio
    async def test_one_oracle_call_per_asset_and_window(self, repo):
        repo.create_rule(rule_payload(targets=['X', 'Y']), now=T0)
        repo.create_rule(rule_payload(targets=['X']), now=T0)
        repo.create_rule(rule_payload(targets=['X'], trigger={'type': 'trend_pct', 'value': 50, 'window': '7d'}), now=T0)
        oracle = FakeOracle({'X': (100, 100), 'Y': (100, 100)})

        await make_engine(repo, oracle).run_poll_cycle(now=T0)

        assert sorted(oracle.calls) == [('X', '24h'), ('X', '7d'), ('Y', '24h')]

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, repo):
        rule = repo.create_rule(rule_payload(targets=['X']), now=T0)
        executor = FakeExecutor()
        engine = make_engine(repo, FakeOracle({'X': (80, 100)}, delay=0.2), executor)

        first, second = await asyncio.gather(engine.run_poll_cycle(now=T0), engine.run_poll_cycle(now=T0))

        assert first.skipped is False
        assert second.skipped is True
        assert second.to_dict() == {'checked': 0, 'triggered': [], 'errors': [], 'skipped': True}
        assert len(executor.requests) == 1
        assert engine.cycles_run == 1
        assert engine.last_summary is first
        assert cycle_actions(repo, rule.id).count(LogAction.POLLER_CHECKED) == 1
