from unittest.mock import AsyncMock

import pytest

from lp_agent.core.constants.contracts import BASE_USDC, BASE_VIRTUAL, BASE_WETH
from lp_agent.core.errors import (
    GaugeNotFoundError,
    InsufficientBalanceError,
    InsufficientGasError,
    LpAgentError,
    PoolNotFoundError,
    PreconditionError,
    TransferRejectedError,
)
from lp_agent.core.utils.transaction import TransactionRevertedError
from lp_agent.strategies.aerodrome_lp_strategy.strategy import split_amount
from lp_agent.strategies.aerodrome_lp_strategy.types import (
    DepositIntent,
    DepositStep,
    Outcome,
    WithdrawIntent,
    WithdrawStep,
)
from lp_agent.testing.fake_ledger import OPERATOR, POOL, USER, fund_user


class _RateLimited(Exception):
    status = 429


DEPOSIT_KINDS = [
    "transfer_from",
    "approve",
    "swap",
    "swap",
    "approve",
    "approve",
    "add_liquidity",
    "approve",
    "stake",
]


def _deposit(amount: int, **kwargs) -> DepositIntent:
    return DepositIntent(user_address=USER, amount=amount, **kwargs)


async def _funded_deposit(lp_strategy, ledger, amount=4_000_000):
    fund_user(ledger, amount)
    return await lp_strategy.deposit(_deposit(amount))


def test_split_amount_gives_odd_unit_to_first_half():
    assert split_amount(4_000_000) == (2_000_000, 2_000_000)
    assert split_amount(5) == (3, 2)
    assert split_amount(2) == (1, 1)


def test_intent_validation():
    with pytest.raises(ValueError):
        DepositIntent(user_address="not-an-address", amount=10)
    with pytest.raises(ValueError):
        DepositIntent(user_address=USER, amount=0)
    with pytest.raises(ValueError):
        WithdrawIntent(user_address=USER, lp_amount=1, slippage_bps=10_000)
    assert DepositIntent(user_address=USER.lower(), amount=1).user_address == USER


@pytest.mark.workflow
@pytest.mark.asyncio
class TestDeposit:
    async def test_happy_path_stakes_minted_lp(self, lp_strategy, ledger):
        result = await _funded_deposit(lp_strategy, ledger)

        assert result.success
        assert result.outcome is Outcome.COMPLETED
        assert ledger.kinds() == DEPOSIT_KINDS
        assert list(result.tx_hashes) == ledger.hashes()
        assert list(result.completed_steps) == [str(s) for s in DepositStep]
        assert result.final_amount.raw > 0
        assert ledger.staked[OPERATOR] == result.final_amount.raw
        assert ledger.balance(POOL, OPERATOR) == 0
        assert ledger.balance(BASE_USDC, USER) == 0

    async def test_swaps_use_exact_halves(self, lp_strategy, ledger):
        await _funded_deposit(lp_strategy, ledger, 4_000_001)

        swaps = lp_strategy.exchange.swaps
        assert swaps == [
            (BASE_USDC, BASE_WETH, 2_000_001),
            (BASE_USDC, BASE_VIRTUAL, 2_000_000),
        ]

    async def test_zero_user_allowance_is_rejected_without_writes(
        self, lp_strategy, ledger
    ):
        fund_user(ledger, 4_000_000, allowance=0)

        result = await lp_strategy.deposit(_deposit(4_000_000))

        assert not result.success
        assert result.outcome is Outcome.FAILED
        assert isinstance(result.error, TransferRejectedError)
        assert result.failed_step == DepositStep.TRANSFER_IN
        assert result.tx_hashes == ()
        assert ledger.writes == []
        assert not result.needs_manual_intervention

    async def test_existing_allowance_skips_approval(self, lp_strategy, ledger):
        ledger.allowances[(BASE_USDC, OPERATOR, lp_strategy.exchange.router)] = 10**12

        result = await _funded_deposit(lp_strategy, ledger)

        assert result.success
        assert len(result.tx_hashes) == len(DEPOSIT_KINDS) - 1
        assert list(result.tx_hashes) == ledger.hashes()

    async def test_partial_allowance_is_reset(self, lp_strategy, ledger):
        ledger.allowances[(BASE_USDC, OPERATOR, lp_strategy.exchange.router)] = 7

        result = await _funded_deposit(lp_strategy, ledger)

        assert result.success
        assert ledger.kinds()[1:3] == ["approve_reset", "approve"]
        assert list(result.tx_hashes) == ledger.hashes()
        assert len(result.tx_hashes) == len(DEPOSIT_KINDS) + 1

    async def test_reset_is_reported_when_a_later_write_fails(self, lp_strategy, ledger):
        ledger.allowances[(BASE_USDC, OPERATOR, lp_strategy.exchange.router)] = 7
        ledger.fail_at_write = 4

        result = await _funded_deposit(lp_strategy, ledger)

        assert result.outcome is Outcome.FAILED
        assert ledger.kinds() == ["transfer_from", "approve_reset", "approve"]
        assert list(result.tx_hashes) == ledger.hashes()
        assert result.failed_step == DepositStep.SWAP_TO_TOKEN_A

    async def test_reset_is_reported_when_the_approval_itself_fails(
        self, lp_strategy, ledger
    ):
        ledger.allowances[(BASE_USDC, OPERATOR, lp_strategy.exchange.router)] = 7
        ledger.fail_at_write = 3

        result = await _funded_deposit(lp_strategy, ledger)

        assert result.outcome is Outcome.FAILED
        assert ledger.kinds() == ["transfer_from", "approve_reset"]
        assert list(result.tx_hashes) == ledger.hashes()
        assert result.failed_step == DepositStep.APPROVE_FOR_SWAP

    @pytest.mark.parametrize("failing_write", range(1, len(DEPOSIT_KINDS) + 1))
    async def test_failure_returns_committed_prefix(
        self, lp_strategy, ledger, failing_write
    ):
        ledger.fail_at_write = failing_write

        result = await _funded_deposit(lp_strategy, ledger)

        assert not result.success
        assert result.outcome is Outcome.FAILED
        assert result.error is not None
        assert len(result.tx_hashes) == failing_write - 1
        assert list(result.tx_hashes) == ledger.hashes()
        assert ledger.kinds() == DEPOSIT_KINDS[: failing_write - 1]
        assert result.needs_manual_intervention is (failing_write > 1)

    async def test_amount_too_small_to_split(self, lp_strategy, ledger):
        fund_user(ledger, 1)

        result = await lp_strategy.deposit(_deposit(1))

        assert result.outcome is Outcome.PRECONDITION_FAILED
        assert isinstance(result.error, PreconditionError)
        assert ledger.writes == []

    async def test_insufficient_gas(self, lp_strategy, ledger):
        ledger.native[OPERATOR] = 0
        fund_user(ledger, 4_000_000)

        result = await lp_strategy.deposit(_deposit(4_000_000))

        assert result.outcome is Outcome.PRECONDITION_FAILED
        assert isinstance(result.error, InsufficientGasError)
        assert ledger.writes == []

    async def test_insufficient_user_balance(self, lp_strategy, ledger):
        fund_user(ledger, 1_000_000, allowance=4_000_000)

        result = await lp_strategy.deposit(_deposit(4_000_000))

        assert result.outcome is Outcome.PRECONDITION_FAILED
        assert isinstance(result.error, InsufficientBalanceError)
        assert result.error.available == 1_000_000
        assert ledger.writes == []

    async def test_missing_pool(self, lp_strategy, ledger):
        ledger.pool_exists = False

        result = await _funded_deposit(lp_strategy, ledger)

        assert result.outcome is Outcome.PRECONDITION_FAILED
        assert isinstance(result.error, PoolNotFoundError)
        assert ledger.writes == []

    async def test_missing_gauge(self, lp_strategy, ledger):
        ledger.gauge_exists = False

        result = await _funded_deposit(lp_strategy, ledger)

        assert result.outcome is Outcome.PRECONDITION_FAILED
        assert isinstance(result.error, GaugeNotFoundError)
        assert ledger.writes == []


@pytest.mark.workflow
@pytest.mark.asyncio
class TestWithdraw:
    async def test_round_trip_returns_less_than_deposited(self, lp_strategy, ledger):
        deposit = await _funded_deposit(lp_strategy, ledger)
        deposit_writes = len(ledger.writes)

        result = await lp_strategy.withdraw_all(USER)

        assert result.success
        withdraw_kinds = ledger.kinds()[deposit_writes:]
        assert withdraw_kinds[0] == "unstake"
        assert withdraw_kinds[-1] == "transfer"
        assert list(result.tx_hashes) == ledger.hashes()[deposit_writes:]
        assert ledger.staked[OPERATOR] == 0
        returned = ledger.balance(BASE_USDC, USER)
        assert returned == result.final_amount.raw
        assert 0 < returned < 4_000_000
        assert ledger.balance(BASE_USDC, OPERATOR) == 0
        assert deposit.final_amount.raw > 0

    async def test_partial_withdraw_leaves_remainder_staked(self, lp_strategy, ledger):
        deposit = await _funded_deposit(lp_strategy, ledger)
        half = deposit.final_amount.raw // 2

        result = await lp_strategy.withdraw(
            WithdrawIntent(user_address=USER, lp_amount=half)
        )

        assert result.success
        assert ledger.staked[OPERATOR] == deposit.final_amount.raw - half

    async def test_unstaking_more_than_staked_stops_immediately(
        self, lp_strategy, ledger
    ):
        deposit = await _funded_deposit(lp_strategy, ledger)
        deposit_writes = len(ledger.writes)

        result = await lp_strategy.withdraw(
            WithdrawIntent(user_address=USER, lp_amount=deposit.final_amount.raw + 1)
        )

        assert not result.success
        assert result.failed_step == WithdrawStep.UNSTAKE
        assert isinstance(result.error, TransactionRevertedError)
        assert result.tx_hashes == ()
        assert len(ledger.writes) == deposit_writes
        assert len(lp_strategy.exchange.swaps) == 2

    async def test_withdraw_all_with_nothing_staked(self, lp_strategy, ledger):
        result = await lp_strategy.withdraw_all(USER)

        assert not result.success
        assert result.outcome is Outcome.NOTHING_TO_WITHDRAW
        assert lp_strategy.gauge.unstake_calls == 0
        assert ledger.writes == []

    async def test_withdraw_failure_mid_way_keeps_prefix(self, lp_strategy, ledger):
        await _funded_deposit(lp_strategy, ledger)
        deposit_writes = len(ledger.writes)
        ledger.fail_at_write = deposit_writes + 3

        result = await lp_strategy.withdraw_all(USER)

        assert not result.success
        assert result.failed_step == WithdrawStep.REMOVE_LIQUIDITY
        assert list(result.tx_hashes) == ledger.hashes()[deposit_writes:]
        assert len(result.tx_hashes) == 2
        assert result.needs_manual_intervention


@pytest.mark.asyncio
class TestManualActions:
    async def test_stake_existing_after_failed_stake(self, lp_strategy, ledger):
        ledger.fail_at_write = len(DEPOSIT_KINDS)
        failed = await _funded_deposit(lp_strategy, ledger)
        idle = ledger.balance(POOL, OPERATOR)
        assert failed.failed_step == DepositStep.STAKE
        assert idle > 0

        ledger.fail_at_write = None
        result = await lp_strategy.stake_existing_lp()

        assert result.success
        assert len(result.tx_hashes) == 1
        assert ledger.staked[OPERATOR] == idle
        assert ledger.balance(POOL, OPERATOR) == 0

    async def test_stake_existing_with_nothing_idle(self, lp_strategy, ledger):
        result = await lp_strategy.stake_existing_lp()

        assert result.outcome is Outcome.NOTHING_TO_DO
        assert ledger.writes == []

    async def test_refund_after_failed_swap(self, lp_strategy, ledger):
        ledger.fail_at_write = 3
        await _funded_deposit(lp_strategy, ledger)
        assert ledger.balance(BASE_USDC, OPERATOR) == 4_000_000

        ledger.fail_at_write = None
        result = await lp_strategy.refund(USER)

        assert result.success
        assert result.final_amount.raw == 4_000_000
        assert ledger.balance(BASE_USDC, USER) == 4_000_000
        assert ledger.kinds()[-1] == "transfer"

    async def test_refund_more_than_held(self, lp_strategy, ledger):
        ledger.credit(BASE_USDC, OPERATOR, 10)

        result = await lp_strategy.refund(USER, 11)

        assert result.outcome is Outcome.PRECONDITION_FAILED
        assert isinstance(result.error, InsufficientBalanceError)
        assert ledger.writes == []


@pytest.mark.asyncio
class TestDiagnostics:
    async def test_check_prerequisites(self, lp_strategy, ledger):
        fund_user(ledger, 4_000_000, allowance=1_000_000)

        prereq = await lp_strategy.check_deposit_prerequisites(USER, 4_000_000)

        assert prereq.has_balance
        assert not prereq.has_allowance
        assert prereq.has_gas
        assert not prereq.ready
        assert prereq.pool_address == POOL

    async def test_check_prerequisites_without_gauge(self, lp_strategy, ledger):
        ledger.gauge_exists = False
        fund_user(ledger, 4_000_000)

        prereq = await lp_strategy.check_deposit_prerequisites(USER, 4_000_000)

        assert prereq.pool_address == POOL
        assert prereq.gauge_address is None
        assert not prereq.ready

    async def test_simulate_deposit_sends_nothing(self, lp_strategy, ledger):
        sim = await lp_strategy.simulate_deposit(4_000_001)

        assert (sim.first_half, sim.second_half) == (2_000_001, 2_000_000)
        assert sim.expected_token_a.raw > 0
        assert sim.expected_token_b.raw > 0
        assert sim.expected_liquidity.raw > 0
        assert sim.slippage_bps == lp_strategy.default_slippage_bps
        assert ledger.writes == []

    async def test_status_after_deposit(self, lp_strategy, ledger):
        deposit = await _funded_deposit(lp_strategy, ledger)

        status = await lp_strategy.status()

        assert status["operator_address"] == OPERATOR
        assert status["gassed_up"] is True
        assert status["pool_address"] == POOL
        assert status["staked_lp"] == deposit.final_amount.display()
        assert status["strategy_status"]["balances"]["stable"] == "0"

    async def test_status_when_pool_lookup_is_rate_limited(self, lp_strategy):
        lp_strategy.exchange.initialize = AsyncMock(
            side_effect=_RateLimited("429 Too Many Requests")
        )

        status = await lp_strategy.status()

        assert status["pool_address"] is None
        assert status["gauge_address"] is None
        assert status["staked_lp"] == "0"
        assert status["strategy_status"]["balances"]["stable"] == "0"

    async def test_status_when_gauge_lookup_is_rate_limited(self, lp_strategy):
        lp_strategy.gauge.initialize = AsyncMock(
            side_effect=_RateLimited("429 Too Many Requests")
        )

        status = await lp_strategy.status()

        assert status["pool_address"] == POOL
        assert status["gauge_address"] is None
        assert "idle_lp" in status["strategy_status"]

    async def test_status_propagates_other_lookup_errors(self, lp_strategy):
        lp_strategy.exchange.initialize = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError, match="boom"):
            await lp_strategy.status()

    async def test_position_receipt(self, lp_strategy, ledger):
        await _funded_deposit(lp_strategy, ledger)

        receipt = await lp_strategy.position_receipt(USER)

        assert receipt["user_address"] == USER
        assert receipt["underlying_token_a"] is not None
        assert receipt["underlying_token_b"] is not None

    async def test_zero_minted_liquidity_is_an_error(self, lp_strategy, ledger):
        ledger.reserve_b = 10**40
        ledger.lp_supply = 1

        result = await _funded_deposit(lp_strategy, ledger)

        assert not result.success
        assert result.failed_step == DepositStep.ADD_LIQUIDITY
        assert isinstance(result.error, LpAgentError)
