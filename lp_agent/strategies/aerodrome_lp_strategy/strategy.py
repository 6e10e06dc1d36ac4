from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from lp_agent.adapters.aerodrome_adapter.adapter import AerodromeAdapter
from lp_agent.adapters.gauge_adapter.adapter import GaugeAdapter
from lp_agent.adapters.token_adapter.adapter import TokenAdapter
from lp_agent.adapters.wallet_adapter.adapter import WalletAdapter
from lp_agent.core.adapters.models import TokenAmount
from lp_agent.core.config import AgentSettings
from lp_agent.core.constants.base import (
    DEFAULT_MIN_GAS_WEI,
    DEFAULT_READ_MIN_INTERVAL_S,
    DEFAULT_SLIPPAGE_BPS,
    LP_TOKEN_DECIMALS,
    NATIVE_DECIMALS,
)
from lp_agent.core.errors import (
    GaugeNotFoundError,
    InsufficientBalanceError,
    LpAgentError,
    NotInitializedError,
    PoolNotFoundError,
    PreconditionError,
    QuoteUnavailableError,
)
from lp_agent.core.strategies.Strategy import StatusDict, Strategy
from lp_agent.core.utils.retry import ReadThrottle
from lp_agent.core.utils.web3 import is_rate_limited_error
from lp_agent.strategies.aerodrome_lp_strategy.constants import (
    MIN_DEPOSIT_RAW,
    POOL_STABLE,
    POOL_TOKEN_A,
    POOL_TOKEN_B,
    STABLE_TOKEN,
)
from lp_agent.strategies.aerodrome_lp_strategy.types import (
    DepositIntent,
    DepositPrerequisites,
    DepositSimulation,
    DepositStep,
    Outcome,
    WithdrawIntent,
    WithdrawStep,
    WorkflowResult,
)

T = TypeVar("T")


class _WorkflowRun:
    """Bookkeeping for one workflow: the step in flight and committed tx hashes."""

    def __init__(self, logger: Any, kind: str):
        self.logger = logger
        self.kind = kind
        self.tx_hashes: list[str] = []
        self.completed: list[str] = []
        self.current: str | None = None

    @contextmanager
    def step(self, name: str) -> Iterator[None]:
        self.current = str(name)
        self.logger.info(f"{self.kind} step={self.current}")
        yield
        self.completed.append(self.current)
        self.current = None

    def record(self, tx_hash: str) -> str:
        self.tx_hashes.append(tx_hash)
        return tx_hash

    def succeeded(self, final_amount: TokenAmount | None) -> WorkflowResult:
        self.logger.info(
            f"{self.kind} completed with {len(self.tx_hashes)} transaction(s)"
        )
        return WorkflowResult(
            success=True,
            outcome=Outcome.COMPLETED,
            tx_hashes=tuple(self.tx_hashes),
            final_amount=final_amount,
            completed_steps=tuple(self.completed),
        )

    def failed(self, exc: BaseException) -> WorkflowResult:
        self.logger.error(f"{self.kind} failed at step={self.current}: {exc}")
        if self.tx_hashes:
            self.logger.warning(
                f"{self.kind} left {len(self.tx_hashes)} committed transaction(s) "
                f"{list(self.tx_hashes)}; manual operator intervention may be needed"
            )
        return WorkflowResult(
            success=False,
            outcome=Outcome.FAILED,
            tx_hashes=tuple(self.tx_hashes),
            error=exc,
            failed_step=self.current,
            completed_steps=tuple(self.completed),
        )


def _precondition_failed(exc: BaseException) -> WorkflowResult:
    return WorkflowResult(success=False, outcome=Outcome.PRECONDITION_FAILED, error=exc)


def split_amount(amount: int) -> tuple[int, int]:
    """Halve ``amount``; the odd unit, if any, stays with the first half."""
    second = int(amount) // 2
    return int(amount) - second, second


class AerodromeLpStrategy(Strategy):
    """Stablecoin in, staked Aerodrome LP out, and back again.

    Every write is confirmed before the next step reads the ledger. A failing
    step ends the run; earlier steps stay committed and are reported in the
    result rather than undone.
    """

    name = "aerodrome_lp_strategy"

    def __init__(
        self,
        wallet: WalletAdapter,
        tokens: TokenAdapter,
        exchange: AerodromeAdapter,
        gauge: GaugeAdapter,
        config: dict[str, Any] | None = None,
        *,
        stable_token: str = STABLE_TOKEN,
        min_gas_wei: int = DEFAULT_MIN_GAS_WEI,
        default_slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        throttle: ReadThrottle | None = None,
    ):
        super().__init__(config)
        self.wallet = wallet
        self.tokens = tokens
        self.exchange = exchange
        self.gauge = gauge
        self.stable_token = stable_token
        self.min_gas_wei = int(min_gas_wei)
        self.default_slippage_bps = int(default_slippage_bps)
        self.throttle = throttle or ReadThrottle(DEFAULT_READ_MIN_INTERVAL_S)

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> AerodromeLpStrategy:
        wallet = WalletAdapter.from_settings(settings)
        tokens = TokenAdapter(wallet)
        exchange = AerodromeAdapter(
            wallet,
            tokens,
            token_a=POOL_TOKEN_A,
            token_b=POOL_TOKEN_B,
            stable=POOL_STABLE,
            liquidity_min_policy=settings.liquidity_min_policy,
            deadline_seconds=settings.deadline_seconds,
        )
        gauge = GaugeAdapter(wallet)
        return cls(
            wallet,
            tokens,
            exchange,
            gauge,
            min_gas_wei=settings.min_gas_wei,
            default_slippage_bps=settings.slippage_bps,
            throttle=ReadThrottle(settings.read_min_interval_s),
        )

    @property
    def operator(self) -> str:
        return self.wallet.address

    @property
    def token_a(self) -> str:
        return self.exchange.token_a

    @property
    def token_b(self) -> str:
        return self.exchange.token_b

    async def setup(self) -> None:
        pool = await self.exchange.initialize()
        await self.gauge.initialize(pool.address)

    async def _ensure_ready(self) -> None:
        if not (self.exchange.is_initialized and self.gauge.is_initialized):
            await self.setup()
        await self.wallet.ensure_gas_sufficiency(self.min_gas_wei)

    # -----------------------------
    # Deposit
    # -----------------------------

    async def _check_deposit_preconditions(self, intent: DepositIntent) -> None:
        if intent.amount < MIN_DEPOSIT_RAW:
            raise PreconditionError(
                f"Deposit of {intent.amount} base units is too small to split"
            )
        await self._ensure_ready()
        balance = await self.tokens.get_balance(self.stable_token, intent.user_address)
        if balance.raw < intent.amount:
            raise InsufficientBalanceError(
                self.stable_token, intent.user_address, intent.amount, balance.raw
            )

    async def deposit(self, intent: DepositIntent) -> WorkflowResult:
        try:
            await self._check_deposit_preconditions(intent)
        except (
            PreconditionError,
            PoolNotFoundError,
            GaugeNotFoundError,
            NotInitializedError,
        ) as exc:
            self.logger.error(f"Deposit preconditions not met: {exc}")
            return _precondition_failed(exc)

        run = _WorkflowRun(self.logger, "deposit")
        try:
            return await self._run_deposit(run, intent)
        except Exception as exc:  # noqa: BLE001
            return run.failed(exc)

    async def _run_deposit(
        self, run: _WorkflowRun, intent: DepositIntent
    ) -> WorkflowResult:
        operator = self.operator
        bps = intent.slippage_bps
        router = self.exchange.router

        with run.step(DepositStep.TRANSFER_IN):
            run.record(
                await self.tokens.transfer_from(
                    self.stable_token, intent.user_address, operator, intent.amount
                )
            )

        with run.step(DepositStep.APPROVE_FOR_SWAP):
            await self._approve(run, self.stable_token, router, intent.amount)

        first_half, second_half = split_amount(intent.amount)
        with run.step(DepositStep.SWAP_TO_TOKEN_A):
            run.record(
                await self.exchange.execute_swap(
                    first_half,
                    self.exchange.single_hop(self.stable_token, self.token_a),
                    operator,
                    bps,
                )
            )
        with run.step(DepositStep.SWAP_TO_TOKEN_B):
            run.record(
                await self.exchange.execute_swap(
                    second_half,
                    self.exchange.single_hop(self.stable_token, self.token_b),
                    operator,
                    bps,
                )
            )

        with run.step(DepositStep.RECONCILE_BALANCES):
            balance_a = await self.tokens.get_balance(self.token_a)
            balance_b = await self.tokens.get_balance(self.token_b)
            self.logger.info(f"Reconciled balances: {balance_a} / {balance_b}")

        with run.step(DepositStep.APPROVE_TOKEN_A_FOR_LIQUIDITY):
            await self._approve(run, self.token_a, router, balance_a.raw)
        with run.step(DepositStep.APPROVE_TOKEN_B_FOR_LIQUIDITY):
            await self._approve(run, self.token_b, router, balance_b.raw)

        with run.step(DepositStep.ADD_LIQUIDITY):
            receipt = await self.exchange.add_liquidity(
                self.token_a,
                self.token_b,
                balance_a.raw,
                balance_b.raw,
                operator,
                bps,
            )
            run.record(receipt.tx_hash)
            if receipt.liquidity.is_zero():
                raise LpAgentError(f"addLiquidity {receipt.tx_hash} minted no LP")

        minted = receipt.liquidity
        with run.step(DepositStep.APPROVE_FOR_STAKE):
            await self._approve(
                run, self.exchange.pool.address, self.gauge.address, minted.raw
            )

        with run.step(DepositStep.STAKE):
            run.record(await self.gauge.stake(minted.raw))

        return run.succeeded(minted)

    # -----------------------------
    # Withdraw
    # -----------------------------

    async def withdraw(self, intent: WithdrawIntent) -> WorkflowResult:
        try:
            await self._ensure_ready()
        except (
            PreconditionError,
            PoolNotFoundError,
            GaugeNotFoundError,
            NotInitializedError,
        ) as exc:
            self.logger.error(f"Withdraw preconditions not met: {exc}")
            return _precondition_failed(exc)

        run = _WorkflowRun(self.logger, "withdraw")
        try:
            return await self._run_withdraw(run, intent)
        except Exception as exc:  # noqa: BLE001
            return run.failed(exc)

    async def _approve(
        self, run: _WorkflowRun, token: str, spender: str, amount: int
    ) -> None:
        # Every confirmed write, allowance reset included, is recorded as it lands.
        await self.tokens.approve(token, spender, amount, on_sent=run.record)

    async def _swap_to_stable(
        self, run: _WorkflowRun, token: str, amount: int, bps: int
    ) -> None:
        if amount <= 0:
            self.logger.info(f"No {token} to swap back, skipping")
            return
        run.record(
            await self.exchange.execute_swap(
                amount,
                self.exchange.single_hop(token, self.stable_token),
                self.operator,
                bps,
            )
        )

    async def _run_withdraw(
        self, run: _WorkflowRun, intent: WithdrawIntent
    ) -> WorkflowResult:
        operator = self.operator
        bps = intent.slippage_bps
        router = self.exchange.router

        with run.step(WithdrawStep.UNSTAKE):
            run.record(await self.gauge.unstake(intent.lp_amount))

        with run.step(WithdrawStep.APPROVE_LP_FOR_ROUTER):
            await self._approve(
                run, self.exchange.pool.address, router, intent.lp_amount
            )

        with run.step(WithdrawStep.REMOVE_LIQUIDITY):
            removal = await self.exchange.remove_liquidity(
                self.token_a, self.token_b, intent.lp_amount, operator, bps
            )
            run.record(removal.tx_hash)

        with run.step(WithdrawStep.RECONCILE_BALANCES):
            balance_a = await self.tokens.get_balance(self.token_a)
            balance_b = await self.tokens.get_balance(self.token_b)
            self.logger.info(f"Reconciled balances: {balance_a} / {balance_b}")

        with run.step(WithdrawStep.APPROVE_TOKEN_A_FOR_SWAP):
            if not balance_a.is_zero():
                await self._approve(run, self.token_a, router, balance_a.raw)
        with run.step(WithdrawStep.APPROVE_TOKEN_B_FOR_SWAP):
            if not balance_b.is_zero():
                await self._approve(run, self.token_b, router, balance_b.raw)

        with run.step(WithdrawStep.SWAP_TOKEN_A_TO_STABLE):
            await self._swap_to_stable(run, self.token_a, balance_a.raw, bps)
        with run.step(WithdrawStep.SWAP_TOKEN_B_TO_STABLE):
            await self._swap_to_stable(run, self.token_b, balance_b.raw, bps)

        with run.step(WithdrawStep.READ_FINAL_BALANCE):
            final = await self.tokens.get_balance(self.stable_token)
            if final.is_zero():
                raise LpAgentError("No stablecoin to return after swaps")

        with run.step(WithdrawStep.TRANSFER_OUT):
            run.record(
                await self.tokens.transfer(
                    self.stable_token, intent.user_address, final.raw
                )
            )

        return run.succeeded(final)

    async def withdraw_all(
        self, user_address: str, slippage_bps: int | None = None
    ) -> WorkflowResult:
        """Withdraw the operator's whole staked position to ``user_address``."""
        bps = self.default_slippage_bps if slippage_bps is None else slippage_bps
        try:
            if not self.gauge.is_initialized:
                await self.setup()
            staked = await self.gauge.get_staked_balance(degrade_on_rate_limit=False)
        except (PoolNotFoundError, GaugeNotFoundError, NotInitializedError) as exc:
            return _precondition_failed(exc)
        except Exception as exc:  # noqa: BLE001
            self.logger.error(f"Could not read staked balance: {exc}")
            return WorkflowResult(success=False, outcome=Outcome.FAILED, error=exc)

        if staked.is_zero():
            self.logger.info("No staked LP, nothing to withdraw")
            return WorkflowResult(
                success=False,
                outcome=Outcome.NOTHING_TO_WITHDRAW,
                final_amount=staked,
            )
        self.logger.info(f"Withdrawing all {staked} staked LP")
        return await self.withdraw(
            WithdrawIntent(
                user_address=user_address, lp_amount=staked.raw, slippage_bps=bps
            )
        )

    # -----------------------------
    # Manual operator actions
    # -----------------------------

    async def stake_existing_lp(self) -> WorkflowResult:
        """Stake LP left idle in the operator wallet, e.g. after a failed deposit."""
        try:
            await self._ensure_ready()
        except (PreconditionError, PoolNotFoundError, GaugeNotFoundError) as exc:
            return _precondition_failed(exc)

        run = _WorkflowRun(self.logger, "stake-existing")
        try:
            idle = await self.tokens.get_balance(self.exchange.pool.address)
            if idle.is_zero():
                self.logger.info("No idle LP to stake")
                return WorkflowResult(
                    success=False, outcome=Outcome.NOTHING_TO_DO, final_amount=idle
                )
            with run.step(DepositStep.APPROVE_FOR_STAKE):
                await self._approve(
                    run, self.exchange.pool.address, self.gauge.address, idle.raw
                )
            with run.step(DepositStep.STAKE):
                run.record(await self.gauge.stake(idle.raw))
        except Exception as exc:  # noqa: BLE001
            return run.failed(exc)
        return run.succeeded(idle)

    async def refund(self, user_address: str, amount: int | None = None) -> WorkflowResult:
        """Send the operator's stablecoin (all of it unless ``amount``) to a user.

        This is an explicit operator action; workflows never call it.
        """
        try:
            await self.wallet.ensure_gas_sufficiency(self.min_gas_wei)
        except PreconditionError as exc:
            return _precondition_failed(exc)

        run = _WorkflowRun(self.logger, "refund")
        try:
            balance = await self.tokens.get_balance(self.stable_token)
            to_send = balance.raw if amount is None else int(amount)
            if to_send <= 0:
                self.logger.info("No stablecoin to refund")
                return WorkflowResult(
                    success=False, outcome=Outcome.NOTHING_TO_DO, final_amount=balance
                )
            if to_send > balance.raw:
                raise InsufficientBalanceError(
                    self.stable_token, self.operator, to_send, balance.raw
                )
            with run.step(WithdrawStep.TRANSFER_OUT):
                run.record(
                    await self.tokens.transfer(self.stable_token, user_address, to_send)
                )
        except InsufficientBalanceError as exc:
            return _precondition_failed(exc)
        except Exception as exc:  # noqa: BLE001
            return run.failed(exc)
        return run.succeeded(TokenAmount(to_send, balance.decimals))

    # -----------------------------
    # Diagnostics
    # -----------------------------

    async def check_deposit_prerequisites(
        self, user_address: str, amount: int
    ) -> DepositPrerequisites:
        pool_address = gauge_address = None
        try:
            await self.setup()
            pool_address = self.exchange.pool.address
            gauge_address = self.gauge.address
        except PoolNotFoundError as exc:
            self.logger.warning(str(exc))
        except GaugeNotFoundError as exc:
            pool_address = self.exchange.pool.address
            self.logger.warning(str(exc))

        balance = await self.tokens.get_balance(self.stable_token, user_address)
        allowance = await self.tokens.get_allowance(
            self.stable_token, self.operator, owner=user_address
        )
        gas = await self.wallet.get_native_balance()
        return DepositPrerequisites(
            user_address=user_address,
            amount=TokenAmount(int(amount), balance.decimals),
            user_balance=balance,
            user_allowance=int(allowance),
            operator_gas=gas,
            min_gas_wei=self.min_gas_wei,
            pool_address=pool_address,
            gauge_address=gauge_address,
        )

    async def _quote_or_none(self, amount: int, token_out: str) -> TokenAmount | None:
        try:
            return await self.exchange.quote_swap_output(
                amount, self.exchange.single_hop(self.stable_token, token_out)
            )
        except QuoteUnavailableError as exc:
            self.logger.warning(str(exc))
            return None

    async def simulate_deposit(
        self, amount: int, slippage_bps: int | None = None
    ) -> DepositSimulation:
        """Quote-only dry run of a deposit; nothing is signed."""
        bps = self.default_slippage_bps if slippage_bps is None else slippage_bps
        await self.exchange.initialize()
        first_half, second_half = split_amount(amount)
        expected_a = await self._quote_or_none(first_half, self.token_a)
        expected_b = await self._quote_or_none(second_half, self.token_b)

        expected_liquidity = None
        if expected_a is not None and expected_b is not None:
            _, _, liquidity = await self.exchange.quote_add_liquidity(
                expected_a.raw, expected_b.raw
            )
            expected_liquidity = TokenAmount(liquidity, LP_TOKEN_DECIMALS)

        decimals = await self.tokens.get_decimals(self.stable_token)
        return DepositSimulation(
            amount=TokenAmount(int(amount), decimals),
            first_half=first_half,
            second_half=second_half,
            expected_token_a=expected_a,
            expected_token_b=expected_b,
            expected_liquidity=expected_liquidity,
            slippage_bps=bps,
        )

    async def _degraded(self, read: Callable[[], Awaitable[T]], default: T) -> T:
        await self.throttle.wait()
        try:
            return await read()
        except Exception as exc:
            if not is_rate_limited_error(exc):
                raise
            self.logger.warning(f"Rate-limited status read, showing default: {exc}")
            return default

    async def _status(self) -> StatusDict:
        try:
            await self._degraded(self.setup, None)
        except (PoolNotFoundError, GaugeNotFoundError) as exc:
            self.logger.warning(str(exc))
        pool_address = self.exchange.pool.address if self.exchange.pool else None
        gauge_address = self.gauge.address

        gas = await self._degraded(
            self.wallet.get_native_balance, TokenAmount.zero(NATIVE_DECIMALS)
        )
        balances: dict[str, str] = {}
        for label, token in (
            ("stable", self.stable_token),
            ("token_a", self.token_a),
            ("token_b", self.token_b),
        ):
            amount = await self._degraded(
                lambda token=token: self.tokens.get_balance(token), None
            )
            balances[label] = amount.display() if amount is not None else "unavailable"

        staked = TokenAmount.zero(LP_TOKEN_DECIMALS)
        extra: dict[str, Any] = {"balances": balances}
        if gauge_address is not None:
            await self.throttle.wait()
            staked = await self.gauge.get_staked_balance()
            total = await self._degraded(self.gauge.get_total_staked, None)
            earned = await self._degraded(self.gauge.get_earned, None)
            extra["total_staked"] = total.display() if total is not None else None
            extra["earned"] = earned
        if pool_address is not None:
            idle = await self._degraded(
                lambda: self.tokens.get_balance(pool_address), None
            )
            extra["idle_lp"] = idle.display() if idle is not None else None

        return StatusDict(
            operator_address=self.operator,
            gas_available=gas.display(),
            gassed_up=gas.raw >= self.min_gas_wei,
            pool_address=pool_address,
            gauge_address=gauge_address,
            staked_lp=staked.display(),
            strategy_status=extra,
        )

    async def position_receipt(self, user_address: str) -> dict[str, Any]:
        """What a withdraw-all for ``user_address`` would currently unwind."""
        await self.setup()
        await self.throttle.wait()
        staked = await self.gauge.get_staked_balance()
        underlying_a = underlying_b = None
        if not staked.is_zero():
            await self.throttle.wait()
            amount_a, amount_b = await self.exchange.quote_remove_liquidity(staked.raw)
            underlying_a = TokenAmount(
                amount_a, await self.tokens.get_decimals(self.token_a)
            )
            underlying_b = TokenAmount(
                amount_b, await self.tokens.get_decimals(self.token_b)
            )
        user_balance = await self._degraded(
            lambda: self.tokens.get_balance(self.stable_token, user_address), None
        )
        return {
            "user_address": user_address,
            "operator_address": self.operator,
            "pool_address": self.exchange.pool.address,
            "gauge_address": self.gauge.address,
            "staked_lp": staked.display(),
            "underlying_token_a": underlying_a.display() if underlying_a else None,
            "underlying_token_b": underlying_b.display() if underlying_b else None,
            "user_stable_balance": (
                user_balance.display() if user_balance is not None else None
            ),
        }
