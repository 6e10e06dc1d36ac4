from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from eth_utils import is_address, to_checksum_address
from pydantic import BaseModel, ConfigDict, Field, field_validator

from lp_agent.core.adapters.models import TokenAmount
from lp_agent.core.constants.base import BPS_DENOMINATOR, DEFAULT_SLIPPAGE_BPS


def _checksum(value: str) -> str:
    if not isinstance(value, str) or not is_address(value):
        raise ValueError(f"not an address: {value!r}")
    return to_checksum_address(value)


class _Intent(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_address: str = Field(..., description="End user the workflow acts for")
    slippage_bps: int = Field(
        default=DEFAULT_SLIPPAGE_BPS, description="Swap slippage (50 = 0.50%)"
    )

    @field_validator("user_address")
    @classmethod
    def _validate_user(cls, value: str) -> str:
        return _checksum(value)

    @field_validator("slippage_bps")
    @classmethod
    def _validate_slippage(cls, value: int) -> int:
        if value < 0 or value >= BPS_DENOMINATOR:
            raise ValueError("slippage_bps must be in [0, 10000)")
        return value


class DepositIntent(_Intent):
    amount: int = Field(..., gt=0, description="Stablecoin amount in base units")


class WithdrawIntent(_Intent):
    lp_amount: int = Field(..., gt=0, description="LP amount in base units")


class DepositStep(StrEnum):
    TRANSFER_IN = "transfer_in"
    APPROVE_FOR_SWAP = "approve_for_swap"
    SWAP_TO_TOKEN_A = "swap_to_token_a"
    SWAP_TO_TOKEN_B = "swap_to_token_b"
    RECONCILE_BALANCES = "reconcile_balances"
    APPROVE_TOKEN_A_FOR_LIQUIDITY = "approve_token_a_for_liquidity"
    APPROVE_TOKEN_B_FOR_LIQUIDITY = "approve_token_b_for_liquidity"
    ADD_LIQUIDITY = "add_liquidity"
    APPROVE_FOR_STAKE = "approve_for_stake"
    STAKE = "stake"


class WithdrawStep(StrEnum):
    UNSTAKE = "unstake"
    APPROVE_LP_FOR_ROUTER = "approve_lp_for_router"
    REMOVE_LIQUIDITY = "remove_liquidity"
    RECONCILE_BALANCES = "reconcile_balances"
    APPROVE_TOKEN_A_FOR_SWAP = "approve_token_a_for_swap"
    APPROVE_TOKEN_B_FOR_SWAP = "approve_token_b_for_swap"
    SWAP_TOKEN_A_TO_STABLE = "swap_token_a_to_stable"
    SWAP_TOKEN_B_TO_STABLE = "swap_token_b_to_stable"
    READ_FINAL_BALANCE = "read_final_balance"
    TRANSFER_OUT = "transfer_out"


class Outcome(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    PRECONDITION_FAILED = "precondition_failed"
    NOTHING_TO_WITHDRAW = "nothing_to_withdraw"
    NOTHING_TO_DO = "nothing_to_do"


@dataclass(frozen=True)
class WorkflowResult:
    """Outcome of one deposit or withdrawal run.

    ``tx_hashes`` holds every confirmed write in order, including the allowance
    reset an approval may need first. Approvals that turned out to be unnecessary
    write nothing and are not included. On failure it is the committed prefix and
    ``error`` is the exception exactly as raised.
    """

    success: bool
    outcome: Outcome
    tx_hashes: tuple[str, ...] = ()
    final_amount: TokenAmount | None = None
    error: BaseException | None = None
    failed_step: str | None = None
    completed_steps: tuple[str, ...] = ()

    @property
    def needs_manual_intervention(self) -> bool:
        return self.outcome is Outcome.FAILED and bool(self.tx_hashes)


@dataclass(frozen=True)
class DepositPrerequisites:
    user_address: str
    amount: TokenAmount
    user_balance: TokenAmount
    user_allowance: int
    operator_gas: TokenAmount
    min_gas_wei: int
    pool_address: str | None
    gauge_address: str | None

    @property
    def has_balance(self) -> bool:
        return self.user_balance.raw >= self.amount.raw

    @property
    def has_allowance(self) -> bool:
        return self.user_allowance >= self.amount.raw

    @property
    def has_gas(self) -> bool:
        return self.operator_gas.raw >= self.min_gas_wei

    @property
    def ready(self) -> bool:
        return (
            self.has_balance
            and self.has_allowance
            and self.has_gas
            and self.pool_address is not None
            and self.gauge_address is not None
        )


@dataclass(frozen=True)
class DepositSimulation:
    amount: TokenAmount
    first_half: int
    second_half: int
    expected_token_a: TokenAmount | None
    expected_token_b: TokenAmount | None
    expected_liquidity: TokenAmount | None
    slippage_bps: int
