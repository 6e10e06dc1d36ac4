from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from eth_utils import to_checksum_address

from lp_agent.adapters.token_adapter.adapter import TokenAdapter
from lp_agent.adapters.wallet_adapter.adapter import WalletAdapter
from lp_agent.core.adapters.BaseAdapter import BaseAdapter, require_initialized
from lp_agent.core.adapters.models import (
    LiquidityReceipt,
    PoolReference,
    RemovalReceipt,
    TokenAmount,
)
from lp_agent.core.constants.aerodrome import (
    AERODROME_POOL_FACTORY,
    AERODROME_ROUTER,
)
from lp_agent.core.constants.aerodrome_abi import POOL_FACTORY_ABI, ROUTER_ABI
from lp_agent.core.constants.base import (
    BPS_DENOMINATOR,
    DEFAULT_DEADLINE_SECONDS,
    QUOTE_FALLBACK_MIN_OUT,
    RECOMMENDED_MAX_SLIPPAGE_BPS,
    RECOMMENDED_MIN_SLIPPAGE_BPS,
)
from lp_agent.core.constants.contracts import BASE_VIRTUAL, BASE_WETH, ZERO_ADDRESS
from lp_agent.core.config import LIQUIDITY_MIN_POLICIES
from lp_agent.core.errors import (
    PoolNotFoundError,
    QuoteUnavailableError,
    RouteError,
    SwapRevertedError,
)
from lp_agent.core.utils.retry import BackoffPolicy
from lp_agent.core.utils.transaction import (
    GasEstimationError,
    TransactionRevertedError,
    encode_call,
)
from lp_agent.core.utils.web3 import web3_from_chain_id


@dataclass(frozen=True)
class Route:
    from_token: str
    to_token: str
    stable: bool
    factory: str = AERODROME_POOL_FACTORY

    def as_tuple(self) -> tuple[str, str, bool, str]:
        return (
            to_checksum_address(self.from_token),
            to_checksum_address(self.to_token),
            bool(self.stable),
            to_checksum_address(self.factory),
        )


def validate_routes(routes: Sequence[Route]) -> list[Route]:
    routes = list(routes)
    if not routes:
        raise RouteError("swap path must contain at least one hop")
    for i, (hop, nxt) in enumerate(zip(routes, routes[1:])):
        if to_checksum_address(hop.to_token) != to_checksum_address(nxt.from_token):
            raise RouteError(
                f"hop {i} ends in {hop.to_token} but hop {i + 1} starts at "
                f"{nxt.from_token}"
            )
    return routes


def apply_slippage(amount: int, slippage_bps: int) -> int:
    return int(amount) * (BPS_DENOMINATOR - int(slippage_bps)) // BPS_DENOMINATOR


def _is_zero_address(address: Any) -> bool:
    return not address or int(str(address), 16) == 0


class AerodromeAdapter(BaseAdapter):
    """Router and pool-factory access for a single Aerodrome v2 pool."""

    adapter_type = "AERODROME"

    def __init__(
        self,
        wallet: WalletAdapter,
        tokens: TokenAdapter,
        config: dict[str, Any] | None = None,
        *,
        token_a: str = BASE_WETH,
        token_b: str = BASE_VIRTUAL,
        stable: bool = False,
        router: str = AERODROME_ROUTER,
        factory: str = AERODROME_POOL_FACTORY,
        liquidity_min_policy: str = "none",
        deadline_seconds: int = DEFAULT_DEADLINE_SECONDS,
        read_policy: BackoffPolicy | None = None,
    ) -> None:
        super().__init__("aerodrome_adapter", config)
        if liquidity_min_policy not in LIQUIDITY_MIN_POLICIES:
            raise ValueError(
                f"liquidity_min_policy must be one of {LIQUIDITY_MIN_POLICIES}"
            )
        self.wallet = wallet
        self.tokens = tokens
        self.chain_id = wallet.chain_id
        self.token_a = to_checksum_address(token_a)
        self.token_b = to_checksum_address(token_b)
        self.stable = bool(stable)
        self.router = to_checksum_address(router)
        self.factory = to_checksum_address(factory)
        self.liquidity_min_policy = liquidity_min_policy
        self.deadline_seconds = int(deadline_seconds)
        self.read_policy = read_policy or wallet.read_policy
        self.pool: PoolReference | None = None

    @property
    def is_initialized(self) -> bool:
        return self.pool is not None

    async def initialize(self) -> PoolReference:
        if self.pool is not None:
            return self.pool
        address = await self.get_pool(self.token_a, self.token_b, self.stable)
        if _is_zero_address(address):
            kind = "stable" if self.stable else "volatile"
            raise PoolNotFoundError(
                f"No {kind} pool for {self.token_a}/{self.token_b} on {self.factory}"
            )
        self.pool = PoolReference(
            token_a=self.token_a,
            token_b=self.token_b,
            stable=self.stable,
            address=to_checksum_address(address),
        )
        self.logger.info(f"Resolved pool {self.pool.address}")
        return self.pool

    # -----------------------------
    # Read helpers
    # -----------------------------

    async def get_pool(self, token_a: str, token_b: str, stable: bool) -> str:
        token_a = to_checksum_address(token_a)
        token_b = to_checksum_address(token_b)

        async def _read() -> str:
            async with web3_from_chain_id(self.chain_id) as web3:
                c = web3.eth.contract(address=self.factory, abi=POOL_FACTORY_ABI)
                pool = await c.functions.getPool(token_a, token_b, bool(stable)).call()
                return ZERO_ADDRESS if _is_zero_address(pool) else to_checksum_address(pool)

        return await self.read_policy.run(_read)

    async def get_amounts_out(self, amount_in: int, routes: list[Route]) -> list[int]:
        amount_in = int(amount_in)
        route_tuples = [r.as_tuple() for r in validate_routes(routes)]

        async def _read() -> list[int]:
            async with web3_from_chain_id(self.chain_id) as web3:
                c = web3.eth.contract(address=self.router, abi=ROUTER_ABI)
                amounts = await c.functions.getAmountsOut(
                    amount_in, route_tuples
                ).call()
                return [int(a) for a in amounts]

        return await self.read_policy.run(_read)

    @require_initialized
    async def quote_add_liquidity(
        self, amount_a_desired: int, amount_b_desired: int
    ) -> tuple[int, int, int]:
        async def _read() -> tuple[int, int, int]:
            async with web3_from_chain_id(self.chain_id) as web3:
                c = web3.eth.contract(address=self.router, abi=ROUTER_ABI)
                a, b, liquidity = await c.functions.quoteAddLiquidity(
                    self.token_a,
                    self.token_b,
                    self.stable,
                    self.factory,
                    int(amount_a_desired),
                    int(amount_b_desired),
                ).call()
                return int(a), int(b), int(liquidity)

        return await self.read_policy.run(_read)

    @require_initialized
    async def quote_remove_liquidity(self, lp_amount: int) -> tuple[int, int]:
        async def _read() -> tuple[int, int]:
            async with web3_from_chain_id(self.chain_id) as web3:
                c = web3.eth.contract(address=self.router, abi=ROUTER_ABI)
                a, b = await c.functions.quoteRemoveLiquidity(
                    self.token_a,
                    self.token_b,
                    self.stable,
                    self.factory,
                    int(lp_amount),
                ).call()
                return int(a), int(b)

        return await self.read_policy.run(_read)

    def single_hop(self, token_in: str, token_out: str) -> list[Route]:
        return [Route(token_in, token_out, stable=False, factory=self.factory)]

    @require_initialized
    async def quote_swap_output(
        self, amount_in: int, routes: list[Route]
    ) -> TokenAmount:
        routes = validate_routes(routes)
        try:
            amounts = await self.get_amounts_out(amount_in, routes)
        except RouteError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise QuoteUnavailableError(
                f"No quote for {amount_in} via {len(routes)} hop(s): {exc}"
            ) from exc
        if not amounts or amounts[-1] <= 0:
            raise QuoteUnavailableError(f"Zero quote for {amount_in} via {routes}")
        decimals = await self.tokens.get_decimals(routes[-1].to_token)
        return TokenAmount(amounts[-1], decimals)

    async def sample_quote(
        self, token_in: str, token_out: str, amount_in: int
    ) -> int | None:
        """Router reachability check; ``None`` means no quote came back."""
        try:
            amounts = await self.get_amounts_out(
                amount_in, self.single_hop(token_in, token_out)
            )
        except Exception as exc:  # noqa: BLE001
            self.logger.warning(f"Router quote check failed: {exc}")
            return None
        return amounts[-1] if amounts else None

    # -----------------------------
    # Tx helpers
    # -----------------------------

    def _deadline(self, seconds_from_now: int | None = None) -> int:
        if seconds_from_now is None:
            seconds_from_now = self.deadline_seconds
        return int(time.time()) + int(seconds_from_now)

    def _validate_slippage_bps(self, slippage_bps: int) -> int:
        bps = int(slippage_bps)
        if bps < 0 or bps >= BPS_DENOMINATOR:
            raise ValueError("slippage_bps must be in [0, 10000)")
        if not RECOMMENDED_MIN_SLIPPAGE_BPS <= bps <= RECOMMENDED_MAX_SLIPPAGE_BPS:
            self.logger.warning(
                f"slippage_bps={bps} outside recommended range "
                f"{RECOMMENDED_MIN_SLIPPAGE_BPS}-{RECOMMENDED_MAX_SLIPPAGE_BPS}"
            )
        return bps

    async def _swap_min_out(
        self, amount_in: int, routes: list[Route], slippage_bps: int
    ) -> int:
        try:
            quoted = await self.quote_swap_output(amount_in, routes)
        except QuoteUnavailableError as exc:
            self.logger.warning(
                f"{exc}; using output floor of {QUOTE_FALLBACK_MIN_OUT} base unit "
                "(no output protection for this swap)"
            )
            return QUOTE_FALLBACK_MIN_OUT
        return max(apply_slippage(quoted.raw, slippage_bps), QUOTE_FALLBACK_MIN_OUT)

    @require_initialized
    async def execute_swap(
        self,
        amount_in: int,
        routes: list[Route],
        recipient: str,
        slippage_bps: int,
        deadline: int | None = None,
    ) -> str:
        """Swap ``amount_in`` along ``routes`` with a quote-derived output floor.

        The router must already hold an allowance for ``routes[0].from_token``.
        """
        routes = validate_routes(routes)
        bps = self._validate_slippage_bps(slippage_bps)
        amount_in = int(amount_in)
        if amount_in <= 0:
            raise ValueError("amount_in must be positive")

        amount_out_min = await self._swap_min_out(amount_in, routes, bps)
        tx = await encode_call(
            target=self.router,
            abi=ROUTER_ABI,
            fn_name="swapExactTokensForTokens",
            args=[
                amount_in,
                amount_out_min,
                [r.as_tuple() for r in routes],
                to_checksum_address(recipient),
                int(deadline or self._deadline()),
            ],
            from_address=self.wallet.address,
            chain_id=self.chain_id,
        )
        try:
            tx_hash = await self.wallet.send(tx)
        except (TransactionRevertedError, GasEstimationError) as exc:
            raise SwapRevertedError(
                f"Swap of {amount_in} {routes[0].from_token} -> "
                f"{routes[-1].to_token} rejected (min out {amount_out_min})"
            ) from exc
        self.logger.info(
            f"Swapped {amount_in} {routes[0].from_token} -> {routes[-1].to_token} "
            f"(min out {amount_out_min}): {tx_hash}"
        )
        return tx_hash

    async def _lp_token(self, token_a: str, token_b: str) -> str:
        pair = {to_checksum_address(token_a), to_checksum_address(token_b)}
        if self.pool is not None and pair == {self.pool.token_a, self.pool.token_b}:
            return self.pool.address
        address = await self.get_pool(token_a, token_b, self.stable)
        if _is_zero_address(address):
            raise PoolNotFoundError(f"No pool for {token_a}/{token_b}")
        return address

    async def _liquidity_floors(
        self, amount_a: int, amount_b: int, slippage_bps: int
    ) -> tuple[int, int]:
        if self.liquidity_min_policy == "none":
            return 0, 0
        quote_a, quote_b, _ = await self.quote_add_liquidity(amount_a, amount_b)
        return apply_slippage(quote_a, slippage_bps), apply_slippage(
            quote_b, slippage_bps
        )

    async def _removal_floors(self, lp_amount: int, slippage_bps: int) -> tuple[int, int]:
        if self.liquidity_min_policy == "none":
            return 0, 0
        quote_a, quote_b = await self.quote_remove_liquidity(lp_amount)
        return apply_slippage(quote_a, slippage_bps), apply_slippage(
            quote_b, slippage_bps
        )

    @require_initialized
    async def add_liquidity(
        self,
        token_a: str,
        token_b: str,
        amount_a_desired: int,
        amount_b_desired: int,
        recipient: str,
        slippage_bps: int,
        deadline: int | None = None,
    ) -> LiquidityReceipt:
        """Provide liquidity and report the LP minted to ``recipient``.

        Minted liquidity is the recipient's LP balance after confirmation minus
        the balance before; event logs are not consulted.
        """
        token_a = to_checksum_address(token_a)
        token_b = to_checksum_address(token_b)
        recipient = to_checksum_address(recipient)
        amount_a_desired = int(amount_a_desired)
        amount_b_desired = int(amount_b_desired)
        if amount_a_desired <= 0 or amount_b_desired <= 0:
            raise ValueError("amount_a_desired and amount_b_desired must be positive")
        bps = self._validate_slippage_bps(slippage_bps)

        lp_token = await self._lp_token(token_a, token_b)
        amount_a_min, amount_b_min = await self._liquidity_floors(
            amount_a_desired, amount_b_desired, bps
        )
        before = await self.tokens.get_balance(lp_token, recipient)

        tx = await encode_call(
            target=self.router,
            abi=ROUTER_ABI,
            fn_name="addLiquidity",
            args=[
                token_a,
                token_b,
                self.stable,
                amount_a_desired,
                amount_b_desired,
                amount_a_min,
                amount_b_min,
                recipient,
                int(deadline or self._deadline()),
            ],
            from_address=self.wallet.address,
            chain_id=self.chain_id,
        )
        tx_hash = await self.wallet.send(tx)

        after = await self.tokens.get_balance(lp_token, recipient)
        minted = TokenAmount(max(after.raw - before.raw, 0), after.decimals)
        self.logger.info(f"Added liquidity, minted {minted} LP: {tx_hash}")
        return LiquidityReceipt(tx_hash=tx_hash, liquidity=minted)

    @require_initialized
    async def remove_liquidity(
        self,
        token_a: str,
        token_b: str,
        lp_amount: int,
        recipient: str,
        slippage_bps: int,
        deadline: int | None = None,
    ) -> RemovalReceipt:
        token_a = to_checksum_address(token_a)
        token_b = to_checksum_address(token_b)
        recipient = to_checksum_address(recipient)
        lp_amount = int(lp_amount)
        if lp_amount <= 0:
            raise ValueError("lp_amount must be positive")
        bps = self._validate_slippage_bps(slippage_bps)

        amount_a_min, amount_b_min = await self._removal_floors(lp_amount, bps)
        before_a = await self.tokens.get_balance(token_a, recipient)
        before_b = await self.tokens.get_balance(token_b, recipient)

        tx = await encode_call(
            target=self.router,
            abi=ROUTER_ABI,
            fn_name="removeLiquidity",
            args=[
                token_a,
                token_b,
                self.stable,
                lp_amount,
                amount_a_min,
                amount_b_min,
                recipient,
                int(deadline or self._deadline()),
            ],
            from_address=self.wallet.address,
            chain_id=self.chain_id,
        )
        tx_hash = await self.wallet.send(tx)

        after_a = await self.tokens.get_balance(token_a, recipient)
        after_b = await self.tokens.get_balance(token_b, recipient)
        received_a = TokenAmount(max(after_a.raw - before_a.raw, 0), after_a.decimals)
        received_b = TokenAmount(max(after_b.raw - before_b.raw, 0), after_b.decimals)
        self.logger.info(
            f"Removed {lp_amount} LP for {received_a} / {received_b}: {tx_hash}"
        )
        return RemovalReceipt(tx_hash=tx_hash, amount_a=received_a, amount_b=received_b)
