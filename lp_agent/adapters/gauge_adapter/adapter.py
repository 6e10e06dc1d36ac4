from __future__ import annotations

from typing import Any

from eth_utils import to_checksum_address

from lp_agent.adapters.wallet_adapter.adapter import WalletAdapter
from lp_agent.core.adapters.BaseAdapter import BaseAdapter, require_initialized
from lp_agent.core.adapters.models import GaugeReference, TokenAmount
from lp_agent.core.constants.aerodrome import AERODROME_VOTER
from lp_agent.core.constants.aerodrome_abi import GAUGE_ABI, VOTER_ABI
from lp_agent.core.constants.base import LP_TOKEN_DECIMALS
from lp_agent.core.errors import GaugeNotFoundError
from lp_agent.core.utils.retry import BackoffPolicy
from lp_agent.core.utils.transaction import encode_call
from lp_agent.core.utils.web3 import is_rate_limited_error, web3_from_chain_id


class GaugeAdapter(BaseAdapter):
    adapter_type = "GAUGE"

    def __init__(
        self,
        wallet: WalletAdapter,
        config: dict[str, Any] | None = None,
        *,
        voter: str = AERODROME_VOTER,
        read_policy: BackoffPolicy | None = None,
    ) -> None:
        super().__init__("gauge_adapter", config)
        self.wallet = wallet
        self.chain_id = wallet.chain_id
        self.voter = to_checksum_address(voter)
        self.read_policy = read_policy or wallet.read_policy
        self.gauge: GaugeReference | None = None

    @property
    def is_initialized(self) -> bool:
        return self.gauge is not None

    async def gauge_for_pool(self, pool: str) -> str | None:
        pool = to_checksum_address(pool)

        async def _read() -> str:
            async with web3_from_chain_id(self.chain_id) as web3:
                c = web3.eth.contract(address=self.voter, abi=VOTER_ABI)
                return await c.functions.gauges(pool).call()

        gauge = await self.read_policy.run(_read)
        if not gauge or int(str(gauge), 16) == 0:
            return None
        return to_checksum_address(gauge)

    async def initialize(self, pool_address: str) -> GaugeReference:
        pool_address = to_checksum_address(pool_address)
        if self.gauge is not None and self.gauge.pool_address == pool_address:
            return self.gauge
        gauge = await self.gauge_for_pool(pool_address)
        if gauge is None:
            raise GaugeNotFoundError(f"No gauge registered for pool {pool_address}")
        self.gauge = GaugeReference(pool_address=pool_address, address=gauge)
        self.logger.info(f"Resolved gauge {gauge} for pool {pool_address}")
        return self.gauge

    @property
    def address(self) -> str | None:
        return self.gauge.address if self.gauge else None

    async def _gauge_uint(self, fn_name: str, *args: Any) -> int:
        async def _read() -> int:
            async with web3_from_chain_id(self.chain_id) as web3:
                c = web3.eth.contract(address=self.gauge.address, abi=GAUGE_ABI)
                return int(await getattr(c.functions, fn_name)(*args).call())

        return await self.read_policy.run(_read)

    async def _send(self, fn_name: str, amount: int) -> str:
        amount = int(amount)
        if amount <= 0:
            raise ValueError("amount must be positive")
        tx = await encode_call(
            target=self.gauge.address,
            abi=GAUGE_ABI,
            fn_name=fn_name,
            args=[amount],
            from_address=self.wallet.address,
            chain_id=self.chain_id,
        )
        return await self.wallet.send(tx)

    @require_initialized
    async def stake(self, amount: int) -> str:
        """Deposit LP into the gauge; the gauge must already be approved."""
        tx_hash = await self._send("deposit", amount)
        self.logger.info(f"Staked {amount} LP in {self.gauge.address}: {tx_hash}")
        return tx_hash

    @require_initialized
    async def unstake(self, amount: int) -> str:
        tx_hash = await self._send("withdraw", amount)
        self.logger.info(f"Unstaked {amount} LP from {self.gauge.address}: {tx_hash}")
        return tx_hash

    @require_initialized
    async def get_staked_balance(
        self, account: str | None = None, *, degrade_on_rate_limit: bool = True
    ) -> TokenAmount:
        """Staked LP for ``account`` (default: operator).

        With ``degrade_on_rate_limit`` a rate-limited read reports zero instead of
        raising. Workflow code passes ``False``.
        """
        account = to_checksum_address(account or self.wallet.address)
        try:
            raw = await self._gauge_uint("balanceOf", account)
        except Exception as exc:
            if degrade_on_rate_limit and is_rate_limited_error(exc):
                self.logger.warning(f"Staked balance read rate-limited, showing 0: {exc}")
                return TokenAmount.zero(LP_TOKEN_DECIMALS)
            raise
        return TokenAmount(raw, LP_TOKEN_DECIMALS)

    @require_initialized
    async def get_total_staked(self) -> TokenAmount:
        return TokenAmount(await self._gauge_uint("totalSupply"), LP_TOKEN_DECIMALS)

    @require_initialized
    async def get_earned(self, account: str | None = None) -> int:
        account = to_checksum_address(account or self.wallet.address)
        return await self._gauge_uint("earned", account)
