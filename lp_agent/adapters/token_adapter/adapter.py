from __future__ import annotations

from collections.abc import Callable
from typing import Any

from eth_utils import to_checksum_address

from lp_agent.adapters.wallet_adapter.adapter import WalletAdapter
from lp_agent.core.adapters.BaseAdapter import BaseAdapter
from lp_agent.core.adapters.models import TokenAmount, TokenInfo
from lp_agent.core.errors import TransferRejectedError
from lp_agent.core.utils.retry import BackoffPolicy
from lp_agent.core.utils.tokens import (
    build_send_transaction,
    build_transfer_from_transaction,
    ensure_allowance,
    get_token_allowance,
    get_token_balance,
    get_token_decimals,
    get_token_metadata,
)
from lp_agent.core.utils.transaction import (
    GasEstimationError,
    TransactionRevertedError,
)

# Returned by ``approve`` when the existing allowance already covers the amount.
APPROVAL_NOT_NEEDED = "no-op"


class TokenAdapter(BaseAdapter):
    adapter_type = "TOKEN"

    def __init__(
        self,
        wallet: WalletAdapter,
        config: dict[str, Any] | None = None,
        *,
        read_policy: BackoffPolicy | None = None,
    ):
        super().__init__("token_adapter", config)
        self.wallet = wallet
        self.read_policy = read_policy or wallet.read_policy
        self._decimals_cache: dict[str, int] = {}

    @property
    def chain_id(self) -> int:
        return self.wallet.chain_id

    async def get_decimals(self, token: str) -> int:
        token = to_checksum_address(token)
        if token not in self._decimals_cache:
            self._decimals_cache[token] = await self.read_policy.run(
                lambda: get_token_decimals(token, self.chain_id)
            )
        return self._decimals_cache[token]

    async def get_balance(self, token: str, owner: str | None = None) -> TokenAmount:
        token = to_checksum_address(token)
        owner = to_checksum_address(owner or self.wallet.address)
        decimals = await self.get_decimals(token)
        raw = await self.read_policy.run(
            lambda: get_token_balance(token, self.chain_id, owner)
        )
        return TokenAmount(int(raw), decimals)

    async def get_allowance(
        self, token: str, spender: str, owner: str | None = None
    ) -> int:
        owner = owner or self.wallet.address
        return await self.read_policy.run(
            lambda: get_token_allowance(token, self.chain_id, owner, spender)
        )

    async def get_token_info(self, token: str) -> TokenInfo:
        token = to_checksum_address(token)
        symbol, name, decimals = await self.read_policy.run(
            lambda: get_token_metadata(token, self.chain_id)
        )
        self._decimals_cache[token] = decimals
        return TokenInfo(address=token, symbol=symbol, name=name, decimals=decimals)

    async def approve(
        self,
        token: str,
        spender: str,
        amount: int,
        *,
        on_sent: Callable[[str], Any] | None = None,
    ) -> list[str]:
        """Grant ``spender`` an allowance of exactly ``amount`` from the operator.

        Returns the hash of every approval written, in order. A smaller nonzero
        allowance is reset to zero first, so that case yields ``[reset, approve]``.
        When the current allowance already covers ``amount`` nothing is written
        and ``[APPROVAL_NOT_NEEDED]`` is returned.
        ``on_sent`` sees each hash as soon as it is confirmed.
        """
        token = to_checksum_address(token)
        spender = to_checksum_address(spender)
        sent = await ensure_allowance(
            token_address=token,
            owner=self.wallet.address,
            spender=spender,
            amount=int(amount),
            chain_id=self.chain_id,
            signing_callback=self.wallet.signing_callback,
            read_policy=self.read_policy,
            on_sent=on_sent,
            **self.wallet.send_options,
        )
        if not sent:
            self.logger.info(f"Allowance of {token} for {spender} already sufficient")
            return [APPROVAL_NOT_NEEDED]
        if len(sent) > 1:
            self.logger.info(f"Allowance reset tx: {sent[0]}")
        self.logger.info(f"Approved {amount} of {token} for {spender}: {sent[-1]}")
        return sent

    async def transfer_from(
        self, token: str, from_address: str, to_address: str, amount: int
    ) -> str:
        tx = await build_transfer_from_transaction(
            operator_address=self.wallet.address,
            owner_address=from_address,
            to_address=to_address,
            token_address=token,
            chain_id=self.chain_id,
            amount=int(amount),
        )
        try:
            tx_hash = await self.wallet.send(tx)
        except (TransactionRevertedError, GasEstimationError) as exc:
            raise TransferRejectedError(
                f"transferFrom of {amount} {token} from {from_address} rejected "
                "(check allowance and balance)"
            ) from exc
        self.logger.info(f"Transferred {amount} of {token} from {from_address}: {tx_hash}")
        return tx_hash

    async def transfer(self, token: str, to_address: str, amount: int) -> str:
        tx = await build_send_transaction(
            from_address=self.wallet.address,
            to_address=to_address,
            token_address=token,
            chain_id=self.chain_id,
            amount=int(amount),
        )
        tx_hash = await self.wallet.send(tx)
        self.logger.info(f"Transferred {amount} of {token} to {to_address}: {tx_hash}")
        return tx_hash
