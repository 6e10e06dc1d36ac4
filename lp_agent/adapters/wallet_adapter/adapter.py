from __future__ import annotations

from typing import Any

from eth_account import Account
from eth_utils import to_checksum_address

from lp_agent.core.adapters.BaseAdapter import BaseAdapter
from lp_agent.core.adapters.models import TokenAmount
from lp_agent.core.config import AgentSettings
from lp_agent.core.constants.base import (
    DEFAULT_CONFIRMATIONS,
    DEFAULT_TRANSACTION_TIMEOUT,
    NATIVE_DECIMALS,
)
from lp_agent.core.constants.chains import CHAIN_ID_BASE
from lp_agent.core.errors import InsufficientGasError
from lp_agent.core.utils.retry import NO_RETRY, BackoffPolicy
from lp_agent.core.utils.tokens import get_native_balance
from lp_agent.core.utils.transaction import send_transaction
from lp_agent.core.utils.web3 import web3_from_chain_id


class OperatorIdentity:
    """The operator's signing credential. The key never leaves this object."""

    __slots__ = ("_account",)

    def __init__(self, account: Any):
        self._account = account

    @classmethod
    def from_private_key(cls, private_key: str) -> OperatorIdentity:
        try:
            return cls(Account.from_key(private_key))
        except (ValueError, TypeError):
            # the underlying message can echo key material
            raise ValueError("Invalid operator private key") from None

    @property
    def address(self) -> str:
        return to_checksum_address(self._account.address)

    async def sign(self, transaction: dict) -> bytes:
        signed = self._account.sign_transaction(transaction)
        return signed.raw_transaction

    def __repr__(self) -> str:
        return f"OperatorIdentity(address={self.address})"


class WalletAdapter(BaseAdapter):
    """Ledger access: native balance, gas checks and the operator's signer."""

    adapter_type = "WALLET"

    def __init__(
        self,
        identity: OperatorIdentity,
        config: dict[str, Any] | None = None,
        *,
        chain_id: int = CHAIN_ID_BASE,
        confirmation_timeout_s: float = DEFAULT_TRANSACTION_TIMEOUT,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        read_policy: BackoffPolicy | None = None,
    ):
        super().__init__("wallet_adapter", config)
        self._identity = identity
        self.chain_id = int(chain_id)
        self.confirmation_timeout_s = confirmation_timeout_s
        self.confirmations = int(confirmations)
        self.read_policy = read_policy or NO_RETRY

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> WalletAdapter:
        return cls(
            OperatorIdentity.from_private_key(settings.private_key),
            chain_id=settings.chain_id,
            confirmation_timeout_s=settings.confirmation_timeout_s,
            confirmations=settings.confirmations,
            read_policy=BackoffPolicy(max_retries=settings.read_max_retries),
        )

    def get_signing_identity(self) -> OperatorIdentity:
        return self._identity

    @property
    def address(self) -> str:
        return self._identity.address

    @property
    def signing_callback(self):
        return self._identity.sign

    @property
    def send_options(self) -> dict[str, Any]:
        return {
            "timeout": self.confirmation_timeout_s,
            "confirmations": self.confirmations,
        }

    def connection(self):
        """Read-only web3 handle for the operator's chain (async context manager)."""
        return web3_from_chain_id(self.chain_id)

    async def send(self, transaction: dict) -> str:
        """Sign, broadcast and wait for confirmation of an operator transaction."""
        return await send_transaction(
            transaction, self.signing_callback, **self.send_options
        )

    async def get_native_balance(self) -> TokenAmount:
        raw = await self.read_policy.run(
            lambda: get_native_balance(self.chain_id, self.address)
        )
        return TokenAmount(int(raw), NATIVE_DECIMALS)

    async def ensure_gas_sufficiency(self, minimum_native_wei: int) -> TokenAmount:
        balance = await self.get_native_balance()
        if balance.raw < int(minimum_native_wei):
            self.logger.error(
                f"Operator {self.address} has {balance.display()} ETH, "
                f"needs {TokenAmount(int(minimum_native_wei), NATIVE_DECIMALS)}"
            )
            raise InsufficientGasError(int(minimum_native_wei), balance.raw)
        return balance

    async def get_network_info(self) -> dict[str, Any]:
        async with self.connection() as web3:
            chain_id = await web3.eth.chain_id
            block_number = await web3.eth.block_number
        return {
            "chain_id": int(chain_id),
            "block_number": int(block_number),
            "operator": self.address,
        }
