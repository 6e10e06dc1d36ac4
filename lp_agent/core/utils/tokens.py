import asyncio
from collections.abc import Callable
from typing import Any

from loguru import logger
from web3 import AsyncWeb3

from lp_agent.core.constants.erc20_abi import ERC20_ABI
from lp_agent.core.utils.retry import NO_RETRY, BackoffPolicy
from lp_agent.core.utils.transaction import send_transaction
from lp_agent.core.utils.web3 import web3_from_chain_id


async def get_native_balance(
    chain_id: int, wallet_address: str, *, block_identifier: str | int = "pending"
) -> int:
    async with web3_from_chain_id(chain_id) as web3:
        balance = await web3.eth.get_balance(
            web3.to_checksum_address(wallet_address),
            block_identifier=block_identifier,
        )
        return int(balance)


async def get_token_balance(
    token_address: str,
    chain_id: int,
    wallet_address: str,
    *,
    block_identifier: str | int = "pending",
) -> int:
    async with web3_from_chain_id(chain_id) as web3:
        contract = web3.eth.contract(
            address=web3.to_checksum_address(token_address), abi=ERC20_ABI
        )
        balance = await contract.functions.balanceOf(
            web3.to_checksum_address(wallet_address)
        ).call(block_identifier=block_identifier)
        return int(balance)


async def get_token_decimals(token_address: str, chain_id: int) -> int:
    async with web3_from_chain_id(chain_id) as web3:
        contract = web3.eth.contract(
            address=web3.to_checksum_address(token_address), abi=ERC20_ABI
        )
        return int(await contract.functions.decimals().call())


async def get_token_metadata(token_address: str, chain_id: int) -> tuple[str, str, int]:
    """Symbol, name and decimals of an ERC20, read concurrently."""
    async with web3_from_chain_id(chain_id) as web3:
        contract = web3.eth.contract(
            address=web3.to_checksum_address(token_address), abi=ERC20_ABI
        )
        symbol, name, decimals = await asyncio.gather(
            contract.functions.symbol().call(),
            contract.functions.name().call(),
            contract.functions.decimals().call(),
        )
        return str(symbol), str(name), int(decimals)


async def get_token_allowance(
    token_address: str, chain_id: int, owner_address: str, spender_address: str
) -> int:
    async with web3_from_chain_id(chain_id) as web3:
        contract = web3.eth.contract(
            address=web3.to_checksum_address(token_address), abi=ERC20_ABI
        )
        allowance = await contract.functions.allowance(
            web3.to_checksum_address(owner_address),
            web3.to_checksum_address(spender_address),
        ).call(block_identifier="pending")
        return int(allowance)


async def _build_erc20_call(
    from_address: str,
    chain_id: int,
    token_address: str,
    fn_name: str,
    args: list[Any],
) -> dict:
    async with web3_from_chain_id(chain_id) as web3:
        token_checksum = web3.to_checksum_address(token_address)
        contract = web3.eth.contract(address=token_checksum, abi=ERC20_ABI)
        data = contract.encode_abi(fn_name, args)
        return {
            "to": token_checksum,
            "from": web3.to_checksum_address(from_address),
            "data": data,
            "chainId": chain_id,
        }


async def build_approve_transaction(
    from_address: str,
    chain_id: int,
    token_address: str,
    spender_address: str,
    amount: int,
) -> dict:
    return await _build_erc20_call(
        from_address,
        chain_id,
        token_address,
        "approve",
        [AsyncWeb3.to_checksum_address(spender_address), int(amount)],
    )


async def build_send_transaction(
    from_address: str,
    to_address: str,
    token_address: str,
    chain_id: int,
    amount: int,
) -> dict:
    return await _build_erc20_call(
        from_address,
        chain_id,
        token_address,
        "transfer",
        [AsyncWeb3.to_checksum_address(to_address), int(amount)],
    )


async def build_transfer_from_transaction(
    operator_address: str,
    owner_address: str,
    to_address: str,
    token_address: str,
    chain_id: int,
    amount: int,
) -> dict:
    return await _build_erc20_call(
        operator_address,
        chain_id,
        token_address,
        "transferFrom",
        [
            AsyncWeb3.to_checksum_address(owner_address),
            AsyncWeb3.to_checksum_address(to_address),
            int(amount),
        ],
    )


async def ensure_allowance(
    *,
    token_address: str,
    owner: str,
    spender: str,
    amount: int,
    chain_id: int,
    signing_callback: Callable,
    read_policy: BackoffPolicy | None = None,
    on_sent: Callable[[str], Any] | None = None,
    **send_kwargs: Any,
) -> list[str]:
    """Make sure ``spender`` may pull ``amount`` of ``token_address`` from ``owner``.

    Returns the hashes of the approvals actually sent, in order: empty when the
    current allowance already covers ``amount``; ``[reset, approve]`` when a
    smaller nonzero allowance had to be cleared first; ``[approve]`` otherwise.
    Each approval is confirmed before the next is built. The allowance read goes
    through ``read_policy`` so a rate-limited gateway is retried, not fatal.
    ``on_sent`` is called with each hash as soon as it is confirmed.
    """
    policy = read_policy or NO_RETRY
    allowance = await policy.run(
        lambda: get_token_allowance(token_address, chain_id, owner, spender)
    )
    if allowance >= amount:
        return []

    sent: list[str] = []
    if allowance > 0:
        logger.info(
            f"Resetting allowance of {token_address} for {spender} "
            f"({allowance} < {amount})"
        )
        clear_transaction = await build_approve_transaction(
            from_address=owner,
            chain_id=chain_id,
            token_address=token_address,
            spender_address=spender,
            amount=0,
        )
        reset_hash = await send_transaction(
            clear_transaction, signing_callback, **send_kwargs
        )
        sent.append(reset_hash)
        if on_sent is not None:
            on_sent(reset_hash)

    approve_tx = await build_approve_transaction(
        from_address=owner,
        chain_id=chain_id,
        token_address=token_address,
        spender_address=spender,
        amount=amount,
    )
    approve_hash = await send_transaction(approve_tx, signing_callback, **send_kwargs)
    sent.append(approve_hash)
    if on_sent is not None:
        on_sent(approve_hash)
    return sent
