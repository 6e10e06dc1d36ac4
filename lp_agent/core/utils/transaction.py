import asyncio
import math
from collections.abc import Callable
from typing import Any

from loguru import logger
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted

from lp_agent.core.constants.base import (
    DEFAULT_CONFIRMATIONS,
    DEFAULT_TRANSACTION_TIMEOUT,
    GAS_BUFFER_MULTIPLIER,
    MAX_BASE_FEE_GROWTH_MULTIPLIER,
    SUGGESTED_PRIORITY_FEE_MULTIPLIER,
)
from lp_agent.core.utils.web3 import (
    get_transaction_chain_id,
    web3_from_chain_id,
    web3s_from_chain_id,
)


class TransactionRevertedError(RuntimeError):
    def __init__(
        self,
        txn_hash: str,
        receipt: dict[str, Any] | None = None,
        message: str | None = None,
    ):
        self.txn_hash = txn_hash
        self.receipt = receipt or {}
        super().__init__(message or f"Transaction reverted: {txn_hash}")


class GasEstimationError(RuntimeError):
    """Every RPC refused to estimate gas, usually because the call would revert."""

    def __init__(self, transaction: dict[str, Any], errors: list[str] | None = None):
        self.transaction = transaction
        self.errors = list(errors or [])
        detail = f": {self.errors[0]}" if self.errors else ""
        super().__init__(f"Gas estimation failed on all RPCs{detail}")


class ConfirmationTimeoutError(TimeoutError):
    def __init__(self, txn_hash: str, timeout: float):
        self.txn_hash = txn_hash
        self.timeout = timeout
        super().__init__(
            f"Transaction {txn_hash} not confirmed within {timeout}s; "
            "it may still be mined"
        )


def _normalize_hash(txn_hash: str) -> str:
    if isinstance(txn_hash, str) and not txn_hash.startswith("0x"):
        return f"0x{txn_hash}"
    return txn_hash


def _raise_revert_error(
    txn_hash: str,
    receipt: dict[str, Any],
    transaction: dict[str, Any],
    cause: Exception | None = None,
) -> None:
    try:
        gas_used = int(receipt.get("gasUsed") or 0)
    except (TypeError, ValueError):
        gas_used = 0

    try:
        gas_limit = int(transaction.get("gas") or 0)
    except (TypeError, ValueError):
        gas_limit = 0

    oogs = bool(gas_used and gas_limit and gas_used >= gas_limit)
    suffix = (
        f" gasUsed={gas_used} gasLimit={gas_limit}"
        + (" (likely out of gas)" if oogs else "")
        if gas_used or gas_limit
        else ""
    )
    error = TransactionRevertedError(
        txn_hash,
        receipt,
        message=f"Transaction reverted (status=0): {txn_hash}{suffix}",
    )
    if cause:
        raise error from cause
    raise error


def _get_transaction_from_address(transaction: dict) -> str:
    if "from" not in transaction:
        raise ValueError("Transaction does not contain from address")
    return AsyncWeb3.to_checksum_address(transaction["from"])


async def nonce_transaction(transaction: dict) -> dict:
    transaction = transaction.copy()
    from_address = _get_transaction_from_address(transaction)

    async with web3s_from_chain_id(get_transaction_chain_id(transaction)) as web3s:
        nonces = await asyncio.gather(
            *[
                web3.eth.get_transaction_count(from_address, block_identifier="pending")
                for web3 in web3s
            ]
        )
        transaction["nonce"] = max(nonces)

    return transaction


async def gas_price_transaction(transaction: dict) -> dict:
    transaction = transaction.copy()

    async def _get_base_fee(web3: AsyncWeb3) -> int:
        latest_block = await web3.eth.get_block("latest")
        return latest_block.baseFeePerGas

    async def _get_priority_fee(web3: AsyncWeb3) -> int:
        fee_history = await web3.eth.fee_history(10, "latest", [80])
        rewards = [r[0] for r in fee_history.reward]
        return sum(rewards) // len(rewards) if rewards else 0

    chain_id = get_transaction_chain_id(transaction)
    async with web3s_from_chain_id(chain_id) as web3s:
        base_fees = await asyncio.gather(*[_get_base_fee(w) for w in web3s])
        priority_fees = await asyncio.gather(*[_get_priority_fee(w) for w in web3s])
    base_fee = max(base_fees)
    priority_fee = max(priority_fees)

    transaction["maxFeePerGas"] = int(
        base_fee * MAX_BASE_FEE_GROWTH_MULTIPLIER
        + priority_fee * SUGGESTED_PRIORITY_FEE_MULTIPLIER
    )
    transaction["maxPriorityFeePerGas"] = int(
        priority_fee * SUGGESTED_PRIORITY_FEE_MULTIPLIER
    )

    return transaction


async def gas_limit_transaction(transaction: dict) -> dict:
    transaction = transaction.copy()

    # prevents RPCs from taking this as a serious limit
    transaction.pop("gas", None)
    errors: list[str] = []

    async def _estimate_gas(web3: AsyncWeb3, transaction: dict) -> int:
        try:
            return await web3.eth.estimate_gas(transaction, block_identifier="latest")
        except Exception as e:  # noqa: BLE001
            logger.info(
                f"Failed to estimate gas using {web3.provider.endpoint_uri}. Error: {e}"
            )
            errors.append(str(e))
            return 0

    async with web3s_from_chain_id(get_transaction_chain_id(transaction)) as web3s:
        gas_limits = await asyncio.gather(
            *[_estimate_gas(web3, transaction) for web3 in web3s]
        )

        gas_limit = max(gas_limits)
        if gas_limit == 0:
            logger.error("Gas estimation failed on all RPCs")
            raise GasEstimationError(transaction, errors)

        transaction["gas"] = int(math.ceil(gas_limit * GAS_BUFFER_MULTIPLIER))

    return transaction


async def broadcast_transaction(chain_id: int, signed_transaction: bytes) -> str:
    async with web3_from_chain_id(chain_id) as web3:
        tx_hash = await web3.eth.send_raw_transaction(signed_transaction)
        return _normalize_hash(tx_hash.hex())


async def wait_for_transaction_receipt(
    chain_id: int,
    txn_hash: str,
    poll_interval: float = 0.5,
    timeout: float = DEFAULT_TRANSACTION_TIMEOUT,
    confirmations: int = DEFAULT_CONFIRMATIONS,
) -> dict:
    """Block until ``txn_hash`` is mined and buried under ``confirmations`` blocks.

    Raises ``ConfirmationTimeoutError`` when no RPC returns a receipt within
    ``timeout`` seconds and ``TransactionRevertedError`` for status=0 receipts.
    """
    txn_hash = _normalize_hash(txn_hash)

    async with web3s_from_chain_id(chain_id) as web3s:
        tasks = [
            asyncio.create_task(
                web3.eth.wait_for_transaction_receipt(
                    txn_hash, poll_latency=poll_interval, timeout=timeout
                )
            )
            for web3 in web3s
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        try:
            receipt = done.pop().result()
        except TimeExhausted as exc:
            raise ConfirmationTimeoutError(txn_hash, timeout) from exc

        if receipt.get("status") == 0:
            raise TransactionRevertedError(txn_hash, receipt)

        target_block = receipt["blockNumber"] + confirmations - 1
        while (
            max(await asyncio.gather(*[w.eth.block_number for w in web3s]))
            < target_block
        ):
            await asyncio.sleep(poll_interval)
        return receipt


async def send_transaction(
    transaction: dict,
    sign_callback: Callable,
    wait_for_receipt: bool = True,
    *,
    timeout: float = DEFAULT_TRANSACTION_TIMEOUT,
    confirmations: int = DEFAULT_CONFIRMATIONS,
) -> str:
    if sign_callback is None:
        raise ValueError("sign_callback must be provided to send transaction")

    chain_id = get_transaction_chain_id(transaction)
    logger.debug(f"Preparing transaction to {transaction.get('to')} on {chain_id}")
    transaction = await gas_limit_transaction(transaction)
    transaction = await nonce_transaction(transaction)
    transaction = await gas_price_transaction(transaction)
    signed_transaction = await sign_callback(transaction)
    txn_hash = await broadcast_transaction(chain_id, signed_transaction)
    logger.info(f"Transaction broadcasted: {txn_hash}")
    if not wait_for_receipt:
        return txn_hash

    try:
        receipt = await wait_for_transaction_receipt(
            chain_id, txn_hash, timeout=timeout, confirmations=confirmations
        )
    except TransactionRevertedError as exc:
        _raise_revert_error(txn_hash, exc.receipt, transaction, cause=exc)

    status = receipt.get("status")
    if status is not None and int(status) == 0:
        _raise_revert_error(txn_hash, receipt, transaction)
    logger.info(f"Transaction confirmed: {txn_hash} (block {receipt.get('blockNumber')})")
    return txn_hash


async def encode_call(
    *,
    target: str,
    abi: list[dict[str, Any]],
    fn_name: str,
    args: list[Any],
    from_address: str,
    chain_id: int,
    value: int = 0,
) -> dict[str, Any]:
    async with web3_from_chain_id(chain_id) as web3:
        try:
            contract = web3.eth.contract(
                address=web3.to_checksum_address(target),
                abi=abi,
            )
            data = contract.encode_abi(fn_name, args)
        except (ValueError, TypeError) as exc:
            raise ValueError(f"Failed to encode {fn_name}: {exc}") from exc

        return {
            "chainId": int(chain_id),
            "from": AsyncWeb3.to_checksum_address(from_address),
            "to": AsyncWeb3.to_checksum_address(target),
            "data": data,
            "value": int(value),
        }
