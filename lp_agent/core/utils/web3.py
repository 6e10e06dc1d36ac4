from contextlib import asynccontextmanager
from typing import Any

from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import Web3RPCError

from lp_agent.core.config import get_rpc_urls

# Rate-limit detection policy:
# - HTTP 429 from the gateway
# - known JSON-RPC rate-limit codes
# - known rate-limit messages
_RATE_LIMIT_HTTP_STATUS = 429
_RATE_LIMIT_RPC_ERROR_CODES = {429, -32005, -33200, -33300, -33400}
_RATE_LIMIT_MESSAGE_MARKERS = (
    "too many requests",
    "rate limit",
    "request rate exceeded",
    "limit exceeded",
    "compute units per second",
    "concurrent requests",
)


def _extract_http_status(exc: Exception) -> int | None:
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    response = getattr(exc, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None)
        if isinstance(code, int):
            return code
    return None


def _rpc_error_text(error: dict[str, Any]) -> str:
    msg = str(error.get("message") or "").lower()
    details = str(error.get("details") or "").lower()
    return f"{msg} {details}".strip()


def _is_rate_limited_rpc_error(error: dict[str, Any]) -> bool:
    code = error.get("code")
    if isinstance(code, int) and code in _RATE_LIMIT_RPC_ERROR_CODES:
        return True
    text = _rpc_error_text(error)
    return any(marker in text for marker in _RATE_LIMIT_MESSAGE_MARKERS)


def is_rate_limited_error(exc: Exception) -> bool:
    if _extract_http_status(exc) == _RATE_LIMIT_HTTP_STATUS:
        return True
    if isinstance(exc, Web3RPCError):
        rpc_response = getattr(exc, "rpc_response", None) or {}
        error = rpc_response.get("error") if isinstance(rpc_response, dict) else None
        if isinstance(error, dict) and _is_rate_limited_rpc_error(error):
            return True
    text = str(exc).lower()
    return any(marker in text for marker in _RATE_LIMIT_MESSAGE_MARKERS)


def _get_rpcs_for_chain_id(chain_id: int) -> list:
    mapping = get_rpc_urls()
    rpcs = mapping.get(str(chain_id))
    if rpcs is None:
        rpcs = mapping.get(chain_id)  # allow int keys
    if not rpcs:
        raise ValueError(f"No RPCs configured for chain ID {chain_id}")
    if isinstance(rpcs, str):
        return [rpcs]
    return list(rpcs)


def _get_web3(rpc: str) -> AsyncWeb3:
    provider = AsyncHTTPProvider(
        rpc, request_kwargs={"headers": AsyncHTTPProvider.get_request_headers()}
    )
    return AsyncWeb3(provider)


def get_transaction_chain_id(transaction: dict) -> int:
    if "chainId" not in transaction:
        raise ValueError("Transaction does not contain chainId")
    return int(transaction["chainId"])


def get_web3s_from_chain_id(chain_id: int) -> list[AsyncWeb3]:
    rpcs = _get_rpcs_for_chain_id(chain_id)
    return [_get_web3(rpc) for rpc in rpcs]


@asynccontextmanager
async def web3s_from_chain_id(chain_id: int):
    web3s = get_web3s_from_chain_id(chain_id)
    try:
        yield web3s
    finally:
        for web3 in web3s:
            await web3.provider.disconnect()


@asynccontextmanager
async def web3_from_chain_id(chain_id: int):
    web3s = get_web3s_from_chain_id(chain_id)
    try:
        yield web3s[0]
    finally:
        await web3s[0].provider.disconnect()
