from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from lp_agent.adapters.aerodrome_adapter.adapter import (
    AerodromeAdapter,
    Route,
    apply_slippage,
    validate_routes,
)
from lp_agent.adapters.wallet_adapter.adapter import OperatorIdentity, WalletAdapter
from lp_agent.core.adapters.models import PoolReference, TokenAmount
from lp_agent.core.constants.contracts import (
    BASE_USDC,
    BASE_VIRTUAL,
    BASE_WETH,
    ZERO_ADDRESS,
)
from lp_agent.core.errors import (
    NotInitializedError,
    PoolNotFoundError,
    QuoteUnavailableError,
    RouteError,
    SwapRevertedError,
)
from lp_agent.core.utils.retry import NO_RETRY
from lp_agent.core.utils.transaction import GasEstimationError

OPERATOR = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
POOL = "0x3333333333333333333333333333333333333333"
TRANSACTION = "lp_agent.core.utils.transaction"
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


async def _encode(**kwargs):
    return {"fn": kwargs["fn_name"], "args": kwargs["args"]}


@pytest.fixture
def wallet():
    return SimpleNamespace(
        address=OPERATOR,
        chain_id=8453,
        read_policy=NO_RETRY,
        send=AsyncMock(return_value="0xfeed"),
    )


@pytest.fixture
def tokens():
    tokens = MagicMock()
    tokens.get_decimals = AsyncMock(return_value=18)
    tokens.get_balance = AsyncMock()
    return tokens


@pytest.fixture
def adapter(wallet, tokens):
    return AerodromeAdapter(wallet, tokens)


@pytest.fixture
def ready(adapter):
    adapter.pool = PoolReference(
        token_a=BASE_WETH, token_b=BASE_VIRTUAL, stable=False, address=POOL
    )
    return adapter


@pytest.fixture
def encode_call():
    with patch(
        "lp_agent.adapters.aerodrome_adapter.adapter.encode_call",
        AsyncMock(side_effect=_encode),
    ) as mock:
        yield mock


def test_init(adapter):
    assert adapter.adapter_type == "AERODROME"
    assert adapter.name == "aerodrome_adapter"
    assert not adapter.is_initialized


def test_unknown_liquidity_policy_rejected(wallet, tokens):
    with pytest.raises(ValueError, match="liquidity_min_policy"):
        AerodromeAdapter(wallet, tokens, liquidity_min_policy="strict")


class TestRoutes:
    def test_empty_path_rejected(self):
        with pytest.raises(RouteError):
            validate_routes([])

    def test_broken_chain_rejected(self):
        routes = [
            Route(BASE_USDC, BASE_WETH, stable=False),
            Route(BASE_VIRTUAL, BASE_USDC, stable=False),
        ]
        with pytest.raises(RouteError, match="hop 0"):
            validate_routes(routes)

    def test_multi_hop_chain_accepted(self):
        routes = [
            Route(BASE_USDC, BASE_WETH, stable=False),
            Route(BASE_WETH.lower(), BASE_VIRTUAL, stable=False),
        ]
        assert validate_routes(routes) == routes

    def test_as_tuple_shape(self):
        hop = Route(BASE_USDC.lower(), BASE_WETH, stable=True)
        from_token, to_token, stable, factory = hop.as_tuple()
        assert (from_token, to_token, stable) == (BASE_USDC, BASE_WETH, True)
        assert factory.startswith("0x")


def test_apply_slippage_rounds_down():
    assert apply_slippage(1_000_000, 50) == 995_000
    assert apply_slippage(999, 50) == 994
    assert apply_slippage(10, 0) == 10


@pytest.mark.asyncio
class TestInitialize:
    async def test_missing_pool_raises(self, adapter):
        adapter.get_pool = AsyncMock(return_value=ZERO_ADDRESS)

        with pytest.raises(PoolNotFoundError, match="volatile"):
            await adapter.initialize()
        assert not adapter.is_initialized

    async def test_resolves_once(self, adapter):
        adapter.get_pool = AsyncMock(return_value=POOL)

        first = await adapter.initialize()
        second = await adapter.initialize()

        assert first is second
        assert first.address == POOL
        adapter.get_pool.assert_awaited_once()

    async def test_operations_need_initialize(self, adapter):
        with pytest.raises(NotInitializedError):
            await adapter.execute_swap(
                10, adapter.single_hop(BASE_USDC, BASE_WETH), OPERATOR, 50
            )
        with pytest.raises(NotInitializedError):
            await adapter.add_liquidity(BASE_WETH, BASE_VIRTUAL, 1, 1, OPERATOR, 50)


@pytest.mark.asyncio
class TestQuotes:
    async def test_quote_swap_output(self, ready, tokens):
        ready.get_amounts_out = AsyncMock(return_value=[1_000, 333])
        tokens.get_decimals.return_value = 18

        quoted = await ready.quote_swap_output(1_000, ready.single_hop(BASE_USDC, BASE_WETH))

        assert quoted == TokenAmount(333, 18)

    async def test_zero_quote_is_unavailable(self, ready):
        ready.get_amounts_out = AsyncMock(return_value=[1_000, 0])

        with pytest.raises(QuoteUnavailableError):
            await ready.quote_swap_output(1_000, ready.single_hop(BASE_USDC, BASE_WETH))

    async def test_router_failure_is_unavailable(self, ready):
        ready.get_amounts_out = AsyncMock(side_effect=RuntimeError("no route"))

        with pytest.raises(QuoteUnavailableError):
            await ready.quote_swap_output(1_000, ready.single_hop(BASE_USDC, BASE_WETH))

    async def test_sample_quote_returns_none_on_failure(self, adapter):
        adapter.get_amounts_out = AsyncMock(side_effect=RuntimeError("down"))

        assert await adapter.sample_quote(BASE_USDC, BASE_WETH, 10**6) is None


@pytest.mark.asyncio
class TestExecuteSwap:
    async def test_min_out_from_quote(self, ready, encode_call, wallet):
        ready.get_amounts_out = AsyncMock(return_value=[2_000_000, 10**15])

        tx_hash = await ready.execute_swap(
            2_000_000, ready.single_hop(BASE_USDC, BASE_WETH), OPERATOR, 50
        )

        assert tx_hash == "0xfeed"
        call = encode_call.await_args.kwargs
        assert call["fn_name"] == "swapExactTokensForTokens"
        amount_in, min_out, routes, recipient, _deadline = call["args"]
        assert amount_in == 2_000_000
        assert min_out == 10**15 * 9_950 // 10_000
        assert routes[0][:3] == (BASE_USDC, BASE_WETH, False)
        assert recipient == OPERATOR

    async def test_quote_failure_uses_floor_of_one(self, ready, encode_call):
        ready.get_amounts_out = AsyncMock(side_effect=RuntimeError("no quote"))

        await ready.execute_swap(
            2_000_000, ready.single_hop(BASE_USDC, BASE_WETH), OPERATOR, 50
        )

        assert encode_call.await_args.kwargs["args"][1] == 1

    async def test_rejected_swap_raises(self, ready, encode_call, wallet):
        ready.get_amounts_out = AsyncMock(return_value=[10, 5])
        wallet.send.side_effect = GasEstimationError({}, ["execution reverted"])

        with pytest.raises(SwapRevertedError):
            await ready.execute_swap(
                10, ready.single_hop(BASE_USDC, BASE_WETH), OPERATOR, 50
            )

    async def test_invalid_slippage_rejected(self, ready, encode_call):
        with pytest.raises(ValueError, match="slippage_bps"):
            await ready.execute_swap(
                10, ready.single_hop(BASE_USDC, BASE_WETH), OPERATOR, 10_000
            )
        encode_call.assert_not_awaited()

    async def test_zero_amount_rejected(self, ready, encode_call):
        with pytest.raises(ValueError, match="amount_in"):
            await ready.execute_swap(
                0, ready.single_hop(BASE_USDC, BASE_WETH), OPERATOR, 50
            )


@pytest.mark.asyncio
class TestLiquidity:
    async def test_minted_is_balance_delta(self, ready, encode_call, tokens):
        tokens.get_balance.side_effect = [TokenAmount(100, 18), TokenAmount(350, 18)]

        receipt = await ready.add_liquidity(
            BASE_WETH, BASE_VIRTUAL, 10**15, 10**18, OPERATOR, 50
        )

        assert receipt.tx_hash == "0xfeed"
        assert receipt.liquidity == TokenAmount(250, 18)
        args = encode_call.await_args.kwargs["args"]
        assert args[5:7] == [0, 0]
        assert tokens.get_balance.await_args_list[0].args == (POOL, OPERATOR)

    async def test_minted_ignores_receipt_logs(self, tokens, encode_call):
        account = MagicMock(address=OPERATOR)
        account.sign_transaction.return_value = SimpleNamespace(raw_transaction=b"\x01")
        wallet = WalletAdapter(OperatorIdentity(account))
        adapter = AerodromeAdapter(wallet, tokens)
        encode_call.side_effect = lambda **kw: {"chainId": 8453, "from": OPERATOR}
        adapter.pool = PoolReference(BASE_WETH, BASE_VIRTUAL, False, POOL)
        tokens.get_balance.side_effect = [TokenAmount(100, 18), TokenAmount(350, 18)]
        # The pool's Transfer log claims 999 LP were minted to the operator.
        receipt = {
            "status": 1,
            "blockNumber": 10,
            "logs": [
                {
                    "address": POOL,
                    "topics": [
                        TRANSFER_TOPIC,
                        "0x" + "00" * 32,
                        "0x" + "00" * 12 + OPERATOR[2:].lower(),
                    ],
                    "data": "0x" + f"{999:064x}",
                }
            ],
        }
        passthrough = AsyncMock(side_effect=lambda tx: tx)
        with (
            patch(f"{TRANSACTION}.gas_limit_transaction", passthrough),
            patch(f"{TRANSACTION}.nonce_transaction", passthrough),
            patch(f"{TRANSACTION}.gas_price_transaction", passthrough),
            patch(
                f"{TRANSACTION}.broadcast_transaction",
                AsyncMock(return_value="0xadd"),
            ),
            patch(
                f"{TRANSACTION}.wait_for_transaction_receipt",
                AsyncMock(return_value=receipt),
            ),
        ):
            result = await adapter.add_liquidity(
                BASE_WETH, BASE_VIRTUAL, 10**15, 10**18, OPERATOR, 50
            )

        assert result.tx_hash == "0xadd"
        assert result.liquidity == TokenAmount(250, 18)
        assert result.liquidity.raw != 999

    async def test_quote_policy_sets_floors(self, wallet, tokens, encode_call):
        adapter = AerodromeAdapter(wallet, tokens, liquidity_min_policy="quote")
        adapter.pool = PoolReference(BASE_WETH, BASE_VIRTUAL, False, POOL)
        adapter.quote_add_liquidity = AsyncMock(return_value=(1_000, 2_000, 5))
        tokens.get_balance.side_effect = [TokenAmount(0, 18), TokenAmount(5, 18)]

        await adapter.add_liquidity(BASE_WETH, BASE_VIRTUAL, 1_000, 2_000, OPERATOR, 100)

        assert encode_call.await_args.kwargs["args"][5:7] == [990, 1_980]

    async def test_remove_reports_received_deltas(self, ready, encode_call, tokens):
        tokens.get_balance.side_effect = [
            TokenAmount(5, 18),
            TokenAmount(7, 18),
            TokenAmount(105, 18),
            TokenAmount(207, 18),
        ]

        receipt = await ready.remove_liquidity(BASE_WETH, BASE_VIRTUAL, 40, OPERATOR, 50)

        assert receipt.amount_a.raw == 100
        assert receipt.amount_b.raw == 200
        assert encode_call.await_args.kwargs["fn_name"] == "removeLiquidity"
