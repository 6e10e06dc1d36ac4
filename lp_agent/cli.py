from __future__ import annotations

import asyncio
import json
import sys
import time
from dataclasses import fields, is_dataclass
from pathlib import Path
from typing import Any

import click
from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError

from lp_agent.core.adapters.models import TokenAmount
from lp_agent.core.config import AgentSettings, load_agent_settings, load_config
from lp_agent.core.constants.base import LP_TOKEN_DECIMALS
from lp_agent.core.constants.chains import tx_link
from lp_agent.core.errors import ConfigurationError
from lp_agent.core.utils.units import to_erc20_raw
from lp_agent.strategies.aerodrome_lp_strategy.strategy import AerodromeLpStrategy
from lp_agent.strategies.aerodrome_lp_strategy.types import (
    DepositIntent,
    Outcome,
    WithdrawIntent,
    WorkflowResult,
)

EXIT_WORKFLOW_FAILED = 1
EXIT_CONFIGURATION = 2

_LOG_LEVELS = click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False)


def _configure_logging(log_level: str, log_dir: str | None) -> None:
    logger.remove()
    logger.add(sys.stderr, level=str(log_level).upper())
    if log_dir:
        path = Path(log_dir).expanduser()
        path.mkdir(parents=True, exist_ok=True)
        logger.add(path / "combined.log", level=str(log_level).upper(), rotation="10 MB")
        logger.add(path / "error.log", level="ERROR", rotation="10 MB")


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, TokenAmount):
        return {"raw": str(value.raw), "display": value.display()}
    if is_dataclass(value):
        return {f.name: _to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    return value


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(_to_jsonable(data), indent=2, default=str))


def _build_strategy() -> tuple[AerodromeLpStrategy, AgentSettings]:
    settings = load_agent_settings()
    return AerodromeLpStrategy.from_settings(settings), settings


def _load(ctx: click.Context) -> tuple[AerodromeLpStrategy, AgentSettings]:
    try:
        return _build_strategy()
    except (ConfigurationError, ValueError) as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        ctx.exit(EXIT_CONFIGURATION)


def _countdown(seconds: int, skip: bool) -> None:
    """Last chance to abort (Ctrl+C) before the first write is sent."""
    if skip or seconds <= 0:
        return
    for remaining in range(int(seconds), 0, -1):
        click.echo(f"Executing in {remaining}s... (Ctrl+C to cancel)", err=True)
        time.sleep(1)


def _report(ctx: click.Context, strategy: AerodromeLpStrategy, result: WorkflowResult) -> None:
    chain_id = strategy.wallet.chain_id
    _echo_json(
        {
            "success": result.success,
            "outcome": str(result.outcome),
            "tx_hashes": list(result.tx_hashes),
            "tx_links": [tx_link(chain_id, h) for h in result.tx_hashes],
            "final_amount": result.final_amount,
            "failed_step": result.failed_step,
            "completed_steps": list(result.completed_steps),
            "error": repr(result.error) if result.error is not None else None,
        }
    )
    if result.needs_manual_intervention:
        click.echo(
            "Workflow stopped after committing transactions; "
            "review them before retrying (see `refund` / `stake-existing`).",
            err=True,
        )
    if result.outcome in (Outcome.FAILED, Outcome.PRECONDITION_FAILED):
        ctx.exit(EXIT_WORKFLOW_FAILED)


def _parse_amount(raw_text: str, decimals: int) -> int:
    try:
        return to_erc20_raw(raw_text, decimals)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="AMOUNT") from exc


def _write_options(fn):
    fn = click.option(
        "--yes", is_flag=True, default=False, help="Skip the pre-execution countdown."
    )(fn)
    fn = click.option(
        "--delay",
        type=int,
        default=None,
        help="Countdown seconds before the first write (default: config).",
    )(fn)
    return fn


def _slippage_option(fn):
    return click.option(
        "--slippage-bps",
        type=int,
        default=None,
        help="Swap slippage tolerance in bps (default: config, 50 = 0.5%).",
    )(fn)


@click.group(name="lp-agent", help="Aerodrome WETH/VIRTUAL liquidity agent on Base.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to config.json (default: LP_AGENT_CONFIG_PATH or ./config.json).",
)
@click.option("--log-level", type=_LOG_LEVELS, default="INFO", show_default=True)
@click.option(
    "--log-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Also write combined.log and error.log to this directory.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str, log_dir: str | None) -> None:
    load_dotenv()
    _configure_logging(log_level, log_dir)
    try:
        load_config(config_path, require_exists=config_path is not None)
    except (ConfigurationError, FileNotFoundError) as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        ctx.exit(EXIT_CONFIGURATION)


@cli.command(name="deposit", help="Pull AMOUNT of USDC from USER and stake it as LP.")
@click.argument("user")
@click.argument("amount")
@_slippage_option
@_write_options
@click.pass_context
def deposit_cmd(
    ctx: click.Context,
    user: str,
    amount: str,
    slippage_bps: int | None,
    delay: int | None,
    yes: bool,
) -> None:
    strategy, settings = _load(ctx)

    async def _prepare() -> DepositIntent:
        decimals = await strategy.tokens.get_decimals(strategy.stable_token)
        return DepositIntent(
            user_address=user,
            amount=_parse_amount(amount, decimals),
            slippage_bps=settings.slippage_bps if slippage_bps is None else slippage_bps,
        )

    try:
        intent = asyncio.run(_prepare())
    except ValidationError as exc:
        raise click.BadParameter(str(exc)) from exc
    _countdown(settings.confirm_delay_s if delay is None else delay, yes)
    _report(ctx, strategy, asyncio.run(strategy.deposit(intent)))


@cli.command(name="withdraw", help="Unwind LP_AMOUNT of staked LP and send USDC to USER.")
@click.argument("user")
@click.argument("lp_amount")
@_slippage_option
@_write_options
@click.pass_context
def withdraw_cmd(
    ctx: click.Context,
    user: str,
    lp_amount: str,
    slippage_bps: int | None,
    delay: int | None,
    yes: bool,
) -> None:
    strategy, settings = _load(ctx)
    try:
        intent = WithdrawIntent(
            user_address=user,
            lp_amount=_parse_amount(lp_amount, LP_TOKEN_DECIMALS),
            slippage_bps=settings.slippage_bps if slippage_bps is None else slippage_bps,
        )
    except ValidationError as exc:
        raise click.BadParameter(str(exc)) from exc
    _countdown(settings.confirm_delay_s if delay is None else delay, yes)
    _report(ctx, strategy, asyncio.run(strategy.withdraw(intent)))


@cli.command(name="withdraw-all", help="Unwind the whole staked position to USER.")
@click.argument("user")
@_slippage_option
@_write_options
@click.pass_context
def withdraw_all_cmd(
    ctx: click.Context,
    user: str,
    slippage_bps: int | None,
    delay: int | None,
    yes: bool,
) -> None:
    strategy, settings = _load(ctx)
    _countdown(settings.confirm_delay_s if delay is None else delay, yes)
    result = asyncio.run(
        strategy.withdraw_all(
            user, settings.slippage_bps if slippage_bps is None else slippage_bps
        )
    )
    _report(ctx, strategy, result)


@cli.command(name="check", help="Check whether USER can deposit AMOUNT right now.")
@click.argument("user")
@click.argument("amount")
@click.pass_context
def check_cmd(ctx: click.Context, user: str, amount: str) -> None:
    strategy, _ = _load(ctx)

    async def _run():
        decimals = await strategy.tokens.get_decimals(strategy.stable_token)
        return await strategy.check_deposit_prerequisites(
            user, _parse_amount(amount, decimals)
        )

    prereq = asyncio.run(_run())
    _echo_json(
        {
            **_to_jsonable(prereq),
            "has_balance": prereq.has_balance,
            "has_allowance": prereq.has_allowance,
            "has_gas": prereq.has_gas,
            "ready": prereq.ready,
        }
    )
    if not prereq.ready:
        ctx.exit(EXIT_WORKFLOW_FAILED)


@cli.command(name="simulate", help="Quote a deposit of AMOUNT USDC without sending anything.")
@click.argument("amount")
@_slippage_option
@click.pass_context
def simulate_cmd(ctx: click.Context, amount: str, slippage_bps: int | None) -> None:
    strategy, _ = _load(ctx)

    async def _run():
        decimals = await strategy.tokens.get_decimals(strategy.stable_token)
        return await strategy.simulate_deposit(
            _parse_amount(amount, decimals), slippage_bps
        )

    _echo_json(asyncio.run(_run()))


@cli.command(name="stake-existing", help="Stake LP sitting idle in the operator wallet.")
@_write_options
@click.pass_context
def stake_existing_cmd(ctx: click.Context, delay: int | None, yes: bool) -> None:
    strategy, settings = _load(ctx)
    _countdown(settings.confirm_delay_s if delay is None else delay, yes)
    _report(ctx, strategy, asyncio.run(strategy.stake_existing_lp()))


@cli.command(name="refund", help="Send the operator's USDC to USER (manual recovery).")
@click.argument("user")
@click.option("--amount", default=None, help="USDC amount (default: whole balance).")
@_write_options
@click.pass_context
def refund_cmd(
    ctx: click.Context, user: str, amount: str | None, delay: int | None, yes: bool
) -> None:
    strategy, settings = _load(ctx)

    async def _run() -> WorkflowResult:
        raw = None
        if amount is not None:
            decimals = await strategy.tokens.get_decimals(strategy.stable_token)
            raw = _parse_amount(amount, decimals)
        return await strategy.refund(user, raw)

    _countdown(settings.confirm_delay_s if delay is None else delay, yes)
    _report(ctx, strategy, asyncio.run(_run()))


@cli.command(name="status", help="Operator balances, gas and staked position.")
@click.pass_context
def status_cmd(ctx: click.Context) -> None:
    strategy, _ = _load(ctx)
    _echo_json(asyncio.run(strategy.status()))


@cli.command(name="position", help="What withdraw-all would currently unwind for USER.")
@click.argument("user")
@click.pass_context
def position_cmd(ctx: click.Context, user: str) -> None:
    strategy, _ = _load(ctx)
    _echo_json(asyncio.run(strategy.position_receipt(user)))


@cli.command(name="network", help="RPC connectivity and router reachability check.")
@click.pass_context
def network_cmd(ctx: click.Context) -> None:
    strategy, _ = _load(ctx)

    async def _run() -> dict[str, Any]:
        info = await strategy.wallet.get_network_info()
        tokens = [
            await strategy.tokens.get_token_info(token)
            for token in (strategy.stable_token, strategy.token_a, strategy.token_b)
        ]
        info["tokens"] = {t.symbol: t.address for t in tokens}
        info["router"] = strategy.exchange.router
        info["sample_quote"] = await strategy.exchange.sample_quote(
            strategy.stable_token, strategy.token_a, 10 ** tokens[0].decimals
        )
        return info

    info = asyncio.run(_run())
    _echo_json(info)
    if info.get("sample_quote") is None:
        ctx.exit(EXIT_WORKFLOW_FAILED)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
