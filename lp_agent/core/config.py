import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from lp_agent.core.constants.base import (
    DEFAULT_CONFIRM_DELAY_S,
    DEFAULT_CONFIRMATIONS,
    DEFAULT_DEADLINE_SECONDS,
    DEFAULT_MIN_GAS_WEI,
    DEFAULT_READ_MAX_RETRIES,
    DEFAULT_READ_MIN_INTERVAL_S,
    DEFAULT_SLIPPAGE_BPS,
    DEFAULT_TRANSACTION_TIMEOUT,
)
from lp_agent.core.constants.chains import CHAIN_ID_BASE
from lp_agent.core.errors import ConfigurationError

_CONFIG_ENV_KEYS = ("LP_AGENT_CONFIG_PATH", "LP_AGENT_CONFIG")
_DEFAULT_CONFIG_FILENAME = "config.json"
RPC_URL_ENV = "BASE_RPC_URL"
PRIVATE_KEY_ENV = "AGENT_PRIVATE_KEY"

LIQUIDITY_MIN_POLICIES = ("none", "quote")


def _find_project_root(start: Path) -> Path | None:
    cur = start.resolve()
    for parent in [cur, *cur.parents]:
        if (parent / "pyproject.toml").exists():
            return parent
    return None


def _project_root() -> Path | None:
    return _find_project_root(Path.cwd()) or _find_project_root(Path(__file__).parent)


def resolve_config_path(path: str | Path | None = None) -> Path:
    if path is not None:
        return Path(path).expanduser()

    env_path = next(
        (os.getenv(k, "").strip() for k in _CONFIG_ENV_KEYS if os.getenv(k)), ""
    )
    if env_path:
        p = Path(env_path).expanduser()
        if p.is_absolute():
            return p
        root = _project_root()
        return (root / p) if root else p

    root = _project_root()
    return (root / _DEFAULT_CONFIG_FILENAME) if root else Path(_DEFAULT_CONFIG_FILENAME)


def load_config_json(
    path: str | Path | None = None, *, require_exists: bool = False
) -> dict[str, Any]:
    cfg_path = resolve_config_path(path)
    if not cfg_path.exists():
        if require_exists:
            raise FileNotFoundError(f"Config file not found: {cfg_path}")
        return {}
    try:
        parsed = json.loads(cfg_path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {cfg_path}: {exc}") from exc
    return parsed if isinstance(parsed, dict) else {}


CONFIG: dict[str, Any] = {}


def set_config(config: dict[str, Any]) -> None:
    """Replace the global CONFIG dict in-place.

    This allows code that imported CONFIG at module import time to see updates.
    """
    CONFIG.clear()
    CONFIG.update(config)


def load_config(
    path: str | Path | None = None, *, require_exists: bool = False
) -> None:
    """Load config from disk into the global CONFIG dict."""
    set_config(load_config_json(path, require_exists=require_exists))


def get_rpc_urls() -> dict[str, Any]:
    mapping = dict(CONFIG.get("strategy", {}).get("rpc_urls", {}))
    env_rpc = os.environ.get(RPC_URL_ENV, "").strip()
    if env_rpc:
        key = str(CHAIN_ID_BASE)
        existing = mapping.get(key) or mapping.get(CHAIN_ID_BASE) or []
        if isinstance(existing, str):
            existing = [existing]
        mapping[key] = [env_rpc, *[r for r in existing if r != env_rpc]]
    return mapping


def get_operator_private_key() -> str | None:
    value = os.environ.get(PRIVATE_KEY_ENV, "").strip()
    if value:
        return value
    agent = CONFIG.get("agent", {})
    pk = agent.get("private_key") or agent.get("private_key_hex")
    if isinstance(pk, str) and pk.strip():
        return pk.strip()
    return None


def get_agent_option(key: str, default: Any) -> Any:
    value = CONFIG.get("agent", {}).get(key)
    return default if value is None else value


@dataclass(frozen=True)
class AgentSettings:
    rpc_urls: tuple[str, ...]
    private_key: str
    chain_id: int = CHAIN_ID_BASE
    min_gas_wei: int = DEFAULT_MIN_GAS_WEI
    slippage_bps: int = DEFAULT_SLIPPAGE_BPS
    deadline_seconds: int = DEFAULT_DEADLINE_SECONDS
    confirmation_timeout_s: int = DEFAULT_TRANSACTION_TIMEOUT
    confirmations: int = DEFAULT_CONFIRMATIONS
    read_min_interval_s: float = DEFAULT_READ_MIN_INTERVAL_S
    read_max_retries: int = DEFAULT_READ_MAX_RETRIES
    liquidity_min_policy: str = "none"
    confirm_delay_s: int = DEFAULT_CONFIRM_DELAY_S

    def __repr__(self) -> str:
        return (
            f"AgentSettings(rpc_urls={self.rpc_urls!r}, chain_id={self.chain_id}, "
            f"private_key=<redacted>)"
        )


def load_agent_settings() -> AgentSettings:
    """Resolve the settings a workflow run needs, failing fast on missing secrets."""
    rpcs = get_rpc_urls().get(str(CHAIN_ID_BASE)) or []
    if isinstance(rpcs, str):
        rpcs = [rpcs]
    if not rpcs:
        raise ConfigurationError(
            f"{RPC_URL_ENV} environment variable (or strategy.rpc_urls) is required"
        )
    private_key = get_operator_private_key()
    if not private_key:
        raise ConfigurationError(f"{PRIVATE_KEY_ENV} environment variable is required")

    policy = str(get_agent_option("liquidity_min_policy", "none")).lower()
    if policy not in LIQUIDITY_MIN_POLICIES:
        raise ConfigurationError(
            f"agent.liquidity_min_policy must be one of {LIQUIDITY_MIN_POLICIES}"
        )

    return AgentSettings(
        rpc_urls=tuple(str(r) for r in rpcs),
        private_key=private_key,
        min_gas_wei=int(get_agent_option("min_gas_wei", DEFAULT_MIN_GAS_WEI)),
        slippage_bps=int(get_agent_option("slippage_bps", DEFAULT_SLIPPAGE_BPS)),
        deadline_seconds=int(
            get_agent_option("deadline_seconds", DEFAULT_DEADLINE_SECONDS)
        ),
        confirmation_timeout_s=int(
            get_agent_option("confirmation_timeout_s", DEFAULT_TRANSACTION_TIMEOUT)
        ),
        confirmations=int(get_agent_option("confirmations", DEFAULT_CONFIRMATIONS)),
        read_min_interval_s=float(
            get_agent_option("read_min_interval_s", DEFAULT_READ_MIN_INTERVAL_S)
        ),
        read_max_retries=int(
            get_agent_option("read_max_retries", DEFAULT_READ_MAX_RETRIES)
        ),
        liquidity_min_policy=policy,
        confirm_delay_s=int(get_agent_option("confirm_delay_s", DEFAULT_CONFIRM_DELAY_S)),
    )
