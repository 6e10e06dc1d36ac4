from __future__ import annotations

import copy
import json
from pathlib import Path

import pytest

import lp_agent.core.config as config
from lp_agent.core.errors import ConfigurationError

PRIVATE_KEY = "0x" + "11" * 32


@pytest.fixture
def restore_global_config() -> None:
    original = copy.deepcopy(config.CONFIG)
    yield
    config.set_config(original)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("LP_AGENT_CONFIG_PATH", "LP_AGENT_CONFIG", "BASE_RPC_URL", "AGENT_PRIVATE_KEY"):
        monkeypatch.delenv(key, raising=False)


def test_resolve_config_path_defaults_to_repo_root(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, clean_env: None
) -> None:
    monkeypatch.chdir(tmp_path)

    repo_root = Path(__file__).resolve().parents[2]
    assert config.resolve_config_path() == repo_root / "config.json"


def test_resolve_config_path_env_relative_is_repo_relative(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, clean_env: None
) -> None:
    monkeypatch.setenv("LP_AGENT_CONFIG_PATH", "config.example.json")
    monkeypatch.chdir(tmp_path)

    repo_root = Path(__file__).resolve().parents[2]
    assert config.resolve_config_path() == repo_root / "config.example.json"


def test_example_config_loads(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, clean_env: None
) -> None:
    monkeypatch.setenv("LP_AGENT_CONFIG_PATH", "config.example.json")
    monkeypatch.chdir(tmp_path)

    cfg = config.load_config_json()
    assert isinstance(cfg["strategy"]["rpc_urls"], dict)
    assert cfg["agent"]["liquidity_min_policy"] in config.LIQUIDITY_MIN_POLICIES


def test_invalid_json_raises(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{not json")

    with pytest.raises(ConfigurationError):
        config.load_config_json(path)


def test_missing_file_is_empty_unless_required(tmp_path: Path) -> None:
    assert config.load_config_json(tmp_path / "nope.json") == {}
    with pytest.raises(FileNotFoundError):
        config.load_config_json(tmp_path / "nope.json", require_exists=True)


class TestAgentSettings:
    def test_env_only(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None, restore_global_config: None
    ) -> None:
        config.set_config({})
        monkeypatch.setenv("BASE_RPC_URL", "https://rpc.invalid")
        monkeypatch.setenv("AGENT_PRIVATE_KEY", PRIVATE_KEY)

        settings = config.load_agent_settings()

        assert settings.rpc_urls == ("https://rpc.invalid",)
        assert settings.private_key == PRIVATE_KEY
        assert settings.slippage_bps == 50
        assert settings.liquidity_min_policy == "none"
        assert PRIVATE_KEY not in repr(settings)

    def test_missing_rpc_fails_fast(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None, restore_global_config: None
    ) -> None:
        config.set_config({})
        monkeypatch.setenv("AGENT_PRIVATE_KEY", PRIVATE_KEY)

        with pytest.raises(ConfigurationError, match="BASE_RPC_URL"):
            config.load_agent_settings()

    def test_missing_key_fails_fast(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None, restore_global_config: None
    ) -> None:
        config.set_config({})
        monkeypatch.setenv("BASE_RPC_URL", "https://rpc.invalid")

        with pytest.raises(ConfigurationError, match="AGENT_PRIVATE_KEY"):
            config.load_agent_settings()

    def test_agent_options_from_config(
        self, clean_env: None, restore_global_config: None
    ) -> None:
        config.set_config(
            {
                "strategy": {"rpc_urls": {"8453": "https://rpc.invalid"}},
                "agent": {
                    "private_key": PRIVATE_KEY,
                    "slippage_bps": 80,
                    "liquidity_min_policy": "QUOTE",
                    "confirmations": 2,
                },
            }
        )

        settings = config.load_agent_settings()

        assert settings.slippage_bps == 80
        assert settings.liquidity_min_policy == "quote"
        assert settings.confirmations == 2

    def test_unknown_liquidity_policy(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None, restore_global_config: None
    ) -> None:
        monkeypatch.setenv("BASE_RPC_URL", "https://rpc.invalid")
        monkeypatch.setenv("AGENT_PRIVATE_KEY", PRIVATE_KEY)
        config.set_config({"agent": {"liquidity_min_policy": "strict"}})

        with pytest.raises(ConfigurationError, match="liquidity_min_policy"):
            config.load_agent_settings()
