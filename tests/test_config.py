"""Configuration loading from YAML and from the deployment environment."""

import pytest

from chain_custody.config import (
    CustodyConfig,
    FailoverPolicy,
    config_from_env,
    load_config,
    parse_rpc_urls,
    save_config,
)
from chain_custody.errors import ConfigError
from chain_custody.wallet.chains import NetworkMode, explorer_tx_url, get_chain


class TestFailoverPolicy:
    def test_backoff_doubles_up_to_cap(self):
        policy = FailoverPolicy(backoff_base=1, backoff_cap=60)
        assert [policy.backoff_for(n) for n in range(1, 9)] == [1, 2, 4, 8, 16, 32, 60, 60]

    def test_no_failures_no_backoff(self):
        assert FailoverPolicy().backoff_for(0) == 0.0

    def test_huge_failure_count_stays_capped(self):
        assert FailoverPolicy(backoff_cap=5).backoff_for(10_000) == 5


class TestEnvironmentConfig:
    def test_mainnet_urls_in_priority_order(self):
        config = config_from_env({
            "NETWORK_MODE": "mainnet",
            "ETH_MAINNET_RPC_URLS": "https://a.test, https://b.test,,",
            "ETH_TESTNET_RPC_URLS": "https://sepolia.test",
        })
        assert config.network is NetworkMode.MAINNET
        assert config.rpc_urls("ETH") == ["https://a.test", "https://b.test"]
        assert config.configured_chains() == ["ETH"]

    def test_testnet_selects_testnet_urls_and_explorer(self):
        config = config_from_env({
            "NETWORK_MODE": "TESTNET",
            "SOLANA_TESTNET_RPC_URLS": "https://devnet.test",
            "SOLANA_MAINNET_RPC_URLS": "https://main.test",
        })
        assert config.rpc_urls("sol") == ["https://devnet.test"]
        assert config.explorer_url("SOLANA") == "https://explorer.solana.com/?cluster=devnet"

    def test_explorer_override(self):
        config = config_from_env({
            "NETWORK_MODE": "mainnet",
            "BSC_MAINNET_RPC_URLS": "https://bsc.test",
            "BSC_MAINNET_EXPLORER_URL": "https://my-explorer.test",
        })
        assert config.explorer_url("BSC") == "https://my-explorer.test"

    @pytest.mark.parametrize("mode", [None, "", "prod"])
    def test_network_mode_is_required(self, mode):
        env = {"ETH_MAINNET_RPC_URLS": "https://a.test"}
        if mode is not None:
            env["NETWORK_MODE"] = mode
        with pytest.raises(ConfigError):
            config_from_env(env)

    def test_no_urls_for_selected_network(self):
        with pytest.raises(ConfigError):
            config_from_env({"NETWORK_MODE": "mainnet", "ETH_TESTNET_RPC_URLS": "https://s.test"})

    def test_non_http_url_rejected(self):
        with pytest.raises(ConfigError):
            config_from_env({"NETWORK_MODE": "mainnet", "ETH_MAINNET_RPC_URLS": "ws://a.test"})

    def test_database_path(self):
        config = config_from_env({
            "NETWORK_MODE": "mainnet",
            "ETH_MAINNET_RPC_URLS": "https://a.test",
            "DATABASE_PATH": "/tmp/x.db",
        })
        assert config.database_path == "/tmp/x.db"


class TestYamlConfig:
    def test_env_expansion_and_aliases(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MY_RPC", "https://secret.test")
        path = tmp_path / "custody.yaml"
        path.write_text(
            "network: testnet\n"
            "chains:\n"
            "  ethereum:\n"
            "    testnet_rpc_urls: ['${MY_RPC}', 'https://backup.test']\n"
            "rpc:\n"
            "  request_timeout: 4\n"
            "tokens:\n"
            "  - chain: ETH\n"
            "    symbol: tusd\n"
            "    decimals: 6\n"
            "    address: '0x1111111111111111111111111111111111111111'\n"
        )
        config = load_config(path)
        assert config.rpc_urls("ETH") == ["https://secret.test", "https://backup.test"]
        assert config.rpc.request_timeout == 4
        assert config.build_token_registry().resolve("ETH", "TUSD").decimals == 6

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.yaml")

    def test_unknown_chain(self, tmp_path):
        path = tmp_path / "custody.yaml"
        path.write_text("chains:\n  DOGE:\n    mainnet_rpc_urls: ['https://d.test']\n")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_save_then_load(self, tmp_path):
        config = CustodyConfig.model_validate({
            "network": "mainnet",
            "chains": {"SOLANA": {"mainnet_rpc_urls": ["https://sol.test"]}},
        })
        path = tmp_path / "out" / "custody.yaml"
        save_config(config, path)
        assert load_config(path).rpc_urls("SOLANA") == ["https://sol.test"]


class TestHelpers:
    def test_parse_rpc_urls(self):
        assert parse_rpc_urls(" a , ,b ") == ["a", "b"]

    def test_explorer_tx_url_keeps_query(self):
        assert (
            explorer_tx_url("https://explorer.solana.com/?cluster=devnet", "SIG")
            == "https://explorer.solana.com/tx/SIG?cluster=devnet"
        )
        assert explorer_tx_url("https://etherscan.io/", "0xab") == "https://etherscan.io/tx/0xab"

    def test_chain_ids(self):
        assert get_chain("BSC").chain_id(NetworkMode.TESTNET) == 97
        assert get_chain("eth").chain_id(NetworkMode.MAINNET) == 1
