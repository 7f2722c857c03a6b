"""Configuration system for the custody core.

Loads settings from a YAML file with ``${VAR}`` environment expansion, or
straight from the process environment using the deployment variable names
(``NETWORK_MODE``, ``ETH_MAINNET_RPC_URLS``, ...).  The master encryption
key is deliberately not part of this model; see
:meth:`chain_custody.wallet.keystore.MasterKey.from_env`.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from chain_custody.errors import ConfigError, UnsupportedChain
from chain_custody.wallet.chains import NetworkMode, get_chain
from chain_custody.wallet.tokens import TokenInfo, TokenRegistry


# ---------------------------------------------------------------------------
# Environment-variable expansion helper
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with their environment values.

    If the variable is not set the placeholder is left as-is so that
    validation can catch it later.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_env_recursive(obj: object) -> object:
    """Walk an arbitrary nested structure and expand env vars in strings."""
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _expand_env_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


def parse_rpc_urls(raw: str) -> list[str]:
    """Split a comma-separated URL list, dropping blanks."""
    return [url.strip() for url in raw.split(",") if url.strip()]


def validate_rpc_url(url: str) -> bool:
    """Basic format check for an RPC URL."""
    if not url:
        return False
    return url.startswith("http://") or url.startswith("https://")


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------


class FailoverPolicy(BaseModel):
    """Retry, backoff and health thresholds for the RPC endpoint pools."""

    request_timeout: float = Field(10.0, gt=0)   # seconds per attempt
    max_endpoints_per_call: int = Field(3, ge=1)
    failure_threshold: int = Field(3, ge=1)      # consecutive failures -> unhealthy
    backoff_base: float = Field(1.0, gt=0)
    backoff_cap: float = Field(60.0, gt=0)
    probe_timeout: float = Field(3.0, gt=0)

    def backoff_for(self, failures: int) -> float:
        """Exponential backoff for the given consecutive failure count."""
        if failures <= 0:
            return 0.0
        exponent = min(failures - 1, 32)
        return min(self.backoff_base * (2 ** exponent), self.backoff_cap)


class EngineConfig(BaseModel):
    """Transaction engine polling and fee defaults."""

    status_poll_attempts: int = Field(5, ge=1)   # polls after an unknown submission
    status_poll_interval: float = Field(2.0, ge=0)
    status_poll_timeout: float = Field(10.0, gt=0)   # per status query
    confirmation_polls: int = Field(0, ge=0)     # 0 = return once submitted
    solana_blockhash_ttl: float = Field(45.0, gt=0)
    solana_native_compute_units: int = Field(1_000, gt=0)
    solana_token_compute_units: int = Field(80_000, gt=0)
    evm_gas_buffer_percent: int = Field(20, ge=0)  # added to estimated gas for contract calls
    evm_default_priority_fee_wei: int = Field(1_500_000_000, ge=0)


class ChainEndpointsConfig(BaseModel):
    """Ordered RPC endpoint lists for one chain (priority = list order)."""

    mainnet_rpc_urls: list[str] = Field(default_factory=list)
    testnet_rpc_urls: list[str] = Field(default_factory=list)
    explorer_url: Optional[str] = None

    @field_validator("mainnet_rpc_urls", "testnet_rpc_urls", mode="before")
    @classmethod
    def _split_urls(cls, value: object) -> object:
        if isinstance(value, str):
            return parse_rpc_urls(value)
        return value

    @field_validator("mainnet_rpc_urls", "testnet_rpc_urls")
    @classmethod
    def _check_urls(cls, value: list[str]) -> list[str]:
        for url in value:
            if not validate_rpc_url(url):
                raise ValueError(f"RPC URL must be http(s): {url!r}")
        return value

    def rpc_urls(self, network: NetworkMode) -> list[str]:
        if network is NetworkMode.TESTNET:
            return list(self.testnet_rpc_urls)
        return list(self.mainnet_rpc_urls)


class TokenConfig(BaseModel):
    """An extra token to register, e.g. a testnet deployment."""

    chain: str
    symbol: str
    decimals: int = Field(ge=0, le=36)
    address: str
    name: str = ""


class CustodyConfig(BaseModel):
    """Root configuration object."""

    network: NetworkMode = NetworkMode.MAINNET
    chains: dict[str, ChainEndpointsConfig] = Field(default_factory=dict)
    rpc: FailoverPolicy = Field(default_factory=FailoverPolicy)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    tokens: list[TokenConfig] = Field(default_factory=list)
    database_path: str = "custody.db"
    encryption_key_env: str = "ENCRYPTION_KEY"

    @field_validator("chains")
    @classmethod
    def _normalise_chain_tags(
        cls, value: dict[str, ChainEndpointsConfig]
    ) -> dict[str, ChainEndpointsConfig]:
        normalised: dict[str, ChainEndpointsConfig] = {}
        for name, endpoints in value.items():
            try:
                normalised[get_chain(name).tag] = endpoints
            except UnsupportedChain as exc:
                raise ValueError(str(exc)) from exc
        return normalised

    def rpc_urls(self, chain: str) -> list[str]:
        """Endpoint URLs for *chain* on the selected network, in priority order."""
        endpoints = self.chains.get(get_chain(chain).tag)
        if endpoints is None:
            return []
        return endpoints.rpc_urls(self.network)

    def configured_chains(self) -> list[str]:
        """Chains that have at least one endpoint for the selected network."""
        return [tag for tag in self.chains if self.rpc_urls(tag)]

    def explorer_url(self, chain: str) -> str:
        info = get_chain(chain)
        endpoints = self.chains.get(info.tag)
        if endpoints is not None and endpoints.explorer_url:
            return endpoints.explorer_url
        return info.explorer_url(self.network)

    def build_token_registry(self) -> TokenRegistry:
        """Default tokens plus any configured extras."""
        registry = TokenRegistry()
        for token in self.tokens:
            registry.register(
                TokenInfo(
                    chain=token.chain,
                    symbol=token.symbol,
                    decimals=token.decimals,
                    address=token.address,
                    name=token.name,
                )
            )
        return registry


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def load_config(path: Path) -> CustodyConfig:
    """Load and validate configuration from a YAML file.

    Environment variable placeholders (``${VAR}``) are expanded before
    validation.

    Raises
    ------
    ConfigError
        If the file is missing or does not validate.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    raw_text = path.read_text(encoding="utf-8")
    raw_data = yaml.safe_load(raw_text) or {}
    expanded = _expand_env_recursive(raw_data)
    try:
        return CustodyConfig.model_validate(expanded)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc


def save_config(config: CustodyConfig, path: Path) -> None:
    """Serialize a :class:`CustodyConfig` to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)


def config_from_env(env: Optional[Mapping[str, str]] = None) -> CustodyConfig:
    """Build configuration from deployment environment variables.

    ``NETWORK_MODE`` must be ``mainnet`` or ``testnet``.  For every chain tag
    ``<TAG>_<MODE>_RPC_URLS`` holds a comma-separated, priority-ordered list
    and ``<TAG>_<MODE>_EXPLORER_URL`` optionally overrides the explorer.
    """
    env = os.environ if env is None else env

    mode_raw = env.get("NETWORK_MODE", "").strip().lower()
    try:
        network = NetworkMode(mode_raw)
    except ValueError as exc:
        raise ConfigError("NETWORK_MODE must be 'testnet' or 'mainnet'") from exc

    chains: dict[str, dict] = {}
    for tag in ("ETH", "BSC", "SOLANA"):
        mainnet = parse_rpc_urls(env.get(f"{tag}_MAINNET_RPC_URLS", ""))
        testnet = parse_rpc_urls(env.get(f"{tag}_TESTNET_RPC_URLS", ""))
        if not mainnet and not testnet:
            continue
        mode_key = "TESTNET" if network is NetworkMode.TESTNET else "MAINNET"
        chains[tag] = {
            "mainnet_rpc_urls": mainnet,
            "testnet_rpc_urls": testnet,
            "explorer_url": env.get(f"{tag}_{mode_key}_EXPLORER_URL") or None,
        }

    data: dict = {"network": network, "chains": chains}
    if env.get("DATABASE_PATH"):
        data["database_path"] = env["DATABASE_PATH"]
    try:
        config = CustodyConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid environment configuration: {exc}") from exc

    if not config.configured_chains():
        raise ConfigError(
            f"No RPC URLs configured for {network.value}; "
            "set e.g. ETH_MAINNET_RPC_URLS"
        )
    return config
