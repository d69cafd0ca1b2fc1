"""Configuration loader for burnloop.

Loads config/engine.yaml into typed settings. Endpoints and secrets come
from the environment (.env is honoured via python-dotenv).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from burnloop.errors import ConfigError

WORKSPACE = Path(__file__).resolve().parent.parent
CONFIG_DIR = WORKSPACE / "config"
DATA_DIR = WORKSPACE / "data"

WSOL_MINT = "So11111111111111111111111111111111111111112"
LAMPORTS_PER_SOL = 1_000_000_000


class RPCSettings(BaseModel):
    http_url: str = "https://api.mainnet-beta.solana.com"
    ws_url: str = "wss://api.mainnet-beta.solana.com"
    fallback_urls: list[str] = Field(default_factory=list)
    commitment: str = "confirmed"
    timeout_seconds: float = 15.0
    rate_limit: float = 10.0


class WatcherSettings(BaseModel):
    signature_limit: int = 20
    slot_tolerance: int = 5
    max_assets_in_cache: int = 1000
    reconnect_delay_seconds: float = 1.0
    max_reconnect_delay_seconds: float = 30.0
    settlement_mint: str = WSOL_MINT


class SelectionSettings(BaseModel):
    min_fee_threshold: int = 7_000_000


class DLQSettings(BaseModel):
    max_entries: int = 100
    max_retries: int = 5
    expiry_seconds: float = 24 * 60 * 60
    base_delay_seconds: float = 5 * 60
    max_delay_seconds: float = 80 * 60


class ValidatorSettings(BaseModel):
    min_operator_balance: int = 490_000_000
    sync_poll_interval_seconds: float = 5.0
    sync_timeout_seconds: float = 30.0
    wait_for_sync: bool = True


class OrchestratorSettings(BaseModel):
    interval_seconds: float = 300.0
    lock_timeout_seconds: float = 10 * 60
    executor_command: list[str] = Field(default_factory=list)  # asset id is appended as the last argument
    executor_timeout_seconds: float = 300.0


class VaultConfig(BaseModel):
    """One watched creator-fee vault."""

    account_id: str
    kind: Literal["primary", "secondary"] = "primary"  # primary (bonding curve, native SOL) | secondary (AMM, WSOL ATA)


class AssetConfig(BaseModel):
    """A known revenue-generating token."""

    asset_id: str
    display_name: str = ""
    causing_account: str = ""
    stats_account: str = ""
    pending_fees_offset: int = 114
    pending_fees_fallback: int = 0
    is_primary: bool = False


class PathSettings(BaseModel):
    dlq_file: str = str(DATA_DIR / "dead-letter-tokens.json")
    history_db: str = str(DATA_DIR / "history.db")
    lock_dir: str = str(DATA_DIR)


class EngineConfig(BaseModel):
    """Top-level engine settings — config/engine.yaml."""

    operator_address: str = ""
    creator_address: str = ""
    rpc: RPCSettings = Field(default_factory=RPCSettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)
    selection: SelectionSettings = Field(default_factory=SelectionSettings)
    dlq: DLQSettings = Field(default_factory=DLQSettings)
    validator: ValidatorSettings = Field(default_factory=ValidatorSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    paths: PathSettings = Field(default_factory=PathSettings)
    vaults: list[VaultConfig] = Field(default_factory=list)
    assets: list[AssetConfig] = Field(default_factory=list)

    def primary_asset(self) -> AssetConfig | None:
        return next((a for a in self.assets if a.is_primary), None)


def load_raw_config(path: Path | None = None) -> dict[str, Any]:
    """Load config/engine.yaml as a plain dict."""
    path = path or CONFIG_DIR / "engine.yaml"
    if not path.exists():
        return {}
    try:
        raw = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(raw).__name__}")
    return raw


def _apply_env(raw: dict[str, Any]) -> dict[str, Any]:
    """Overlay environment variables onto the raw YAML mapping."""
    rpc = dict(raw.get("rpc") or {})
    api_key = os.environ.get("HELIUS_API_KEY", "")
    if os.environ.get("RPC_URL"):
        rpc["http_url"] = os.environ["RPC_URL"]
    elif api_key:
        rpc["http_url"] = f"https://mainnet.helius-rpc.com/?api-key={api_key}"
    if os.environ.get("WS_URL"):
        rpc["ws_url"] = os.environ["WS_URL"]
    elif api_key:
        rpc["ws_url"] = f"wss://mainnet.helius-rpc.com/?api-key={api_key}"
    raw = {**raw, "rpc": rpc}
    if os.environ.get("OPERATOR_ADDRESS"):
        raw["operator_address"] = os.environ["OPERATOR_ADDRESS"]
    return raw


def load_engine_config(path: Path | None = None, use_env: bool = True) -> EngineConfig:
    """Load and validate the engine config.

    Raises ConfigError when the YAML does not match the schema.
    """
    if use_env:
        load_dotenv(override=False)
    raw = load_raw_config(path)
    if use_env:
        raw = _apply_env(raw)
    try:
        return EngineConfig(**raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid engine config: {e}") from e
