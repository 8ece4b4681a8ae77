"""Indexer configuration.

Values come from a JSON file (``--config``) and the environment. The
ETHEREUM_RPC_URL-style variables win over the file; any other key can be set
as ``GAMESTAKE_<KEY>``. Everything is validated once at startup; a ConfigError
is fatal.
"""

import json
from typing import Any, Dict, Mapping, Optional

from pydantic import AliasChoices, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError
from .util import normalize_address

ENV_OVERRIDES = {
    "ETHEREUM_RPC_URL": "rpc_http",
    "ETHEREUM_WS_URL": "rpc_ws",
    "PLAY_GAME_ADDRESS": "play_game_address",
    "TOKEN_STORE_ADDRESS": "token_store_address",
    "START_BLOCK": "start_block",
    "DB_PATH": "db_path",
    "API_PORT": "api_port",
}

_FIELD_FOR_ALIAS = {**ENV_OVERRIDES, **{env.lower(): key for env, key in ENV_OVERRIDES.items()}}


def _env(name: str) -> AliasChoices:
    return AliasChoices(name, ENV_OVERRIDES[name])


class IndexerConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GAMESTAKE_",
        case_sensitive=False,
        extra="forbid",
        frozen=True,
    )

    rpc_http: str = Field(validation_alias=_env("ETHEREUM_RPC_URL"), description="HTTP JSON-RPC endpoint")
    play_game_address: str = Field(validation_alias=_env("PLAY_GAME_ADDRESS"))
    token_store_address: str = Field(validation_alias=_env("TOKEN_STORE_ADDRESS"))
    rpc_ws: Optional[str] = Field(
        default=None,
        validation_alias=_env("ETHEREUM_WS_URL"),
        description="Websocket endpoint; polling is used without it",
    )
    start_block: int = Field(default=0, ge=0, validation_alias=_env("START_BLOCK"))
    batch_size: int = Field(default=1000, ge=1, description="Blocks per eth_getLogs request")
    reconnect_delay: float = Field(default=1.0, gt=0)
    max_reconnect_delay: float = Field(default=60.0, gt=0)
    max_range_retries: int = Field(
        default=5, ge=0, description="Retries of one failing block range before it counts as a gap"
    )
    poll_interval: float = Field(default=5.0, gt=0)
    health_check_interval: float = Field(default=30.0, gt=0)
    health_check_threshold: int = Field(default=3, ge=0)
    queue_size: int = Field(default=1000, ge=1)
    backfill_overlap_blocks: int = Field(default=12, ge=0)
    dedup_retention_blocks: int = Field(default=256, ge=0)
    max_seen_identities: int = Field(default=1_000_000, ge=1)
    predecessor_wait_blocks: int = Field(default=64, ge=0)
    max_pending_events: int = Field(default=10_000, ge=1)
    gt_decimals: int = Field(default=18, ge=0)
    usdt_decimals: int = Field(default=6, ge=0)
    fetch_timestamps: bool = True
    db_path: Optional[str] = Field(
        default=None, validation_alias=_env("DB_PATH"), description="Enables the sqlite journal"
    )
    api_host: str = "0.0.0.0"
    api_port: int = Field(default=3002, ge=1, validation_alias=_env("API_PORT"))
    stale_after_seconds: float = Field(default=120.0, gt=0)
    alert_history: int = Field(default=100, ge=1)

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        # environment before the config file
        return (env_settings, init_settings)

    @field_validator("rpc_http", "rpc_ws", "db_path", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("play_game_address", "token_store_address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        return normalize_address(value)

    @model_validator(mode="after")
    def _check_consistency(self) -> "IndexerConfig":
        if self.play_game_address == self.token_store_address:
            raise ValueError("play_game_address and token_store_address must differ")
        if self.dedup_retention_blocks < self.backfill_overlap_blocks:
            raise ValueError(
                "dedup_retention_blocks must cover backfill_overlap_blocks "
                f"({self.dedup_retention_blocks} < {self.backfill_overlap_blocks})"
            )
        if self.max_reconnect_delay < self.reconnect_delay:
            raise ValueError("max_reconnect_delay must be >= reconnect_delay")
        return self


def _describe(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ())]
        if loc:
            loc[0] = _FIELD_FOR_ALIAS.get(loc[0], loc[0])
            problems.append(f"{'.'.join(loc)}: {error['msg']}")
        else:
            problems.append(error["msg"])
    return "; ".join(problems)


def parse_config(raw: Mapping[str, Any]) -> IndexerConfig:
    try:
        return IndexerConfig(**dict(raw))
    except ValidationError as exc:
        raise ConfigError(_describe(exc)) from exc


def load_config(path: Optional[str] = None) -> IndexerConfig:
    raw: Dict[str, Any] = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"cannot read config {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"config {path} must contain a JSON object")
    return parse_config(raw)
