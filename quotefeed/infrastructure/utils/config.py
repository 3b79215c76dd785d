"""Configuration management for quotefeed.

Rules:
- YAML provides defaults for non-secret config.
- Secrets (Polygon key, MarketData token, strategy endpoint key) come from
  .env / environment variables and override YAML.
- YAML is never injected into os.environ.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

REALTIME_PROVIDERS = ("polygon", "simulator")
CANDLE_PROVIDERS = ("polygon", "yahoo")
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _normalize_realtime_provider(v: str) -> str:
    if str(v).lower() not in REALTIME_PROVIDERS:
        raise ValueError(f"realtime provider must be one of: {list(REALTIME_PROVIDERS)}")
    return str(v).lower()


def _normalize_log_level(v: str) -> str:
    if str(v).upper() not in LOG_LEVELS:
        raise ValueError(f"Log level must be one of: {sorted(LOG_LEVELS)}")
    return str(v).upper()


class PolygonConfig(BaseModel):
    """Polygon.io market-data vendor."""

    api_key: str = Field(default="", description="Polygon API key (REST + WebSocket)")
    websocket_url: str = Field(default="wss://socket.polygon.io/stocks")
    rest_url: str = Field(default="https://api.polygon.io")


class MarketDataConfig(BaseModel):
    """MarketData.app quotes API (primary quote provider)."""

    api_token: str = Field(default="")
    base_url: str = Field(default="https://api.marketdata.app")
    timeout_sec: float = Field(default=10.0, gt=0, le=120)


class RealtimeConfig(BaseModel):
    provider: str = Field(default="polygon")
    developer_mode: bool = Field(default=False, description="Allow the simulator feed and fallback to it")
    symbols: List[str] = Field(default_factory=lambda: ["AAPL"])
    timeframe: str = Field(default="1m")

    heartbeat_interval_sec: float = Field(default=30.0, gt=0, le=600)
    auth_timeout_sec: float = Field(default=10.0, gt=0, le=120)
    initial_backoff_sec: float = Field(default=0.5, gt=0, le=60)
    max_backoff_sec: float = Field(default=10.0, gt=0, le=600)

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        return _normalize_realtime_provider(v)

    @field_validator("symbols")
    @classmethod
    def validate_symbols(cls, v: List[Any]) -> List[str]:
        out = [str(x).strip().upper() for x in v if x and str(x).strip()]
        if not out:
            raise ValueError("realtime.symbols must contain at least one symbol")
        return out

    @field_validator("max_backoff_sec")
    @classmethod
    def validate_backoff(cls, v: float, info) -> float:
        if "initial_backoff_sec" in info.data and v < info.data["initial_backoff_sec"]:
            raise ValueError("max_backoff_sec must be >= initial_backoff_sec")
        return v


class SimulatorConfig(BaseModel):
    volatility: float = Field(default=0.002, gt=0, le=0.1)
    min_delay_ms: int = Field(default=50, ge=1, le=60_000)
    max_delay_ms: int = Field(default=200, ge=1, le=60_000)

    @field_validator("max_delay_ms")
    @classmethod
    def validate_delays(cls, v: int, info) -> int:
        if "min_delay_ms" in info.data and v < info.data["min_delay_ms"]:
            raise ValueError("max_delay_ms must be >= min_delay_ms")
        return v


class QuotesConfig(BaseModel):
    memory_ttl_sec: float = Field(default=30.0, gt=0)
    storage_ttl_sec: float = Field(default=600.0, gt=0)
    persist_interval_sec: float = Field(default=5.0, ge=0)
    fallback_concurrency: int = Field(default=10, ge=1, le=100)
    bulk_chunk_size: int = Field(default=50, ge=1, le=500)
    chunk_delay_sec: float = Field(default=0.1, ge=0)


class CandlesConfig(BaseModel):
    provider: str = Field(default="polygon")
    cache_ttl_sec: float = Field(default=1800.0, gt=0)
    storage_ttl_sec: float = Field(default=3600.0, gt=0)
    base_timeframe: str = Field(default="5m")
    preload_limit: int = Field(default=2000, ge=1, le=50_000)
    max_cached: int = Field(default=2000, ge=10, le=50_000)

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if str(v).lower() not in CANDLE_PROVIDERS:
            raise ValueError(f"candle provider must be one of: {list(CANDLE_PROVIDERS)}")
        return str(v).lower()


class TradePlansConfig(BaseModel):
    endpoint_url: str = Field(default="")
    api_key: str = Field(default="")
    freshness_sec: float = Field(default=300.0, gt=0)
    timeout_sec: float = Field(default=30.0, gt=0, le=300)


class DatabaseConfig(BaseModel):
    path: str = Field(default="data/quotefeed.db")


class APIConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1024, le=65535)
    cors_origins: List[str] = Field(default=["http://localhost:3000", "http://localhost:5173"])


class MonitoringConfig(BaseModel):
    metrics_path: str = Field(default="data/metrics.json")
    update_interval_seconds: int = Field(default=5, ge=1, le=300)


class QuoteFeedConfig(BaseSettings):
    """Root configuration.

    YAML is parsed as base config, then env overrides for secrets are
    re-applied on top.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = Field(default="INFO")

    polygon: PolygonConfig = Field(default_factory=PolygonConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    simulator: SimulatorConfig = Field(default_factory=SimulatorConfig)
    quotes: QuotesConfig = Field(default_factory=QuotesConfig)
    candles: CandlesConfig = Field(default_factory=CandlesConfig)
    trade_plans: TradePlansConfig = Field(default_factory=TradePlansConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        return _normalize_log_level(v)

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "QuoteFeedConfig":
        """Load configuration from YAML, then apply env overrides."""
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")

        try:
            base = cls.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Configuration validation error: {e}")

        base.apply_env_overrides()
        return base

    def apply_env_overrides(self) -> None:
        if os.getenv("POLYGON__API_KEY"):
            self.polygon.api_key = os.environ["POLYGON__API_KEY"]

        if os.getenv("MARKET_DATA__API_TOKEN"):
            self.market_data.api_token = os.environ["MARKET_DATA__API_TOKEN"]

        if os.getenv("TRADE_PLANS__API_KEY"):
            self.trade_plans.api_key = os.environ["TRADE_PLANS__API_KEY"]

        if os.getenv("LOG_LEVEL"):
            self.log_level = _normalize_log_level(os.environ["LOG_LEVEL"])

        if os.getenv("REALTIME__PROVIDER"):
            self.realtime.provider = _normalize_realtime_provider(os.environ["REALTIME__PROVIDER"])

        dev_mode = os.getenv("REALTIME__DEVELOPER_MODE")
        if dev_mode is not None:
            self.realtime.developer_mode = str(dev_mode).lower() in ("1", "true", "yes")


def load_config(config_path: Optional[Path] = None) -> QuoteFeedConfig:
    """Load configuration from YAML + .env (env wins for secrets)."""

    load_dotenv(dotenv_path=Path(".env"))

    if config_path is None:
        possible_paths = [Path("config/default.yaml"), Path("config/config.yaml"), Path("config.yaml")]
        for path in possible_paths:
            if path.exists():
                config_path = path
                break
        else:
            raise FileNotFoundError("No configuration file found. Create config/default.yaml or specify config path.")

    return QuoteFeedConfig.from_yaml(config_path)


_config: Optional[QuoteFeedConfig] = None


def get_config() -> QuoteFeedConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: Optional[Path] = None) -> QuoteFeedConfig:
    global _config
    _config = load_config(config_path)
    return _config


# --------- Runtime overrides (API can switch the realtime provider without editing YAML) ---------
RUNTIME_CONFIG_PATH = Path("data/runtime_config.json")


def load_runtime_overrides(path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the runtime override file; {} when missing or unreadable."""
    path = path or RUNTIME_CONFIG_PATH
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except (json.JSONDecodeError, OSError):
        return {}


def save_runtime_overrides(overrides: Dict[str, Any], path: Optional[Path] = None) -> None:
    """Merge overrides into the runtime override file."""
    path = path or RUNTIME_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    current = load_runtime_overrides(path)
    current.update({k: v for k, v in overrides.items() if v is not None})
    with open(path, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)


def get_effective_provider(config: QuoteFeedConfig, path: Optional[Path] = None) -> str:
    """Realtime provider: the runtime override wins over YAML."""
    provider = load_runtime_overrides(path).get("realtime_provider")
    if provider in REALTIME_PROVIDERS:
        return provider
    return config.realtime.provider
