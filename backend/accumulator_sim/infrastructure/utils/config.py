"""Configuration management for the accumulator simulator.

Rules:
- YAML provides defaults for non-secret config.
- Secrets (Deriv token) and a few switches come from .env / environment
  variables and override YAML.
- We do NOT inject YAML into os.environ.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from accumulator_sim.models.contract_models import GROWTH_RATE_TOLERANCE
from accumulator_sim.models.market_models import MARKET_VOLATILITY, MARKETS


class DerivConfig(BaseModel):
    """Market-data feed connection settings."""

    app_id: str = Field(default="1089", description="Deriv application ID")
    api_token: Optional[str] = Field(default=None, description="Optional token; ticks do not need auth")
    websocket_url: str = Field(
        default="wss://ws.derivws.com/websockets/v3",
        description="Deriv WebSocket URL",
    )
    max_retries: int = Field(default=3, ge=0, le=10, description="Retries after the first connection attempt")
    retry_delay_sec: float = Field(default=2.0, ge=0, le=60, description="Backoff base; retry k waits delay * 2**k")
    connect_timeout_sec: float = Field(default=20.0, gt=0, le=120)
    request_timeout_sec: float = Field(default=10.0, gt=0, le=120)
    heartbeat_interval_sec: float = Field(default=15.0, gt=0, le=300)

    @field_validator("app_id")
    @classmethod
    def validate_app_id(cls, v: str) -> str:
        if not v or not str(v).isdigit():
            raise ValueError("app_id must be a non-empty numeric string")
        return str(v)

    @field_validator("api_token")
    @classmethod
    def validate_api_token(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not str(v).strip():
            return None
        if len(str(v)) < 10:
            raise ValueError("api_token must be at least 10 characters long")
        return str(v)


class AccumulatorConfig(BaseModel):
    max_ticks: int = Field(default=45, ge=1, le=10_000)
    max_payout: float = Field(default=10_000.0, gt=0)
    tick_interval_sec: float = Field(default=1.0, ge=0, le=60, description="Simulator cadence")
    price_source: str = Field(default="simulator")
    default_market: str = Field(default="1HZ25V")
    default_growth_rate: int = Field(default=3)

    @field_validator("price_source")
    @classmethod
    def validate_price_source(cls, v: str) -> str:
        if str(v).lower() not in ("simulator", "feed"):
            raise ValueError("price_source must be 'simulator' or 'feed'")
        return str(v).lower()

    @field_validator("default_market")
    @classmethod
    def validate_default_market(cls, v: str) -> str:
        if v not in MARKETS:
            raise ValueError(f"default_market must be one of: {sorted(MARKETS)}")
        return v

    @field_validator("default_growth_rate")
    @classmethod
    def validate_default_growth_rate(cls, v: int) -> int:
        if v not in GROWTH_RATE_TOLERANCE:
            raise ValueError(f"default_growth_rate must be one of: {sorted(GROWTH_RATE_TOLERANCE)}")
        return v


class AccountConfig(BaseModel):
    initial_balance: float = Field(default=50_000.0, ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)


class SimulatorConfig(BaseModel):
    """Random-walk settings for offline/demo prices."""

    initial_price: float = Field(default=1000.0, gt=0)
    trend: float = Field(default=0.0, ge=-1.0, le=1.0)
    volatility_by_market: Dict[str, float] = Field(default_factory=lambda: dict(MARKET_VOLATILITY))
    default_volatility: float = Field(default=0.002, ge=0, le=1.0)

    @field_validator("volatility_by_market")
    @classmethod
    def validate_volatility(cls, v: Dict[str, float]) -> Dict[str, float]:
        for market, vol in v.items():
            if float(vol) < 0:
                raise ValueError(f"volatility for {market} must be >= 0")
        return {str(k): float(val) for k, val in v.items()}

    def volatility_for(self, market: str) -> float:
        return self.volatility_by_market.get(market, self.default_volatility)


class APIConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1024, le=65535)
    cors_origins: List[str] = Field(default=["http://localhost:3000", "http://localhost:5173"])


class AppConfig(BaseSettings):
    """Main configuration for the simulator.

    YAML is parsed as base config, then env overrides are re-applied for
    secrets and switches (see ``from_yaml``).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)

    deriv: DerivConfig = Field(default_factory=DerivConfig)
    accumulator: AccumulatorConfig = Field(default_factory=AccumulatorConfig)
    account: AccountConfig = Field(default_factory=AccountConfig)
    simulator: SimulatorConfig = Field(default_factory=SimulatorConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if str(v).upper() not in valid:
            raise ValueError(f"Log level must be one of: {sorted(valid)}")
        return str(v).upper()

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "AppConfig":
        """Load configuration from YAML without polluting the environment.

        Steps:
        1) Parse YAML -> base config dict
        2) Validate into model
        3) Apply env overrides (DERIV__API_TOKEN, etc.) on top
        """
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

        return base.with_env_overrides()

    def with_env_overrides(self) -> "AppConfig":
        updates = {}
        deriv_updates = {}
        accumulator_updates = {}

        if os.getenv("DERIV__APP_ID"):
            deriv_updates["app_id"] = os.environ["DERIV__APP_ID"]
        if os.getenv("DERIV__API_TOKEN"):
            deriv_updates["api_token"] = os.environ["DERIV__API_TOKEN"]
        if os.getenv("LOG_LEVEL"):
            updates["log_level"] = os.environ["LOG_LEVEL"]
        if os.getenv("ACCUMULATOR__PRICE_SOURCE"):
            accumulator_updates["price_source"] = os.environ["ACCUMULATOR__PRICE_SOURCE"]

        if deriv_updates:
            updates["deriv"] = self.deriv.model_dump() | deriv_updates
        if accumulator_updates:
            updates["accumulator"] = self.accumulator.model_dump() | accumulator_updates
        if not updates:
            return self

        # Re-validate so overrides go through the same field validators as YAML.
        try:
            return type(self).model_validate(self.model_dump() | updates)
        except ValidationError as e:
            raise ValueError(f"Configuration validation error (env override): {e}")


def load_config(config_path: Optional[Path] = None) -> AppConfig:
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

    return AppConfig.from_yaml(config_path)
