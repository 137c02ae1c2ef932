"""
Configuration models for the USDⓈ-M order/position state core.

Uses Pydantic for validation and type safety.
"""
from typing import List, Literal, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
import os
import re

# Binance client order id alphabet
_CLIENT_ID_PREFIX = re.compile(r"^[\.A-Z\:/a-z0-9_-]*$")

# ${VAR} or $VAR
_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)")


class ExchangeConfig(BaseSettings):
    """Exchange / transport configuration."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix="USDM_EXCHANGE_")

    name: Literal["binanceusdm"] = "binanceusdm"

    # Credentials (loaded from env or yaml)
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    use_testnet: bool = True

    # Instruments owned by the user stream, exchange symbols (e.g. BTCUSDT)
    instruments: List[str] = Field(default_factory=lambda: ["BTCUSDT"])
    recv_window_ms: int = Field(default=5000, ge=1000, le=60000)
    request_timeout_ms: int = Field(default=10000, ge=1000, le=60000)
    trade_lookback_seconds: float = Field(default=300.0, gt=0, le=86400.0, description="Trade history read with each snapshot")

    @field_validator("instruments")
    @classmethod
    def upper_symbols(cls, v: List[str]) -> List[str]:
        return [s.strip().upper() for s in v if s.strip()]


class LedgerConfig(BaseSettings):
    """Order and position ledger configuration."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix="USDM_LEDGER_")

    decimal_precision: int = Field(default=34, ge=16, le=64, description="Decimal context digits for ledger arithmetic")


class ReconciliationConfig(BaseSettings):
    """Sequence tracking and snapshot resync configuration."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix="USDM_RECONCILIATION_")

    max_buffered_events: int = Field(default=10000, ge=10, le=1_000_000, description="Per-stream buffer while degraded")
    snapshot_timeout_seconds: float = Field(default=15.0, gt=0, le=120.0)
    pending_grace_seconds: Optional[float] = Field(
        default=60.0,
        ge=0,
        description="PENDING orders older than this and absent from a snapshot are closed as REJECTED; null keeps them",
    )
    auto_resync: bool = Field(default=True, description="Start a resync task as soon as a stream degrades")
    resync_retry_seconds: Optional[float] = Field(default=5.0, gt=0, description="Delay before retrying a failed snapshot fetch; null leaves the stream degraded")
    sync_on_start: bool = Field(default=True, description="Merge a snapshot before processing the first event")


class GatewayConfig(BaseSettings):
    """Command gateway configuration."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix="USDM_GATEWAY_")

    client_id_prefix: str = Field(default="", max_length=20)

    @field_validator("client_id_prefix")
    @classmethod
    def valid_prefix(cls, v: str) -> str:
        if not _CLIENT_ID_PREFIX.match(v):
            raise ValueError(f"client_id_prefix has characters Binance rejects: {v!r}")
        return v


class MonitoringConfig(BaseSettings):
    """Logging and metrics configuration."""
    model_config = SettingsConfigDict(extra="ignore", env_prefix="USDM_MONITORING_")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None
    metrics_log_interval_seconds: Optional[int] = Field(default=300, ge=10, description="Periodic METRICS_SUMMARY; null disables")
    stream_queue_size: int = Field(default=10000, ge=10, description="Per-stream raw message queue bound")
    notification_queue_size: int = Field(default=1000, ge=1)


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "testnet", "prod"] = "dev"

    @model_validator(mode="after")
    def prod_not_on_testnet(self) -> "Config":
        if self.environment == "prod" and self.exchange.use_testnet:
            raise ValueError("environment=prod cannot run against the testnet")
        return self

    @classmethod
    def from_yaml(cls, yaml_path) -> "Config":
        """Load configuration from YAML file, expanding ${VAR} references."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Return original if not found

        config_dict = yaml.safe_load(_ENV_PATTERN.sub(replace_match, raw_content)) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        # Unexpanded placeholders mean the variable is not set
        exchange = config_dict.setdefault("exchange", {})
        for key in ("api_key", "api_secret"):
            value = exchange.get(key)
            if isinstance(value, str) and value.startswith("$"):
                exchange[key] = None

        # Credentials from env win over the file
        if os.getenv("BINANCE_API_KEY"):
            exchange["api_key"] = os.environ["BINANCE_API_KEY"]
        if os.getenv("BINANCE_API_SECRET"):
            exchange["api_secret"] = os.environ["BINANCE_API_SECRET"]

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Perform checks that need the whole config."""
        if self.environment == "prod" and not (self.exchange.api_key and self.exchange.api_secret):
            raise ValueError("Production requires exchange.api_key and exchange.api_secret")


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses the packaged usdm_core/config/config.yaml

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    from usdm_core.config.dotenv_loader import load_dotenv_files

    load_dotenv_files()

    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()
    return config
