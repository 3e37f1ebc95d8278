"""
Configuration Module for the Solana transaction submitter.

Settings are loaded from environment variables (and an optional ``.env``
file) using Pydantic v2 BaseSettings, with validation and type safety.

Usage:
    from solana_submitter.config import load_settings
    settings = load_settings()
    print(settings.submission.max_attempts)
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import (
    AnyHttpUrl,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


# =============================================================================
# ENUMS
# =============================================================================

class LogLevel(str, Enum):
    """Root logger levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Network(str, Enum):
    """Public Solana clusters."""
    MAINNET = "mainnet-beta"
    DEVNET = "devnet"
    TESTNET = "testnet"


CLUSTER_URLS = {
    Network.MAINNET: "https://api.mainnet-beta.solana.com",
    Network.DEVNET: "https://api.devnet.solana.com",
    Network.TESTNET: "https://api.testnet.solana.com",
}


def http_to_ws(url: str) -> str:
    """Derive the websocket endpoint that pairs with an HTTP RPC URL."""
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


# =============================================================================
# BASE CONFIGURATION
# =============================================================================

class BaseConfig(BaseSettings):
    """Shared .env handling for every settings section."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )


# =============================================================================
# SOLANA RPC CONFIGURATION
# =============================================================================

class SolanaRPCSettings(BaseConfig):
    """Where transactions are sent and confirmed."""

    model_config = SettingsConfigDict(
        env_prefix="SOLANA_",
        env_file=".env",
        extra="ignore",
    )

    network: Network = Field(
        default=Network.MAINNET,
        description="Cluster whose public endpoint is used when rpc_url is unset",
    )

    rpc_url: Optional[AnyHttpUrl] = Field(
        default=None,
        description="RPC endpoint URL (defaults to the public cluster URL)",
    )

    ws_url: Optional[str] = Field(
        default=None,
        description="WebSocket endpoint URL for signature subscriptions",
    )

    commitment: str = Field(
        default="confirmed",
        pattern="^(processed|confirmed|finalized)$",
        description="Target commitment level for confirmation",
    )

    timeout: int = Field(
        default=30,
        ge=5,
        le=120,
        description="HTTP timeout for a single RPC call, in seconds",
    )

    @field_validator("rpc_url", "ws_url", mode="before")
    @classmethod
    def validate_url(cls, v: Any) -> Any:
        """Treat empty strings as unset."""
        if v is None or v == "":
            return None
        return v

    @property
    def http_endpoint(self) -> str:
        if self.rpc_url is not None:
            return str(self.rpc_url).rstrip("/")
        return CLUSTER_URLS[self.network]

    @property
    def ws_endpoint(self) -> str:
        if self.ws_url:
            return self.ws_url
        return http_to_ws(self.http_endpoint)


# =============================================================================
# SUBMISSION CONFIGURATION
# =============================================================================

class SubmissionSettings(BaseConfig):
    """Retry, fee escalation and confirmation tuning."""

    model_config = SettingsConfigDict(
        env_prefix="SUBMIT_",
        env_file=".env",
        extra="ignore",
    )

    max_attempts: int = Field(
        default=5,
        ge=1,
        le=10,
        description="Maximum build/send/confirm attempts per submission",
    )

    initial_priority_fee: int = Field(
        default=1_000,
        ge=0,
        description="Attempt-1 priority fee in micro-lamports per compute unit",
    )

    priority_fee_ceiling: Optional[int] = Field(
        default=1_000_000,
        ge=0,
        description="Cap for the escalated priority fee (empty = uncapped)",
    )

    compute_unit_limit: Optional[int] = Field(
        default=None,
        ge=1,
        le=1_400_000,
        description="Compute unit limit instruction value (empty = omit)",
    )

    confirmation_timeout: float = Field(
        default=45.0,
        gt=0,
        le=300,
        description="Backup deadline for confirmation in seconds",
    )

    poll_interval: float = Field(
        default=2.0,
        gt=0,
        le=30,
        description="Signature status polling interval in seconds",
    )

    base_backoff: float = Field(
        default=1.0,
        ge=0,
        le=60,
        description="Base delay for exponential backoff between attempts",
    )

    max_backoff: float = Field(
        default=20.0,
        ge=0,
        le=300,
        description="Maximum delay between attempts",
    )

    rate_limit_backoff: float = Field(
        default=10.0,
        ge=0,
        le=300,
        description="Delay applied after a rate-limited attempt",
    )

    max_rate_limit_backoff: float = Field(
        default=60.0,
        ge=0,
        le=600,
        description="Longest wait honored from a server Retry-After header",
    )

    simulate: bool = Field(
        default=True,
        description="Simulate each attempt before sending it",
    )

    use_subscription: bool = Field(
        default=True,
        description="Race a websocket signature subscription against polling",
    )

    @field_validator("priority_fee_ceiling", "compute_unit_limit", mode="before")
    @classmethod
    def parse_optional_int(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> "SubmissionSettings":
        """Keep fee and backoff bounds consistent."""
        if (
            self.priority_fee_ceiling is not None
            and self.priority_fee_ceiling < self.initial_priority_fee
        ):
            raise ValueError(
                f"priority_fee_ceiling ({self.priority_fee_ceiling}) cannot be below "
                f"initial_priority_fee ({self.initial_priority_fee})"
            )
        if self.max_backoff < self.base_backoff:
            raise ValueError("max_backoff must be >= base_backoff")
        if self.max_rate_limit_backoff < self.rate_limit_backoff:
            raise ValueError("max_rate_limit_backoff must be >= rate_limit_backoff")
        return self


# =============================================================================
# WALLET CONFIGURATION
# =============================================================================

class WalletSettings(BaseConfig):
    """Signer used by the command line tools."""

    model_config = SettingsConfigDict(
        env_prefix="WALLET_",
        env_file=".env",
        extra="ignore",
    )

    private_key: Optional[SecretStr] = Field(
        default=None,
        description="Base58 encoded secret key",
    )

    public_key: Optional[str] = Field(
        default=None,
        description="Expected public key, checked against the secret key",
    )


# =============================================================================
# BATCH CONFIGURATION
# =============================================================================

class BatchSettings(BaseConfig):
    """Bulk burn driver configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BATCH_",
        env_file=".env",
        extra="ignore",
    )

    wallets_file: Path = Field(
        default=Path("wallets.json"),
        description="JSON file holding the wallets to process",
    )

    delay_between_calls: float = Field(
        default=10.0,
        ge=0,
        description="Pause between two wallets in seconds",
    )

    wallet_retry_rounds: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Rounds of retries over wallets that failed",
    )

    wallet_retry_delay: float = Field(
        default=15.0,
        ge=0,
        description="Delay before each wallet retry in the first round",
    )

    wallet_retry_backoff: float = Field(
        default=1.5,
        ge=1.0,
        le=10.0,
        description="Multiplier applied to the retry delay per round",
    )

    results_dir: Path = Field(
        default=Path("."),
        description="Directory receiving burn_results_<timestamp>.json",
    )


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

class LoggingSettings(BaseConfig):
    """Console and rotating-file logging for the CLI."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        extra="ignore",
    )

    level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Root log level",
    )

    format: str = Field(
        default="%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s",
        description="logging.Formatter format string",
    )

    date_format: str = Field(
        default="%Y-%m-%d %H:%M:%S",
        description="Timestamp format for log lines",
    )

    file_enabled: bool = Field(
        default=False,
        description="Also write logs to file_path",
    )

    file_path: Path = Field(
        default=Path("logs/submitter.log"),
        description="Rotating log file location",
    )

    file_max_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1024,
        description="Rotate once the file reaches this many bytes",
    )

    file_backup_count: int = Field(
        default=5,
        ge=0,
        le=100,
        description="Rotated files to keep",
    )


# =============================================================================
# AGGREGATE
# =============================================================================

class Settings(BaseConfig):
    """All sections, each reading its own env prefix."""

    solana: SolanaRPCSettings = Field(default_factory=SolanaRPCSettings)
    submission: SubmissionSettings = Field(default_factory=SubmissionSettings)
    wallet: WalletSettings = Field(default_factory=WalletSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def mask_secrets(self) -> dict[str, Any]:
        """Settings as a plain dict, secret values shortened to first/last four chars."""
        def mask_value(v: Any) -> Any:
            if isinstance(v, SecretStr):
                secret = v.get_secret_value()
                if len(secret) > 8:
                    return f"{secret[:4]}...{secret[-4:]}"
                return "***"
            elif isinstance(v, dict):
                return {k: mask_value(val) for k, val in v.items()}
            elif isinstance(v, (list, tuple)):
                return type(v)(mask_value(item) for item in v)
            return v

        return mask_value(self.model_dump())


# =============================================================================
# LOADING
# =============================================================================

def load_settings() -> Settings:
    """Build settings, turning validation failures into ConfigurationError."""
    try:
        return Settings()
    except ValidationError as e:
        raise ConfigurationError(
            message=f"Invalid configuration: {e.error_count()} error(s)",
            context={"errors": "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )},
        ) from e


__all__ = [
    "Settings",
    "SolanaRPCSettings",
    "SubmissionSettings",
    "WalletSettings",
    "BatchSettings",
    "LoggingSettings",
    "LogLevel",
    "Network",
    "CLUSTER_URLS",
    "http_to_ws",
    "load_settings",
]

