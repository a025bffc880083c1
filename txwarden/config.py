import os

from pathlib import Path
from typing import Any, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]

WEI_PER_ETHER = 10**18


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def model_post_init(self, __context: Any) -> None:
        """Pick up the RPC endpoint from the conventional node variables."""

        super().model_post_init(__context)

        if "rpc_url" not in self.model_fields_set:
            fallback = os.getenv("ETH_RPC_URL") or os.getenv("WEB3_PROVIDER_URI")
            if fallback:
                object.__setattr__(self, "rpc_url", fallback)

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log renderer: json or console")

    # Ledger connection
    rpc_url: str = Field(
        default="http://127.0.0.1:8545",
        description="JSON-RPC endpoint of the ledger node",
        validation_alias=AliasChoices("rpc_url", "TXWARDEN_RPC_URL"),
    )
    rpc_timeout_seconds: float = Field(default=30.0, description="Per-request RPC timeout")
    rpc_max_connections: int = Field(default=20, ge=1, description="Pooled RPC connections shared by watch loops")
    chain_id: Optional[int] = Field(default=None, description="Chain ID stamped on built requests")

    # Transaction building
    gas_buffer_ratio: float = Field(
        default=0.20,
        ge=0,
        description="Safety buffer applied on top of the node's gas estimate",
    )
    fallback_gas_limit: int = Field(
        default=21000,
        description="Gas limit for plain value transfers (cancellations)",
    )

    # Confirmation tracking
    poll_interval_seconds: float = Field(default=2.0, gt=0, description="Receipt/head poll interval")
    stuck_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Seconds without a receipt before a submission counts as stuck",
    )
    max_consecutive_poll_errors: int = Field(
        default=10,
        ge=1,
        description="Consecutive failed poll cycles tolerated before a watch gives up",
    )

    # Resubmission
    gas_bump_factor: float = Field(default=1.2, gt=1, description="Gas price multiplier per acceleration")
    cancel_bump_factor: float = Field(default=1.2, gt=1, description="Gas price multiplier for cancellations")
    max_submission_attempts: int = Field(default=5, ge=1, description="Broadcast attempts allowed per nonce")
    retry_initial_delay_seconds: float = Field(default=1.0, ge=0, description="First resubmission backoff")
    retry_max_delay_seconds: float = Field(default=30.0, ge=0, description="Resubmission backoff ceiling")
    max_gas_price_wei: Optional[int] = Field(
        default=None,
        description="Hard cap on gas price; bumps beyond it exhaust the submission",
    )

    # Execution verification
    possibly_incomplete_gas_ratio: float = Field(
        default=0.95,
        gt=0,
        le=1,
        description="gasUsed/gasLimit ratio at which a receipt is flagged as possibly incomplete",
    )

    # Read cache
    read_cache_ttl_seconds: int = Field(default=30, description="TTL for cached read-only calls")
    read_cache_max_size: int = Field(default=1000, description="Maximum cached read results")

    # Retention
    reorg_history_blocks: int = Field(default=256, description="Block hashes kept for reorg detection")
    finished_record_limit: int = Field(default=1000, description="Terminal records kept for lookup")

    # Confirmation tiers
    negligible_value_wei: int = Field(
        default=WEI_PER_ETHER // 100,
        description="Transfers at or below this value need the lowest confirmation tier",
    )
    large_value_wei: int = Field(
        default=10 * WEI_PER_ETHER,
        description="Transfers at or above this value need the highest confirmation tier",
    )
    confirmations_negligible: int = Field(default=1, ge=0)
    confirmations_default: int = Field(default=3, ge=0)
    confirmations_contract: int = Field(default=6, ge=0)
    confirmations_large: int = Field(default=12, ge=0)

    @property
    def has_gas_price_cap(self) -> bool:
        return self.max_gas_price_wei is not None


# Global settings instance
settings = Settings()
