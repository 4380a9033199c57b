"""
Configuration management using Pydantic Settings.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Bridge settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===================
    # EVM Configuration
    # ===================
    ethereum_rpc_url: str = Field(
        default="https://eth.llamarpc.com",
        description="Ethereum mainnet RPC endpoint"
    )
    base_rpc_url: str = Field(
        default="https://mainnet.base.org",
        description="Base RPC endpoint"
    )
    polygon_rpc_url: str = Field(
        default="https://polygon-rpc.com",
        description="Polygon RPC endpoint"
    )
    sepolia_rpc_url: Optional[str] = Field(default=None, description="Sepolia testnet RPC endpoint")

    # ===================
    # Solana Configuration
    # ===================
    solana_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        description="Solana RPC endpoint"
    )
    solana_devnet_rpc_url: str = Field(
        default="https://api.devnet.solana.com",
        description="Solana devnet RPC endpoint"
    )

    rpc_timeout_seconds: float = Field(default=30.0, gt=0)

    # ===================
    # Internet Computer Configuration
    # ===================
    ic_host: str = Field(default="https://icp0.io", description="IC boundary node host")
    orchestrator_canister_id: str = Field(
        default="vg3po-ix777-77774-qaafa-cai",
        description="ICRC-99 orchestrator canister"
    )
    cycles_ledger_canister_id: str = Field(
        default="um5iw-rqaaa-aaaaq-qaaba-cai",
        description="Cycles ledger (ICRC-2 fee ledger) canister"
    )

    # ===================
    # Discovery windows
    # ===================
    # Providers cap eth_getLogs ranges, so every window is scanned in chunks
    evm_primary_scan_blocks: int = Field(default=5_000, ge=1)
    evm_deep_scan_blocks: int = Field(default=100_000, ge=1)
    evm_log_chunk_blocks: int = Field(default=5_000, ge=1)
    solana_signature_scan_limit: int = Field(default=1_000, ge=1, le=1_000)
    discovery_concurrency: int = Field(default=8, ge=1, le=64)

    # ===================
    # Polling
    # ===================
    cast_poll_interval_seconds: float = Field(default=5.0)
    cast_poll_max_attempts: int = Field(default=120, ge=1)
    deployment_poll_max_attempts: int = Field(default=60, ge=1)

    # ===================
    # Funding
    # ===================
    approval_ttl_seconds: int = Field(default=86_400, ge=60)
    native_safety_margin_percent: int = Field(default=150)

    # ===================
    # Logging
    # ===================
    log_level: str = Field(default="INFO")

    @field_validator("native_safety_margin_percent")
    @classmethod
    def validate_margin(cls, v: int) -> int:
        """A margin below 100% would under-fund the estimate."""
        if v < 100:
            raise ValueError("Safety margin must be at least 100 percent")
        return v

    @field_validator("cast_poll_interval_seconds")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Poll interval must be positive")
        return v

    def get_chain_rpc(self, family: str, network: str) -> str:
        """Get RPC URL for a chain family and network id."""
        rpcs = {
            ("evm", "1"): self.ethereum_rpc_url,
            ("evm", "8453"): self.base_rpc_url,
            ("evm", "137"): self.polygon_rpc_url,
            ("evm", "11155111"): self.sepolia_rpc_url or "",
            ("solana", "mainnet"): self.solana_rpc_url,
            ("solana", "devnet"): self.solana_devnet_rpc_url,
        }
        return rpcs.get((family.lower(), str(network).lower()), "")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
