"""
PinPay Configuration Management
Uses pydantic-settings for type-safe environment variable loading
"""

from typing import Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewayConfig(BaseSettings):
    """Configuration for the PinPay gateway service"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Configuration
    gateway_host: str = Field(default="0.0.0.0", description="Host to bind the server to")
    gateway_port: int = Field(default=8000, description="Port to bind the server to")
    cors_origins: list[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
    )
    rate_limit_enabled: bool = Field(default=True, description="Rate limit PIN lookups and signatures")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Storage (in-memory store is used when Supabase is not configured)
    supabase_url: str = Field(default="")
    supabase_key: str = Field(default="")
    requests_table: str = Field(default="gasless_payment_requests")

    # Token / EIP-712 domain (JPYC on Polygon)
    chain_id: int = Field(default=137)
    token_address: str = Field(
        default="0xE7C3D8C9a439feDe00D2600032D5dB0Be71C3c29",
        description="EIP-3009 token contract"
    )
    token_name: str = Field(default="JPY Coin")
    token_version: str = Field(default="1")
    token_decimals: int = Field(default=18, ge=0, description="Reported to wallets for display")

    # Request issuing
    pin_length: int = Field(default=6, ge=4, le=12)
    pin_max_attempts: int = Field(default=10, ge=1)
    default_ttl_seconds: int = Field(default=300, gt=0, description="Validity window for new requests")

    # Relay
    relay_mode: Literal["simulated", "gelato", "direct"] = Field(default="simulated")
    relay_max_attempts: int = Field(default=3, ge=1)
    relay_base_delay: float = Field(default=2.0, ge=0, description="Backoff step in seconds")

    gelato_api_url: str = Field(default="https://api.gelato.digital")
    gelato_api_key: str = Field(default="")
    relay_poll_interval: float = Field(default=2.0, gt=0)
    relay_poll_timeout: float = Field(default=60.0, gt=0)
    relay_http_timeout: float = Field(default=15.0, gt=0)

    rpc_url: str = Field(default="https://polygon-rpc.com")
    relayer_private_key: str = Field(default="", description="Gas sponsor key for direct mode")
    gas_limit: int = Field(default=150000)
    tx_timeout_seconds: int = Field(default=120)

    # Expiry sweeper
    expiry_sweep_enabled: bool = Field(default=True)
    expiry_sweep_interval: float = Field(default=60.0, gt=0)
    expiry_sweep_batch: int = Field(default=100, gt=0)
    relay_claim_timeout: float = Field(
        default=900.0,
        gt=0,
        description="Seconds before an unresolved relay attempt is marked failed"
    )

    @field_validator("relayer_private_key")
    @classmethod
    def validate_private_key(cls, v):
        if v and not v.startswith("0x"):
            return f"0x{v}"
        return v

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


_gateway_config: Optional[GatewayConfig] = None


def get_gateway_config() -> GatewayConfig:
    """Get or create gateway configuration singleton"""
    global _gateway_config
    if _gateway_config is None:
        _gateway_config = GatewayConfig()
    return _gateway_config
