"""Configuration settings for Sobek backend."""

from functools import lru_cache

from pydantic_settings import BaseSettings

from sobek.config import (
    ADI_TESTNET_CHAIN_ID,
    BASE_MAINNET_CHAIN_ID,
    BASE_SEPOLIA_CHAIN_ID,
    DEFAULT_ESCROW_DURATION_SECONDS,
    MIN_ESCROW_DURATION_SECONDS,
    ChainDeployment,
    EscrowConfig,
)


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Supabase
    supabase_url: str
    supabase_secret_key: str | None = None  # Backend/admin access
    # Legacy key (deprecated, will be removed)
    supabase_service_role_key: str | None = None

    # Shared secret for cron and admin endpoints (Authorization: Bearer <secret>)
    internal_api_secret: str | None = None

    # JWT (buyer/seller sessions; subject is the wallet address)
    jwt_secret_key: str  # Required - no default for security
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24  # 1 day

    # Chains
    default_chain_id: int = BASE_MAINNET_CHAIN_ID
    base_rpc_url: str = "https://mainnet.base.org"
    base_escrow_address: str | None = None
    base_sepolia_rpc_url: str = "https://sepolia.base.org"
    base_sepolia_escrow_address: str | None = None
    adi_rpc_url: str | None = None
    adi_escrow_address: str | None = None
    arbiter_private_key: str | None = None

    # Timer service
    timer_service_url: str | None = None
    timer_service_token: str | None = None

    # Notifications
    telegram_bot_token: str | None = None

    # Escrow policy
    escrow_default_duration_seconds: int = DEFAULT_ESCROW_DURATION_SECONDS
    escrow_min_duration_seconds: int = MIN_ESCROW_DURATION_SECONDS
    sweep_concurrency: int = 5
    chain_timeout_seconds: float = 120.0
    timer_timeout_seconds: float = 15.0
    verify_deposits: bool = False

    # Proxies whose X-Forwarded-For is believed when keying rate limits
    trusted_proxy_cidrs: list[str] = [
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "::1/128",
    ]

    # App
    debug: bool = False
    log_level: str = "INFO"
    # CORS: Allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    def escrow_config(self) -> EscrowConfig:
        """Build the escrow library configuration from these settings."""
        deployments = {}
        for chain_id, name, rpc_url, address in (
            (BASE_MAINNET_CHAIN_ID, "base", self.base_rpc_url, self.base_escrow_address),
            (BASE_SEPOLIA_CHAIN_ID, "base-sepolia", self.base_sepolia_rpc_url, self.base_sepolia_escrow_address),
            (ADI_TESTNET_CHAIN_ID, "adi-testnet", self.adi_rpc_url, self.adi_escrow_address),
        ):
            if rpc_url and address:
                deployments[chain_id] = ChainDeployment(chain_id, rpc_url, address, name)

        return EscrowConfig(
            default_chain_id=self.default_chain_id,
            deployments=deployments,
            default_escrow_duration_seconds=self.escrow_default_duration_seconds,
            min_escrow_duration_seconds=self.escrow_min_duration_seconds,
            sweep_concurrency=self.sweep_concurrency,
            chain_timeout_seconds=self.chain_timeout_seconds,
            timer_timeout_seconds=self.timer_timeout_seconds,
            verify_deposits=self.verify_deposits,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
