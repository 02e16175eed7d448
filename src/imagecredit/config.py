from pydantic_settings import BaseSettings


class ConfigurationError(RuntimeError):
    """Raised at startup when required production settings are missing."""


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://app:devpassword@db:5432/imagecredit"
    REDIS_URL: str = "redis://redis:6379/0"

    # Blockchain RPC endpoints
    ALCHEMY_API_KEY: str = ""
    ETHEREUM_RPC_URL: str = ""
    POLYGON_RPC_URL: str = ""
    ARBITRUM_RPC_URL: str = ""
    OPTIMISM_RPC_URL: str = ""
    BASE_RPC_URL: str = ""
    SOLANA_RPC_URL: str = ""

    RPC_TIMEOUT_SECONDS: float = 10.0
    RPC_MAX_RETRIES: int = 3
    RPC_BACKOFF_SECONDS: float = 0.5

    # Receiving wallets (one EVM address serves every EVM chain unless overridden)
    EVM_PAYMENT_WALLET: str = ""
    ETHEREUM_PAYMENT_WALLET: str = ""
    POLYGON_PAYMENT_WALLET: str = ""
    ARBITRUM_PAYMENT_WALLET: str = ""
    OPTIMISM_PAYMENT_WALLET: str = ""
    BASE_PAYMENT_WALLET: str = ""
    SOLANA_PAYMENT_WALLET: str = ""

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_SUCCESS_URL: str = "https://imagecredit.example.com/billing/success?session_id={CHECKOUT_SESSION_ID}"
    STRIPE_CANCEL_URL: str = "https://imagecredit.example.com/billing/cancel"
    STRIPE_BASIC_PRICE_ID: str = ""
    STRIPE_PRO_PRICE_ID: str = ""
    STRIPE_PREMIUM_PRICE_ID: str = ""

    JWT_SECRET_KEY: str = ""
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    JWT_REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    IMAGE_API_URL: str = "http://image-api:8080"
    IMAGE_API_KEY: str = ""
    IMAGE_API_TIMEOUT_SECONDS: float = 120.0

    # "chain:contract" entries, e.g. ["ethereum:0xabc..."]
    NFT_COLLECTIONS: list[str] = []
    NFT_HOLDER_BONUS_CREDITS: int = 25

    APP_ENV: str = "development"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    def missing_production_settings(self) -> list[str]:
        """Return human-readable problems that make this config unsafe for production."""
        problems: list[str] = []

        if len(self.JWT_SECRET_KEY.strip()) < 32:
            problems.append("JWT_SECRET_KEY must be at least 32 characters")
        if not self.STRIPE_SECRET_KEY:
            problems.append("STRIPE_SECRET_KEY is required")
        elif self.STRIPE_SECRET_KEY.startswith("sk_test_"):
            problems.append("STRIPE_SECRET_KEY is a test key")
        if not self.STRIPE_WEBHOOK_SECRET:
            problems.append("STRIPE_WEBHOOK_SECRET is required")

        has_evm = bool(self.EVM_PAYMENT_WALLET) and any(
            (
                self.ALCHEMY_API_KEY,
                self.ETHEREUM_RPC_URL,
                self.POLYGON_RPC_URL,
                self.ARBITRUM_RPC_URL,
                self.OPTIMISM_RPC_URL,
                self.BASE_RPC_URL,
            )
        )
        has_solana = bool(self.SOLANA_PAYMENT_WALLET and self.SOLANA_RPC_URL)
        if not (has_evm or has_solana):
            problems.append("at least one payment wallet with an RPC URL is required")

        return problems

    def validate_for_production(self) -> None:
        """Fail fast when running in production with an insecure configuration."""
        if not self.is_production:
            return
        problems = self.missing_production_settings()
        if problems:
            raise ConfigurationError(
                "Invalid production configuration: " + "; ".join(problems)
            )


settings = Settings()
