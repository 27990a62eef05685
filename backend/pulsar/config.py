from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Worker API shared secret (empty = worker endpoints locked)
    worker_secret: str = ""

    # x402 facilitator
    facilitator_url: str = "https://api.cdp.coinbase.com/platform/v2/x402"
    facilitator_api_key: str = ""
    facilitator_timeout_seconds: float = 30.0

    # Payment requirement
    payment_scheme: str = "exact"
    payment_network: str = "base"
    pay_to: str = "0x178517854cA110D421140f5Ab4653F7F39339ACD"
    # $0.20 USDC (6 decimals)
    price_atomic: str = "200000"
    price_display: str = "$0.20 USDC"
    asset_address: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    asset_name: str = "USD Coin"
    asset_version: str = "2"
    max_timeout_seconds: int = 300

    # Queue behaviour
    estimated_generation_seconds: int = 90
    history_capacity: int = 100
    history_window: int = 20

    # Job store: "sql" or "memory"
    job_store_backend: str = "sql"
    database_url: str = "sqlite:///./pulsar.db"

    # Operator alerts (Telegram); disabled when the token is empty
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""

    # Frontend
    frontend_url: str = "http://localhost:3000"

    log_level: str = "INFO"

    model_config = {"env_file": ".env"}


settings = Settings()
