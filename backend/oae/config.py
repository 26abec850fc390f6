from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "sqlite+aiosqlite:///./oae.db"
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440
    LOG_LEVEL: str = "INFO"

    # Principals allowed on admin routes (Telegram user ids)
    ADMIN_USER_IDS: str = ""

    # Chains that get a poller
    ENABLED_CHAINS: str = "BTC,LTC"
    BTC_ESPLORA_URL: str = "https://blockstream.info/api"
    LTC_ESPLORA_URL: str = "https://litecoinspace.org/api"
    POLYGON_RPC_URL: str = "https://polygon-rpc.com"
    POLYGON_USDT_CONTRACT: str = "0xc2132D05D31c914a87C6611C10748AEb04B58e8F"

    # Remote signer; broadcasting is disabled while unset
    SIGNER_URL: str = ""
    SIGNER_TOKEN: str = ""
    # CHAIN=handle pairs; defaults to "<chain>-hot"
    SIGNER_HANDLES: str = ""

    # Notification sink; falls back to the log sink while unset
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_ADMIN_CHAT_ID: str = ""

    POLL_CONCURRENCY: int = 4
    ADAPTER_RATE_PER_SEC: float = 5.0
    ADAPTER_BURST: int = 10
    ADAPTER_TIMEOUT_SEC: float = 10.0
    ADAPTER_BUDGET_SEC: float = 60.0

    NOTIFY_MAX_RETRIES: int = 5
    PAYOUT_MAX_RETRIES: int = 3
    PIN_MAX_ATTEMPTS: int = 5
    PIN_LOCKOUT_MINUTES: int = 15

    WORKER_INTERVAL_SEC: float = 5.0
    SCHEDULE_CHECK_SEC: int = 30

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v):
        if isinstance(v, str) and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    @property
    def admin_ids(self) -> set[str]:
        return {x.strip() for x in self.ADMIN_USER_IDS.split(",") if x.strip()}

    @property
    def signer_handles(self) -> dict[str, str]:
        pairs = (x.split("=", 1) for x in self.SIGNER_HANDLES.split(",") if "=" in x)
        return {chain.strip().upper(): handle.strip() for chain, handle in pairs}

    @property
    def chains(self) -> list[str]:
        return [c.strip().upper() for c in self.ENABLED_CHAINS.split(",") if c.strip()]

settings = Settings()
