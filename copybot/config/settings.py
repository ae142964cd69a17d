from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, SecretStr

class Settings(BaseSettings):
    WALLET_PRIVATE_KEY: SecretStr | None = Field(default=None, description="Follower wallet private key")
    FUNDER_ADDRESS: str | None = Field(default=None, description="Proxy/funder address holding the follower's positions")
    SIGNATURE_TYPE: int = Field(default=1, description="0 = EOA, 1 = Magic/email proxy, 2 = Gnosis Safe")
    CHAIN_ID: int = Field(default=137)

    CLOB_API_URL: str = Field(default="https://clob.polymarket.com")
    DATA_API_URL: str = Field(default="https://data-api.polymarket.com")
    GAMMA_API_URL: str = Field(default="https://gamma-api.polymarket.com")

    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///copybot.db", description="Async SQLAlchemy database URL")
    DRY_RUN: bool = Field(default=False, description="If True, no real trades are executed")

    # Push feed
    ACTIVITY_WS_URL: str | None = Field(default=None, description="Activity websocket endpoint; push feed is off when unset")
    ACTIVITY_WS_API_KEY: SecretStr | None = Field(default=None)
    WS_RECONNECT_BASE_SECONDS: float = Field(default=5.0)
    WS_RECONNECT_MAX_SECONDS: float = Field(default=60.0)
    WS_MAX_RECONNECT_ATTEMPTS: int = Field(default=10)

    # Poll feed / dedup
    POLL_INTERVAL_SECONDS: float = Field(default=15.0)
    DEDUP_HORIZON_MULTIPLIER: float = Field(default=4.0, description="Dedup horizon as a multiple of the poll interval")

    READ_RETRY_ATTEMPTS: int = Field(default=4)
    LOG_LEVEL: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file="copybot/.env", env_file_encoding="utf-8", extra="ignore")

settings = Settings()
