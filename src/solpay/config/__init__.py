from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .checkout import CheckoutSettings
from .database import DatabaseSettings
from .fulfillment import FulfillmentSettings
from .pricing import PricingSettings
from .server import ServerSettings
from .solana import SolanaSettings


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        env_prefix="SOLPAY_",
        extra="ignore",
    )

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    solana: SolanaSettings = Field(default_factory=SolanaSettings)
    pricing: PricingSettings = Field(default_factory=PricingSettings)
    checkout: CheckoutSettings = Field(default_factory=CheckoutSettings)
    fulfillment: FulfillmentSettings = Field(default_factory=FulfillmentSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)


@lru_cache
def get_settings() -> Settings:
    return Settings()
