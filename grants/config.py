from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


CsvList = Annotated[list[str], NoDecode]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GRANTS_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Countries where ads grants are offered; ugp grants are withheld there by default.
    ads_regions: CsvList = ["US", "CA", "GB", "FR", "DE"]
    supported_platforms: CsvList = ["desktop", "android", "ios", "osx", "windows", "linux"]

    challenge_ttl_seconds: int = 600
    claim_cooldown_seconds: int = 3600
    cooldown_bypass_token: str = ""

    balance_cache_ttl_seconds: int = 300
    settlement_retry_after_seconds: int = 5

    # Hex encoded Ed25519 public keys
    grant_public_keys: CsvList = []
    attestation_public_keys: CsvList = []

    default_altcurrency: str = "BAT"
    default_protocol_version: int = 4
    log_level: str = "INFO"

    @field_validator(
        "ads_regions",
        "supported_platforms",
        "grant_public_keys",
        "attestation_public_keys",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("ads_regions")
    @classmethod
    def _upper_regions(cls, value: list[str]) -> list[str]:
        return [code.upper() for code in value]


@lru_cache
def get_settings() -> Settings:
    return Settings()
