"""
Configuration settings for the evotrader control core
"""
from typing import List, Literal, Optional
from pydantic_settings import BaseSettings
from pydantic import Field, SecretStr
from pathlib import Path


class SupabaseSettings(BaseSettings):
    """Supabase ledger store configuration"""
    model_config = {"env_file": ".env", "env_prefix": "SUPABASE_", "extra": "ignore"}

    url: Optional[str] = None
    service_role_key: Optional[SecretStr] = None
    enabled: bool = True

    @property
    def configured(self) -> bool:
        return bool(self.enabled and self.url and self.service_role_key)


class CoinbaseSettings(BaseSettings):
    """Coinbase Advanced Trade configuration (live path only)"""
    model_config = {"env_file": ".env", "env_prefix": "COINBASE_", "extra": "ignore"}

    api_key_name: Optional[str] = None
    private_key: Optional[SecretStr] = Field(None, description="EC private key, PEM or base64 DER")
    api_host: str = "api.coinbase.com"
    request_timeout_seconds: float = Field(10.0, gt=0)

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key_name and self.private_key and self.private_key.get_secret_value())


class CycleSettings(BaseSettings):
    """Decision cycle configuration"""
    model_config = {"env_file": ".env", "env_prefix": "CYCLE_", "extra": "ignore"}

    max_market_age_seconds: int = Field(120, ge=1)
    agent_bucket_minutes: int = Field(1, ge=1)
    symbol_bucket_minutes: int = Field(5, ge=1)
    symbols_per_agent: int = Field(3, ge=1, le=10)
    collaborator_deadline_seconds: float = Field(10.0, gt=0)
    default_starting_cash: float = Field(1000.0, gt=0)
    breeding_url: Optional[str] = None


class LoggingSettings(BaseSettings):
    """Logging configuration"""
    model_config = {"env_file": ".env", "extra": "ignore"}

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_to_file: bool = False
    log_file_path: Path = Path("logs/evotrader.log")
    log_max_size_mb: int = 50
    log_backup_count: int = 10
    log_format: str = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"


class ApiSettings(BaseSettings):
    """Scheduler-facing HTTP API configuration"""
    model_config = {"env_file": ".env", "env_prefix": "API_", "extra": "ignore"}

    host: str = "0.0.0.0"
    port: int = Field(8000, ge=1, le=65535)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])


class Settings(BaseSettings):
    """Main settings aggregator"""
    model_config = {"extra": "ignore"}  # Nested classes read their own env vars

    supabase: SupabaseSettings = Field(default_factory=SupabaseSettings)
    coinbase: CoinbaseSettings = Field(default_factory=CoinbaseSettings)
    cycle: CycleSettings = Field(default_factory=CycleSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)

    @classmethod
    def load(cls) -> "Settings":
        """Load settings from environment"""
        return cls(
            supabase=SupabaseSettings(),
            coinbase=CoinbaseSettings(),
            cycle=CycleSettings(),
            logging=LoggingSettings(),
            api=ApiSettings(),
        )


# Global settings instance
settings = Settings.load()
