from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LEDGER_", env_file=".env", extra="ignore")
    
    # Balances
    default_currency: str = "USD"
    default_clearing_period_days: int = 7
    
    # Payouts
    minimum_payout_amount: Decimal = Decimal("10.00")
    payout_platform_fee_rate: Decimal = Decimal("0")
    payout_tax_rate: Decimal = Decimal("0")
    payout_preflight_check: bool = True
    
    # Payment processor
    processor_base_url: str = "http://localhost:9000"
    processor_api_key: Optional[str] = None
    processor_timeout_seconds: float = 30.0
    processor_failure_threshold: int = 5
    processor_reset_timeout_seconds: float = 300.0
    
    # Jobs
    clearing_schedule: str = "0 0 * * *"
    payout_schedule: str = "0 * * * *"
    payout_execution_delay_seconds: float = 1.0
    scheduler_enabled: bool = False
    scheduler_tick_seconds: float = 30.0
    tracker_history_size: int = 50
    
    # Logging
    log_level: str = "INFO"
    log_json: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()
