from decimal import Decimal
from enum import Enum
from pydantic import AnyHttpUrl, BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Asset(BaseModel):
    symbol: str
    address: str
    decimals: int


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    ledger_base_url: AnyHttpUrl = "http://mock-ledger:8003"
    player_account: Optional[str] = None
    log_level: str = "INFO"
    http_timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    event_poll_interval_seconds: float = 2.0

    chain_id: int = 10143
    default_min_stake: Decimal = Decimal("0.001")
    default_max_stake: Decimal = Decimal("1.0")
    win_multiplier: int = 2

    base_asset_address: str = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"
    base_asset_decimals: int = 18
    stable_asset_address: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    stable_asset_decimals: int = 6

    realtime_price_url: AnyHttpUrl = "https://pro-api.coinmarketcap.com"
    realtime_api_key: Optional[str] = None
    market_data_url: AnyHttpUrl = "https://api.coingecko.com"
    market_data_token_ids: list[str] = ["monad", "monad-protocol", "monad-coin"]
    dex_price_url: AnyHttpUrl = "https://api.0x.org"
    dex_api_key: str = "demo-key"
    quote_timeout_seconds: float = 3.0
    fallback_unit_price: Decimal = Decimal("0.0024")

    swap_router_address: Optional[str] = None
    swap_gas_limit: int = 200000
    swap_deadline_seconds: int = 1800
    confirmation_timeout_seconds: float = 120.0
    receipt_poll_interval_seconds: float = 2.0


settings = Settings()

BASE_ASSET = Asset(symbol="MON", address=settings.base_asset_address, decimals=settings.base_asset_decimals)
STABLE_ASSET = Asset(symbol="USDC", address=settings.stable_asset_address, decimals=settings.stable_asset_decimals)

MIN_CHOICE = 1
MAX_CHOICE = 6


class WagerStatus(str, Enum):
    SUBMITTED = "submitted"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_RESOLUTION = "awaiting_resolution"
    RESOLVED = "resolved"
    FAILED = "failed"


TERMINAL_WAGER_STATUSES = {WagerStatus.RESOLVED, WagerStatus.FAILED}


class ExecutionState(str, Enum):
    QUOTED = "quoted"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class LedgerEventName(str, Enum):
    BET_PLACED = "BetPlaced"
    DICE_ROLLED = "DiceRolled"
    PAYOUT_SENT = "PayoutSent"


class QuoteProvider(str, Enum):
    REALTIME = "real"
    COINGECKO = "coingecko"
    ZEROX = "0x"
    FALLBACK = "fallback"
