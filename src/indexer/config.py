"""Configuration system using pydantic-settings with environment variable loading.

Reserve quantities and thresholds are integers in on-chain base units
(lamports for SOL, smallest token unit for tokens). Ratios and USD values
are Decimal. Nothing here is a float except timeouts.
"""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict

LAMPORTS_PER_SOL = 1_000_000_000


class LedgerSettings(BaseSettings):
    """Solana RPC connection used to read program transactions and accounts."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_")

    rpc_url: str = "https://api.devnet.solana.com"
    program_id: str = "GUyF2TVe32Cid4iGVt2F6wPYDhLSVmTUZBj2974outYM"
    commitment: str = "confirmed"
    request_timeout_seconds: float = 15.0
    max_signatures_per_request: int = 1000  # getSignaturesForAddress hard cap


class CurveSettings(BaseSettings):
    """Bonding curve constants. Must match the deployed program."""

    model_config = SettingsConfigDict(env_prefix="CURVE_")

    total_fee_bps: int = 100  # 1% on every swap
    protocol_fee_bps: int = 50  # remainder goes to the creator
    graduation_threshold_lamports: int = 120 * LAMPORTS_PER_SOL
    initial_virtual_sol_lamports: int = 30 * LAMPORTS_PER_SOL
    initial_virtual_tokens: int = 1_000_000_000_000_000  # 1B tokens * 10^6
    total_supply: int = 1_000_000_000_000_000
    sol_decimals: int = 9
    token_decimals: int = 6
    liquidity_buffer_bps: int = 200  # 2% headroom when capping sells

    @property
    def sol_scale(self) -> Decimal:
        return Decimal(10) ** self.sol_decimals

    @property
    def token_scale(self) -> Decimal:
        return Decimal(10) ** self.token_decimals


class PriceFeedSettings(BaseSettings):
    """SOL/USD reference price feed."""

    model_config = SettingsConfigDict(env_prefix="PRICE_FEED_")

    fresh_ttl_seconds: float = 60.0
    stale_ttl_seconds: float = 300.0
    request_timeout_seconds: float = 5.0
    coingecko_url: str = (
        "https://api.coingecko.com/api/v3/simple/price?ids=solana&vs_currencies=usd"
    )
    coingecko_history_url: str = "https://api.coingecko.com/api/v3/coins/solana/history"
    binance_symbol: str = "SOL/USDT"


class StoreSettings(BaseSettings):
    """Local SQLite mirror."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    db_path: str = "data/indexer.db"
    busy_timeout_seconds: float = 30.0  # wait for another writer before failing


class SchedulerSettings(BaseSettings):
    """Periodic job cadence."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    sync_interval_seconds: float = 60.0
    sync_limit: int = 200
    heartbeat_interval_seconds: float = 60.0
    price_refresh_interval_seconds: float = 60.0
    reserve_refresh_interval_seconds: float = 300.0


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: str = "console"  # "json" in production
    ledger: LedgerSettings = LedgerSettings()
    curve: CurveSettings = CurveSettings()
    price_feed: PriceFeedSettings = PriceFeedSettings()
    store: StoreSettings = StoreSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
