# config.py
"""
Numbers lottery: Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
"""

from __future__ import annotations
from decimal import Decimal
from typing import Optional, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator, model_validator

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",            # read raw names (e.g., RPC_URL)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # App / API
    # =========================
    API_PREFIX: str = "/api"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ENABLE_BACKGROUND_JOBS: bool = True

    # normalize API_PREFIX (no trailing slash; always starts with '/')
    @field_validator("API_PREFIX")
    @classmethod
    def _norm_api_prefix(cls, v: str) -> str:
        v = (v or "/api").strip()
        if not v.startswith("/"):
            v = "/" + v
        if v != "/" and v.endswith("/"):
            v = v[:-1]
        return v

    # =========================
    # CORS
    # =========================
    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://localhost:8000",
    ]

    # =========================
    # RPC / Admin
    # =========================
    RPC_URL: str = "https://api.mainnet-beta.solana.com"
    ADMIN_TOKEN: Optional[str] = None

    # Wallet that receives bets (public key) and the payout signer (base58 secret)
    RECEIVING_WALLET: str = ""
    PAYOUT_WALLET_PK: Optional[str] = None

    # =========================
    # Bets / payments
    # =========================
    BET_AMOUNT: Decimal = Decimal("0.1")          # SOL per bet
    PAYMENT_TOLERANCE: Decimal = Decimal("0.01")  # accepted deviation, SOL
    POLL_INTERVAL_SECONDS: float = 15.0
    MAX_CHECK_ATTEMPTS: int = 240                 # ~1 hour at 15s
    PENDING_BATCH_LIMIT: int = 100
    RECENT_TX_LIMIT: int = 50
    SESSION_TTL_SECONDS: int = 3600
    MAX_BETS_PER_REQUEST: int = 100

    # =========================
    # Game
    # =========================
    NUMBERS_COUNT: int = 6
    NUMBERS_MIN: int = 1
    NUMBERS_MAX: int = 60

    DRAW_DAYS: str = "mon,wed,sat"                # comma separated weekday names
    DRAW_HOUR: int = 22
    DRAW_MINUTE: int = 59
    DRAW_TIMEZONE: str = "America/New_York"

    @field_validator("DRAW_DAYS", mode="before")
    @classmethod
    def _norm_draw_days(cls, v):
        if isinstance(v, str):
            v = [p for p in v.replace(";", ",").split(",")]
        days = [str(d).strip().lower()[:3] for d in v if str(d).strip()]
        bad = [d for d in days if d not in WEEKDAYS]
        if bad or not days:
            raise ValueError(f"DRAW_DAYS must be weekday names, got {v!r}")
        return ",".join(days)

    # =========================
    # Economics (percent of new bets; must sum to 100)
    # =========================
    HOUSE_FEE_PCT: Decimal = Decimal("5")
    ROLLOVER_PCT: Decimal = Decimal("15")
    WINNER_PCT: Decimal = Decimal("80")
    AMOUNT_DECIMALS: int = 9                      # lamport precision

    @model_validator(mode="after")
    def _check_splits(self) -> "Settings":
        total = self.HOUSE_FEE_PCT + self.ROLLOVER_PCT + self.WINNER_PCT
        if total != Decimal("100"):
            raise ValueError(f"HOUSE_FEE_PCT + ROLLOVER_PCT + WINNER_PCT must be 100 (got {total})")
        if self.NUMBERS_MAX - self.NUMBERS_MIN + 1 < self.NUMBERS_COUNT:
            raise ValueError("number range is smaller than NUMBERS_COUNT")
        return self

    # =========================
    # Results ingestion
    # =========================
    RESULTS_FEED_URL: str = ""                    # empty = manual entry only
    RESULTS_CHECK_HOUR: int = 23
    RESULTS_CHECK_MINUTE: int = 0

    # =========================
    # Display currency
    # =========================
    POOL_FROM_WALLET_BALANCE: bool = False
    USD_RATE_URL: str = "https://api.coingecko.com/api/v3/simple/price?ids=solana&vs_currencies=usd"
    USD_RATE_CACHE_SECONDS: int = 300
    USD_FALLBACK_RATE: Decimal = Decimal("150")

    # =========================
    # Database
    # =========================
    DB_PATH: str = "data/lottery.db"

    # -------------------------
    # Derived helpers
    # -------------------------
    @property
    def amount_quantum(self) -> Decimal:
        """Smallest representable amount (1 lamport by default)."""
        return Decimal(1).scaleb(-int(self.AMOUNT_DECIMALS))

    @property
    def draw_weekdays(self) -> List[int]:
        """DRAW_DAYS as datetime.weekday() integers (Mon=0)."""
        return sorted({WEEKDAYS.index(d) for d in self.DRAW_DAYS.split(",")})

    @property
    def draw_schedule_label(self) -> str:
        days = ", ".join(WEEKDAYS[i].capitalize() for i in self.draw_weekdays)
        return f"{days} at {self.DRAW_HOUR:02d}:{self.DRAW_MINUTE:02d} {self.DRAW_TIMEZONE}"


# Instantiate global settings (values resolved from environment)
settings = Settings()
