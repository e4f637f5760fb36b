"""
backend/app/config.py

Purpose:
    Central settings loading for the wagering engine, the odds ingestion
    pipeline and the HTTP surface.

Dependencies:
    - pydantic-settings
    - pathlib
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Prefer backend/.env, fallback to project-root .env.
_BACKEND_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_ROOT_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB: str = "sportsbook"
    JWT_SECRET: str = "change-me"
    JWT_SECRET_OLD: str = ""  # Set during rotation
    BACKEND_CORS_ORIGINS: str = "http://localhost:5173"

    # Multi-document transactions need a replica set or mongos.
    # Standalone deployments keep this False and run sequentially.
    MONGO_TRANSACTIONS_ENABLED: bool = False

    # TheOddsAPI
    ODDS_API_KEY: str = ""
    THEODDSAPI_BASE_URL: str = "https://api.the-odds-api.com/v4"
    ODDS_ALLOWED_SPORTS: str = "basketball_nba,americanfootball_nfl,soccer_epl,baseball_mlb,icehockey_nhl"
    ODDS_API_REGIONS: str = "us"
    ODDS_API_MARKETS: str = "h2h,spreads,totals"
    ODDS_API_ODDS_FORMAT: str = "decimal"  # "american" is converted on ingest
    ODDS_API_BOOKMAKERS: str = ""
    ODDS_API_TIMEOUT_SECONDS: float = 15.0
    ODDS_API_MAX_RETRIES: int = 1
    ODDS_API_CIRCUIT_FAILURES: int = 3
    ODDS_API_CIRCUIT_RECOVERY_SECONDS: int = 300

    # Call budget + caching
    SPORTS_API_ENABLED: bool = True
    SPORTS_API_MAX_CALLS_PER_DAY: int = 1000  # 0 = unlimited
    ODDS_CACHE_TTL_SECONDS: int = 600
    ODDS_SCORES_ENABLED: bool = True
    ODDS_SCORES_DAYS_FROM: int = 0  # 0 = provider default (live + upcoming)

    # Refresh triggers
    ODDS_POLL_MINUTES: int = 10
    MANUAL_FETCH_MODE: bool = False
    PUBLIC_ODDS_REFRESH_ENABLED: bool = False

    # Demo only: synthesize placeholder odds for events without bookmakers
    ODDS_DEMO_FALLBACK_ENABLED: bool = False

    # Client-claimed price vs stored price: "tolerate" logs, "reject" refuses
    ODDS_DRIFT_POLICY: str = "tolerate"
    ODDS_DRIFT_TOLERANCE: float = 0.10

    # Wagering
    TEASER_MAX_LEGS: int = 6
    SETTLEMENT_SWEEP_MINUTES: int = 30

    # Event bus (in-process)
    EVENT_BUS_ENABLED: bool = True
    EVENT_BUS_QUEUE_MAXSIZE: int = 1000

    model_config = {
        "env_file": (str(_BACKEND_ENV_FILE), str(_ROOT_ENV_FILE)),
        "extra": "ignore",
    }

    @property
    def allowed_sports(self) -> list[str]:
        return [s.strip() for s in self.ODDS_ALLOWED_SPORTS.split(",") if s.strip()]


settings = Settings()
