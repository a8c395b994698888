"""Configuration for the investment game."""

import os

ROUNDS = ("r1", "r2", "r3", "r4")
STARTUPS = ("s1", "s2", "s3", "s4", "s5")
ROUND_STATUSES = ("locked", "open", "closed")

# Development mode echoes tracebacks in 500 responses
APP_ENV = os.getenv("APP_ENV", "production")

GAME_CONFIG = {
    "team_count": int(os.getenv("GAME_TEAM_COUNT", "16")),
    "initial_fund": int(os.getenv("GAME_INITIAL_FUND", "1000")),
    "yield_mean": float(os.getenv("GAME_YIELD_MEAN", "0.05")),
    "yield_sd": float(os.getenv("GAME_YIELD_SD", "0.10")),
    "yield_min": float(os.getenv("GAME_YIELD_MIN", "-0.30")),
    "yield_max": float(os.getenv("GAME_YIELD_MAX", "0.50")),
    "yield_max_attempts": 100,
    "yield_decimals": 4,     # stored precision of startup yields
    "matching_capacity": int(os.getenv("GAME_MATCHING_CAPACITY", "3")),
}

SSE_CONFIG = {
    "heartbeat_seconds": float(os.getenv("SSE_HEARTBEAT_SECONDS", "30")),
    "connection_timeout_seconds": float(os.getenv("SSE_CONNECTION_TIMEOUT_SECONDS", "270")),
    "sweep_interval_seconds": float(os.getenv("SSE_SWEEP_INTERVAL_SECONDS", "120")),
    "max_age_minutes": float(os.getenv("SSE_MAX_AGE_MINUTES", "5")),
    "queue_size": 100,
}

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]


def team_ids() -> list[str]:
    return [f"team{i}" for i in range(1, GAME_CONFIG["team_count"] + 1)]
