import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List

from dotenv import load_dotenv

load_dotenv()

_TRUTHY = ("true", "1", "yes")


def _int_env(name: str, default: int, lo: int, hi: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < lo or value > hi:
        raise ValueError(f"{name} must be between {lo} and {hi}, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str
    sql_echo: bool
    score_report_max_attempts: int
    log_level: str
    cors_origins: List[str]
    max_bracket_size: int


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Read settings from the environment (and .env) once per process."""
    extra = os.getenv("CORS_ORIGINS", "")
    origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
    origins.extend(o.strip() for o in extra.split(",") if o.strip())

    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./kartops.db"),
        sql_echo=os.getenv("SQL_ECHO", "false").lower() in _TRUTHY,
        score_report_max_attempts=_int_env("SCORE_REPORT_MAX_ATTEMPTS", 3, 1, 10),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        cors_origins=origins,
        max_bracket_size=_int_env("MAX_BRACKET_SIZE", 64, 2, 64),
    )
