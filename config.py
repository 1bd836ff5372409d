import os
from pathlib import Path
from dotenv import load_dotenv


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)

# Load the main .env first (to get ENV_FILE)
load_dotenv()

# If ENV_FILE exists, load that specific file too
env_file = os.getenv("ENV_FILE")
if env_file:
    load_dotenv(env_file)

class Config:
    DEBUG = False
    TESTING = False
    SECRET_KEY = os.getenv("SECRET_KEY", "fallback-secret")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URI", "sqlite:///keys.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # pysqlite waits this many seconds for a competing writer before giving up;
    # pooled connections may be handed to another request thread
    SQLALCHEMY_ENGINE_OPTIONS = (
        {"connect_args": {"timeout": 30, "check_same_thread": False}}
        if SQLALCHEMY_DATABASE_URI.startswith("sqlite")
        else {}
    )
    AUTO_CREATE_SCHEMA = _env_flag("AUTO_CREATE_SCHEMA", False)

    # Relative SQLite files and the log file live here
    DATA_DIR = os.getenv("DATA_DIR", str(Path.home() / "keys_service_data"))
    LOG_FILE = os.getenv("LOG_FILE", str(Path(DATA_DIR) / "logs" / "keys_service.log"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Search and pagination
    PAGE_LIMIT_DEFAULT = _env_int("PAGE_LIMIT_DEFAULT", 20)
    PAGE_LIMIT_MAX = _env_int("PAGE_LIMIT_MAX", 100)
    SEARCH_MIN_QUERY_LENGTH = _env_int("SEARCH_MIN_QUERY_LENGTH", 3)

    # Reservation retries after a lost claim race
    RESERVATION_MAX_ATTEMPTS = _env_int("RESERVATION_MAX_ATTEMPTS", 3)

    # Identity forwarded by the upstream gateway
    ACTOR_HEADER = os.getenv("ACTOR_HEADER", "X-Actor")

    RATELIMIT_ENABLED = _env_flag("RATELIMIT_ENABLED", True)
    RATELIMIT_DEFAULT = os.getenv("RATELIMIT_DEFAULT", "600 per minute")
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")

class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URI", "postgresql://keys@localhost/keys")
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URI", "sqlite:///development.db")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG").upper()

class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URI", "sqlite:///testing.db")
    RATELIMIT_ENABLED = False

def get_config(env=None):
    env = env or os.getenv("ENV", "development").lower()

    if env == "production":
        return ProductionConfig
    elif env == "testing":
        return TestingConfig
    else:
        return DevelopmentConfig
