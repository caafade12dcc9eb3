import os
from functools import lru_cache
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, default))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings loaded from environment variables with defaults.

    Every tunable of the scrape pipeline lives here so that thresholds and
    delays can be changed per deployment through the environment or a .env
    file without touching code.
    """

    # Project metadata
    PROJECT_NAME = "Pricewatch"
    PROJECT_VERSION = "0.1.0"

    # Database Settings
    DB_HOST = os.getenv("DB_HOST", "localhost")
    DB_PORT = os.getenv("DB_PORT", "3306")
    DB_NAME = os.getenv("DB_NAME", "pricewatch")
    DB_USER = os.getenv("DB_USER", "user")
    DB_PASS = os.getenv("DB_PASSWORD", "password")
    DATABASE_URL_OVERRIDE = os.getenv("DATABASE_URL")

    # Identity resolution
    SAME_SHOP_MERGE_THRESHOLD = _env_float("SAME_SHOP_MERGE_THRESHOLD", 0.75)
    CROSS_SHOP_MERGE_THRESHOLD = _env_float("CROSS_SHOP_MERGE_THRESHOLD", 0.90)
    SUGGESTION_MIN_CONFIDENCE = _env_float("SUGGESTION_MIN_CONFIDENCE", 0.50)

    # Rate limiting for batch runs (seconds)
    SEQUENTIAL_DELAY = _env_float("SEQUENTIAL_DELAY", 1.5)
    CHUNK_DELAY = _env_float("CHUNK_DELAY", 2.0)
    REFRESH_DELAY = _env_float("REFRESH_DELAY", 2.0)
    MAX_CONCURRENT = _env_int("MAX_CONCURRENT", 3)
    REFRESH_MAX_PRODUCTS = _env_int("REFRESH_MAX_PRODUCTS", 100)

    # Price plausibility
    PRICE_ERROR_FLOOR = os.getenv("PRICE_ERROR_FLOOR", "1.00")
    PRICE_ERROR_RATIO = os.getenv("PRICE_ERROR_RATIO", "0.30")
    PRICE_AVERAGE_WINDOW_DAYS = _env_int("PRICE_AVERAGE_WINDOW_DAYS", 30)
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "EUR")

    # Fetching
    USER_AGENT = os.getenv("USER_AGENT", "Pricewatch/0.1.0 (Price Research)")
    REQUEST_TIMEOUT = _env_int("REQUEST_TIMEOUT", 30)

    # Quality telemetry
    HTML_SAMPLE_LIMIT = _env_int("HTML_SAMPLE_LIMIT", 10000)
    CAPTURE_SCREENSHOTS = _env_bool("CAPTURE_SCREENSHOTS", False)
    SCREENSHOT_DIR = os.getenv("SCREENSHOT_DIR", "screenshots")

    @property
    def DATABASE_URL(self) -> str:
        """Constructs a SQLAlchemy connection string.

        An explicit DATABASE_URL environment variable wins; otherwise a MySQL
        URL is assembled from the DB_* settings.
        """
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE
        return f"mysql+pymysql://{self.DB_USER}:{self.DB_PASS}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()


# For direct access in other modules
settings = get_settings()
