import os
from dotenv import load_dotenv

load_dotenv()

ENV = os.getenv("ENV", "dev")
if ENV not in ("dev", "production"):
    raise ValueError(f"Invalid ENV value: '{ENV}'. Must be 'dev' or 'production'.")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


# ── Extraction backend ─────────────────────────────────────────────────────────
# Base URL of the service that hosts both the AI extraction endpoint and the
# web-content scraper. Both are consumed, never reimplemented here.
EXTRACTION_SERVICE_URL: str = os.getenv("EXTRACTION_SERVICE_URL", "http://localhost:5000").rstrip("/")
EXTRACT_ENDPOINT     = "/api/extract-url-product-data"
WEB_CONTENT_ENDPOINT = "/api/search/web-content"

# Model selector and fallback credential, used when a run does not carry its own.
DEFAULT_MODEL_PROVIDER: str = os.getenv("DEFAULT_MODEL_PROVIDER", "openai")
OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")

# ── Concurrency ────────────────────────────────────────────────────────────────
# Products processed simultaneously per run (chunk size of the batch loop).
DEFAULT_CONCURRENCY: int = int(os.getenv("DEFAULT_CONCURRENCY", "3"))

# Upper bound accepted from API callers.
MAX_CONCURRENCY: int = int(os.getenv("MAX_CONCURRENCY", "10"))
if DEFAULT_CONCURRENCY < 1 or MAX_CONCURRENCY < DEFAULT_CONCURRENCY:
    raise ValueError(
        f"Invalid concurrency settings: DEFAULT_CONCURRENCY={DEFAULT_CONCURRENCY}, "
        f"MAX_CONCURRENCY={MAX_CONCURRENCY}."
    )

# Max concurrent AI extraction calls in flight across every run in the process.
AI_CONCURRENCY: int = int(os.getenv("AI_CONCURRENCY", "10"))

# ── Timeouts ───────────────────────────────────────────────────────────────────
# AI calls read long: the backend fetches and reasons over the whole page.
AI_READ_TIMEOUT: float   = float(os.getenv("AI_READ_TIMEOUT", "120"))
WEB_FETCH_TIMEOUT: float = float(os.getenv("WEB_FETCH_TIMEOUT", "60"))

# ── AI ─────────────────────────────────────────────────────────────────────────
# Retry attempts on network error or 5xx/429 (0 = no retry).
AI_MAX_RETRIES: int = int(os.getenv("AI_MAX_RETRIES", "1"))

# ── Cancellation ───────────────────────────────────────────────────────────────
# When true, a stopped run is wiped shortly after the stop settles
# (items, records and results) instead of keeping completed results.
RESET_ON_STOP: bool = _env_bool("RESET_ON_STOP")
RESET_DELAY_SECONDS: float = float(os.getenv("RESET_DELAY_SECONDS", "0.1"))

# ── Uploads ────────────────────────────────────────────────────────────────────
MAX_FILE_SIZE_MB: int = int(os.getenv("MAX_FILE_SIZE_MB", "50"))

# Article numbers synthesised for rows without one. Never matched against PDFs.
SYNTHETIC_ARTICLE_PREFIX = "auto_"
