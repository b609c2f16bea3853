import os
import logging

from elasticsearch import Elasticsearch

# Logging setup
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

# ===== ELASTICSEARCH SETUP =====
ELASTICSEARCH_URL = os.environ.get("ELASTICSEARCH_URL", "http://localhost:9200")
PRODUCTS_INDEX = os.environ.get("PRODUCTS_INDEX", "products")
# Every index call is a blocking network call bounded by this timeout; no automatic retries
ES_REQUEST_TIMEOUT = float(os.environ.get("ES_REQUEST_TIMEOUT", "5"))

# ===== SYNC =====
BULK_CHUNK_SIZE = int(os.environ.get("BULK_CHUNK_SIZE", "500"))
# "false", "true" or "wait_for"
SYNC_REFRESH = os.environ.get("SYNC_REFRESH", "false").lower()

# ===== QUERY =====
DEFAULT_PAGE_SIZE = int(os.environ.get("DEFAULT_PAGE_SIZE", "12"))
MAX_PAGE_SIZE = int(os.environ.get("MAX_PAGE_SIZE", "100"))
MAX_RESULT_WINDOW = int(os.environ.get("MAX_RESULT_WINDOW", "10000"))
SUGGEST_LIMIT_DEFAULT = 10
CATEGORY_STATS_SIZE = 100

# Seed for the client-side price slider when the index cannot answer
DEFAULT_PRICE_RANGE = {"min": 0, "max": 1000000, "avg": 100000}

# ===== CATALOG EXPORT =====
CATALOG_EXPORT_PATH = os.environ.get("CATALOG_EXPORT_PATH", "data/products.parquet")
CATEGORY_EXPORT_PATH = os.environ.get("CATEGORY_EXPORT_PATH", "data/categories.parquet")


def refresh_param(value: str = None):
    """Translate the SYNC_REFRESH setting into the client's refresh argument"""
    value = (value or SYNC_REFRESH).lower()
    if value == "wait_for":
        return "wait_for"
    return value in ("true", "1", "yes")


def create_client(url: str = ELASTICSEARCH_URL, timeout: float = ES_REQUEST_TIMEOUT) -> Elasticsearch:
    """Build the Elasticsearch client; the caller owns it and must close() it"""
    logger.info(f"Connecting to Elasticsearch at {url} (timeout={timeout}s)")
    return Elasticsearch(
        url,
        request_timeout=timeout,
        max_retries=0,
        retry_on_timeout=False,
    )
