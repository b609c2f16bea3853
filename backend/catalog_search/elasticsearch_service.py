from contextlib import contextmanager
from typing import Dict

from elasticsearch import ApiError, ConnectionError, ConnectionTimeout, Elasticsearch, TransportError

from .exceptions import IndexUnavailableError
from .utils import log_with_timestamp

# Connection failures and timeouts; never retried here
TRANSPORT_ERRORS = (ConnectionError, ConnectionTimeout, TransportError)


@contextmanager
def index_call(operation: str):
    """Turn connection errors, timeouts and cluster-side 5xx/429 into IndexUnavailableError"""
    try:
        yield
    except TRANSPORT_ERRORS as e:
        log_with_timestamp(f"Elasticsearch {operation} failed: {e}", "ERROR")
        raise IndexUnavailableError(operation, str(e)) from e
    except ApiError as e:
        status = getattr(e, "status_code", None)
        missing_index = getattr(e, "error", None) == "index_not_found_exception"
        if missing_index or (status is not None and (status >= 500 or status == 429)):
            log_with_timestamp(f"Elasticsearch {operation} failed with HTTP {status}: {e}", "ERROR")
            raise IndexUnavailableError(operation, str(e)) from e
        raise


def ping(client: Elasticsearch) -> bool:
    """Check Elasticsearch reachability"""
    try:
        return bool(client.ping())
    except TRANSPORT_ERRORS as e:
        log_with_timestamp(f"Elasticsearch ping failed: {e}", "WARN")
        return False


def hits_total(response: Dict) -> int:
    total = response["hits"]["total"]
    if isinstance(total, dict):
        return int(total.get("value", 0))
    return int(total)


def response_body(response) -> Dict:
    """Plain dict out of an ObjectApiResponse (or an already plain dict)"""
    return getattr(response, "body", response)
