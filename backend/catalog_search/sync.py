"""
Applies catalog mutations to the search index.

Writes to the catalog store happen first and are the durable truth. The
calls here run afterwards; `handle` is best-effort: an index failure is
logged and the event is dropped, not retried and not queued. The index can
drift until the next full rebuild.

Live writes go to the products alias with require_alias, so they fail
instead of auto-creating an unmapped index when the alias is missing.
"""

from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from elasticsearch import ApiError, Elasticsearch, helpers
from pydantic import ValidationError as PydanticValidationError

from .config import BULK_CHUNK_SIZE, PRODUCTS_INDEX, refresh_param
from .elasticsearch_service import index_call, response_body
from .exceptions import CatalogSearchError, SyncError
from .mapper import DocumentMapper
from .models import (
    Ack, BulkFailure, BulkLoad, BulkReport, CanonicalProduct, ProductCreated,
    ProductDeleted, ProductUpdated, ProductViewed, SearchDocument,
)
from .utils import log_with_timestamp

ProductRecord = Union[CanonicalProduct, Dict[str, Any]]


def _error_reason(error: Any) -> str:
    if isinstance(error, dict):
        reason = error.get("reason") or ""
        kind = error.get("type") or "error"
        return f"{kind}: {reason}" if reason else kind
    return str(error)


def _api_error_reason(e: ApiError) -> str:
    body = getattr(e, "body", None)
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return _error_reason(body["error"])
    return str(e)


def _validation_reason(e: PydanticValidationError) -> str:
    return "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())


class SyncPipeline:
    def __init__(self, client: Elasticsearch, mapper: DocumentMapper,
                 index: str = PRODUCTS_INDEX, refresh: Optional[str] = None,
                 chunk_size: int = BULK_CHUNK_SIZE):
        self.client = client
        self.mapper = mapper
        self.index = index
        self.refresh = refresh_param(refresh)
        self.chunk_size = chunk_size

    # ===== SINGLE DOCUMENT =====
    def index_one(self, doc: SearchDocument) -> Ack:
        """Upsert one document keyed by its product id"""
        try:
            with index_call("index"):
                resp = response_body(self.client.index(
                    index=self.index, id=doc.id, document=doc.to_source(),
                    refresh=self.refresh, require_alias=True,
                ))
        except ApiError as e:
            raise SyncError(doc.id, _api_error_reason(e)) from e
        log_with_timestamp(f"Product {doc.id} indexed ({resp.get('result')})", "DEBUG")
        return Ack(id=doc.id, result=resp.get("result", "indexed"))

    def delete_one(self, doc_id: str) -> Ack:
        """Remove one document; an absent document is not an error"""
        try:
            with index_call("delete"):
                resp = response_body(self.client.options(ignore_status=404).delete(
                    index=self.index, id=doc_id, refresh=self.refresh
                ))
        except ApiError as e:
            raise SyncError(doc_id, _api_error_reason(e)) from e
        result = resp.get("result") or "not_found"
        log_with_timestamp(f"Product {doc_id} delete: {result}", "DEBUG")
        return Ack(id=doc_id, result=result)

    # ===== BULK =====
    def _stream(self, actions: Iterable[Dict], index: str) -> Tuple[List[str], List[BulkFailure]]:
        """Send actions through streaming_bulk and split the per-item results"""
        options = {"refresh": self.refresh}
        if index == self.index:
            options["require_alias"] = True

        succeeded, failed = [], []
        with index_call("bulk"):
            for ok, item in helpers.streaming_bulk(
                self.client, actions,
                chunk_size=self.chunk_size,
                raise_on_error=False,
                raise_on_exception=False,
                **options,
            ):
                result = next(iter(item.values()), {})
                doc_id = str(result.get("_id"))
                if ok:
                    succeeded.append(doc_id)
                else:
                    failed.append(BulkFailure(id=doc_id, reason=_error_reason(result.get("error"))))
        return succeeded, failed

    def _report(self, total: int, succeeded: List[str], failed: List[BulkFailure], index: str) -> BulkReport:
        report = BulkReport(total=total, succeeded=succeeded, failed=failed)
        if report.has_failures:
            log_with_timestamp(
                f"Bulk indexed {len(succeeded)}/{total} documents into '{index}', "
                f"failed: {', '.join(f.id for f in failed)}", "WARN"
            )
        else:
            log_with_timestamp(f"Bulk indexed {len(succeeded)} documents into '{index}'")
        return report

    def index_bulk(self, docs: List[SearchDocument], index: Optional[str] = None) -> BulkReport:
        """Per-document outcomes; a failing document does not abort the batch"""
        if not docs:
            return BulkReport()
        index = index or self.index
        actions = ({"_index": index, "_id": doc.id, "_source": doc.to_source()} for doc in docs)
        succeeded, failed = self._stream(actions, index)
        return self._report(len(docs), succeeded, failed, index)

    def load_products(self, records: Iterable[ProductRecord], index: Optional[str] = None,
                      mapper: Optional[DocumentMapper] = None) -> BulkReport:
        """Map and bulk index products; records that fail mapping are reported, not raised"""
        index = index or self.index
        mapper = mapper or self.mapper
        rejected: List[BulkFailure] = []
        seen = 0

        def actions() -> Iterator[Dict]:
            nonlocal seen
            for record in records:
                seen += 1
                try:
                    product = record if isinstance(record, CanonicalProduct) else CanonicalProduct.model_validate(record)
                except PydanticValidationError as e:
                    doc_id = str(record.get("id") or f"#{seen}") if isinstance(record, dict) else f"#{seen}"
                    rejected.append(BulkFailure(id=doc_id, reason=f"mapping: {_validation_reason(e)}"))
                    continue
                doc = mapper.to_search_document(product)
                yield {"_index": index, "_id": doc.id, "_source": doc.to_source()}

        succeeded, failed = self._stream(actions(), index)
        return self._report(seen, succeeded, rejected + failed, index)

    # ===== WRITE-PATH SIGNAL =====
    def apply(self, event) -> Union[Ack, BulkReport]:
        """Apply one sync event, raising on failure"""
        if isinstance(event, ProductCreated):
            return self.index_one(self.mapper.to_search_document(event.product))
        if isinstance(event, (ProductUpdated, ProductViewed)):
            product = event.product
            if product.id != event.id:
                product = product.model_copy(update={"id": event.id})
            return self.index_one(self.mapper.to_search_document(product))
        if isinstance(event, ProductDeleted):
            return self.delete_one(event.id)
        if isinstance(event, BulkLoad):
            return self.load_products(event.products)
        raise TypeError(f"Unsupported sync event: {type(event).__name__}")

    def handle(self, event) -> Optional[Union[Ack, BulkReport]]:
        """Best-effort: index errors are logged and the event is dropped"""
        try:
            return self.apply(event)
        except CatalogSearchError as e:
            log_with_timestamp(f"Dropped {event.type} sync event: {e}", "ERROR")
            return None
