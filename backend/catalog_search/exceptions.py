"""
Error taxonomy for the catalog search core.

Query-path errors are surfaced to callers; write-path index errors are
logged and dropped by the sync pipeline.
"""

from typing import Any, Dict, List, Optional


class CatalogSearchError(Exception):
    code = "CATALOG_SEARCH_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """JSON body for the HTTP error handlers"""
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(CatalogSearchError):
    """Malformed search request: bad page/size, unknown sort key, inverted range."""

    code = "VALIDATION_ERROR"

    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Validation failed for {field}: {reason}",
            {"field": field, "value": value, "reason": reason},
        )
        self.field = field


class IndexUnavailableError(CatalogSearchError):
    """The search index could not be reached, timed out, or is missing."""

    code = "INDEX_UNAVAILABLE"

    def __init__(self, operation: str, reason: str = ""):
        super().__init__("search temporarily unavailable", {"operation": operation, "reason": reason})
        self.operation = operation


class SearchIndexError(CatalogSearchError):
    code = "INDEX_ERROR"


class MappingConflictError(SearchIndexError):
    """A requested mapping change is structural, not additive. Rebuild the index instead."""

    code = "MAPPING_CONFLICT"

    def __init__(self, fields: List[str], reason: str = ""):
        self.fields = sorted(fields)
        super().__init__(
            f"Non-additive mapping change for fields {', '.join(self.fields)}; rebuild the index",
            {"fields": self.fields, "reason": reason},
        )


class IndexMissingError(SearchIndexError):
    code = "INDEX_MISSING"

    def __init__(self, index: str):
        super().__init__(f"Index '{index}' does not exist", {"index": index})


class RebuildInProgressError(SearchIndexError):
    code = "REBUILD_IN_PROGRESS"

    def __init__(self, index: str):
        super().__init__(f"Rebuild of index '{index}' already in progress", {"index": index})


class ExportNotFoundError(CatalogSearchError):
    """The catalog export file a rebuild reads from does not exist."""

    code = "EXPORT_NOT_FOUND"

    def __init__(self, path: str):
        super().__init__(f"Catalog export not found: {path}", {"path": path})
        self.path = path


class SyncError(CatalogSearchError):
    """The index rejected a single-document write."""

    code = "SYNC_ERROR"

    def __init__(self, doc_id: str, reason: str):
        super().__init__(f"Sync of document {doc_id} failed: {reason}", {"id": doc_id, "reason": reason})
        self.doc_id = doc_id
