import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from elasticsearch import BadRequestError, Elasticsearch

from .config import PRODUCTS_INDEX
from .elasticsearch_service import index_call, response_body
from .exceptions import (
    IndexMissingError, IndexUnavailableError, MappingConflictError, RebuildInProgressError, SearchIndexError,
)
from .mapper import DocumentMapper
from .mapping import INDEX_MAPPINGS, INDEX_SETTINGS
from .models import BulkReport, IndexStatus
from .sync import ProductRecord, SyncPipeline
from .utils import log_with_timestamp


class IndexManager:
    """
    Owns the products index lifecycle: creation, additive mapping changes, full rebuild.

    `index` is an alias. Concrete indices behind it are named `<alias>-<suffix>`
    and are only ever created here, with the fixed mapping.
    """

    def __init__(self, client: Elasticsearch, pipeline: SyncPipeline, index: Optional[str] = None,
                 settings: Optional[Dict] = None, mappings: Optional[Dict] = None):
        self.client = client
        self.pipeline = pipeline
        self.index = index or pipeline.index or PRODUCTS_INDEX
        self.settings = settings or INDEX_SETTINGS
        self.mappings = mappings or INDEX_MAPPINGS
        self._rebuild_lock = threading.Lock()

    @property
    def initial_index(self) -> str:
        return f"{self.index}-000001"

    def _new_index_name(self) -> str:
        return f"{self.index}-{datetime.now(timezone.utc):%Y%m%d%H%M%S%f}"

    def exists(self) -> bool:
        """True when the alias is in place"""
        with index_call("indices.exists_alias"):
            return bool(self.client.indices.exists_alias(name=self.index))

    def backing_indices(self) -> List[str]:
        with index_call("indices.get_alias"):
            resp = response_body(self.client.options(ignore_status=404).indices.get_alias(name=self.index))
        # A 404 body carries "error"/"status" keys instead of index entries
        return sorted(name for name, entry in resp.items() if isinstance(entry, dict) and "aliases" in entry)

    def _occupied_by_concrete_index(self) -> bool:
        with index_call("indices.exists"):
            return bool(self.client.indices.exists(index=self.index))

    def _create(self, name: str, with_alias: bool = False) -> None:
        body = {"settings": self.settings, "mappings": self.mappings}
        if with_alias:
            body["aliases"] = {self.index: {}}
        with index_call("indices.create"):
            self.client.indices.create(index=name, **body)

    def ensure_index(self) -> IndexStatus:
        """Create the first concrete index behind the alias unless the alias already exists"""
        if self.exists():
            log_with_timestamp(f"Elasticsearch alias '{self.index}' already exists")
            return IndexStatus.ALREADY_EXISTS

        if self._occupied_by_concrete_index():
            log_with_timestamp(
                f"'{self.index}' is a concrete index, not an alias; live writes are refused until it is rebuilt",
                "WARN",
            )
            return IndexStatus.ALREADY_EXISTS

        try:
            self._create(self.initial_index, with_alias=True)
        except BadRequestError as e:
            if getattr(e, "error", "") != "resource_already_exists_exception":
                raise SearchIndexError(f"Failed to create index '{self.initial_index}': {e}") from e
            # Created concurrently; the alias is part of the same create request but re-attach it anyway
            with index_call("indices.put_alias"):
                self.client.indices.put_alias(index=self.initial_index, name=self.index)
            log_with_timestamp(f"Elasticsearch index '{self.initial_index}' created concurrently")
            return IndexStatus.ALREADY_EXISTS

        log_with_timestamp(f"Created Elasticsearch index {self.initial_index} behind alias '{self.index}'")
        return IndexStatus.CREATED

    def current_properties(self) -> Dict:
        with index_call("indices.get_mapping"):
            resp = response_body(self.client.indices.get_mapping(index=self.index))
        # Keyed by concrete index name
        properties = {}
        for body in resp.values():
            properties.update(body.get("mappings", {}).get("properties", {}))
        return properties

    def evolve_mapping(self, new_fields: Dict) -> IndexStatus:
        """Add fields to the live mapping; redefining an existing field needs rebuild_index"""
        if not self.exists():
            raise IndexMissingError(self.index)

        current = self.current_properties()
        # Keys ES fills in with defaults are ignored; only what the caller asks for must match
        conflicts = [name for name, definition in new_fields.items()
                     if name in current
                     and any(current[name].get(key) != value for key, value in definition.items())]
        if conflicts:
            raise MappingConflictError(conflicts, "field already mapped with a different definition")

        try:
            with index_call("indices.put_mapping"):
                self.client.indices.put_mapping(index=self.index, properties=new_fields)
        except BadRequestError as e:
            raise MappingConflictError(list(new_fields), str(e)) from e

        log_with_timestamp(f"Mapping of '{self.index}' updated with fields: {', '.join(new_fields)}")
        return IndexStatus.UPDATED

    def _swap_alias(self, target: str) -> List[str]:
        """Point the alias at target in one atomic request; returns the indices it left"""
        previous = self.backing_indices()
        actions = [{"remove": {"index": name, "alias": self.index}} for name in previous]
        if not previous and self._occupied_by_concrete_index():
            actions.append({"remove_index": {"index": self.index}})
            log_with_timestamp(f"Replacing concrete index '{self.index}' with an alias")
        actions.append({"add": {"index": target, "alias": self.index}})

        with index_call("indices.update_aliases"):
            self.client.indices.update_aliases(actions=actions)
        return previous

    def _drop(self, names: Iterable[str]) -> None:
        for name in names:
            try:
                with index_call("indices.delete"):
                    self.client.options(ignore_status=404).indices.delete(index=name)
            except IndexUnavailableError as e:
                log_with_timestamp(f"Could not delete index '{name}', remove it manually: {e}", "WARN")

    def rebuild_index(self, source: Iterable[ProductRecord], mapper: Optional[DocumentMapper] = None) -> BulkReport:
        """
        Load every catalog product into a fresh index, then move the alias onto it.

        Searches keep hitting the old index until the swap. Single-document writes
        made during the rebuild land on the old index and are lost with it. When
        `mapper` is given it builds the new documents and becomes the live write
        mapper once the alias has moved.
        """
        if not self._rebuild_lock.acquire(blocking=False):
            raise RebuildInProgressError(self.index)
        try:
            target = self._new_index_name()
            log_with_timestamp(f"Rebuilding '{self.index}' into {target}...")
            self._create(target)

            try:
                report = self.pipeline.load_products(source, index=target, mapper=mapper)
                with index_call("indices.refresh"):
                    self.client.indices.refresh(index=target)
                previous = self._swap_alias(target)
            except Exception:
                self._drop([target])
                raise

            self._drop(previous)
            if mapper is not None:
                self.pipeline.mapper = mapper

            log_with_timestamp(
                f"Rebuild of '{self.index}' finished: {report.count}/{report.total} documents, "
                f"{len(report.failed)} failures"
            )
            return report
        finally:
            self._rebuild_lock.release()
