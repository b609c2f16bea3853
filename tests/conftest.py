"""
Pytest configuration and shared fixtures for catalog search tests.

Only the network is faked: the tests drive a real elasticsearch.Elasticsearch
client whose transport hands requests to FakeCluster, an in-memory cluster
that keeps indices, aliases and documents and evaluates the subset of the
query DSL the package emits. Client-side behaviour (error classes,
ignore_status, the bulk helpers) is the library's own.
"""

import copy
import json
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, unquote, urlsplit

import pytest
from elastic_transport import (
    ApiResponseMeta, ConnectionError as TransportConnectionError, ConnectionTimeout, HttpHeaders, NodeConfig,
    SerializerCollection, TransportApiResponse,
)
from elasticsearch import Elasticsearch

from catalog_search.mapper import DocumentMapper
from catalog_search.models import CanonicalProduct
from catalog_search.service import CatalogSearch

INDEX = "test-products"

Response = Tuple[int, Any]


def _fold(value: Any) -> str:
    s = unicodedata.normalize("NFKD", str(value).lower())
    return "".join(ch for ch in s if not unicodedata.combining(ch)).replace("đ", "d")


def _error(status: int, kind: str, reason: str = "") -> Response:
    return status, {
        "error": {"root_cause": [{"type": kind, "reason": reason}], "type": kind, "reason": reason},
        "status": status,
    }


def _empty_meta() -> Dict:
    return {"settings": {}, "mappings": {"properties": {}}}


class FakeCluster:
    """In-memory Elasticsearch node behind FakeTransport"""

    def __init__(self):
        self.docs: Dict[str, Dict[str, Dict]] = {}
        self.indices_meta: Dict[str, Dict] = {}
        self.aliases: Dict[str, set] = {}
        self.calls: List[tuple] = []
        # indices created implicitly by a write to an unknown name
        self.auto_created: List[str] = []
        self.unavailable = False
        self.timeout = False
        # ids the bulk endpoint rejects with a mapper_parsing_exception
        self.reject_ids = set()
        # operation -> (status, error type) answered instead of the real result
        self.faults: Dict[str, Tuple[int, str]] = {}
        self.closed = False

    # ===== inspection helpers =====
    def resolve(self, name: str) -> List[str]:
        if name in self.aliases:
            return sorted(self.aliases[name])
        if name in self.indices_meta:
            return [name]
        return []

    def doc(self, name: str, doc_id: str) -> Optional[Dict]:
        for index in self.resolve(name):
            if doc_id in self.docs.get(index, {}):
                return self.docs[index][doc_id]
        return None

    def ids(self, name: str) -> List[str]:
        return sorted(doc_id for index in self.resolve(name) for doc_id in self.docs.get(index, {}))

    def count(self, name: str) -> int:
        return len(self.ids(name))

    def meta(self, name: str) -> Dict:
        indices = self.resolve(name)
        assert len(indices) == 1, f"{name} resolves to {indices}"
        return self.indices_meta[indices[0]]

    def seed(self, name: str, docs: List[Dict]) -> None:
        """Write documents directly, creating a plain concrete index when the name is unknown"""
        index = sorted(self.aliases[name])[0] if name in self.aliases else name
        if index not in self.indices_meta:
            self.indices_meta[index] = _empty_meta()
        store = self.docs.setdefault(index, {})
        for d in docs:
            store[d["id"]] = copy.deepcopy(d)

    # ===== request routing =====
    def handle(self, method: str, target: str, body: Any) -> Response:
        split = urlsplit(target)
        params = {k: v[-1] for k, v in parse_qs(split.query).items()}
        parts = [unquote(p) for p in split.path.strip("/").split("/") if p]
        op, route = self._route(method, parts)

        self.calls.append((op, {"path": parts, "params": params, "body": body}))
        if self.timeout:
            raise ConnectionTimeout("Connection timed out")
        if self.unavailable:
            raise TransportConnectionError("Connection refused")
        if op in self.faults:
            return _error(*self.faults[op])
        return route(parts, params, body)

    def _route(self, method: str, parts: List[str]):
        if not parts:
            return "ping", lambda *a: (200, None)
        if parts[0] == "_bulk":
            return "bulk", self._bulk
        if parts[0] == "_aliases":
            return "indices.update_aliases", self._update_aliases
        if parts[0] == "_alias":
            if method == "HEAD":
                return "indices.exists_alias", self._exists_alias
            return "indices.get_alias", self._get_alias
        if len(parts) == 1:
            return {
                "HEAD": ("indices.exists", self._exists),
                "PUT": ("indices.create", self._create),
                "DELETE": ("indices.delete", self._delete_index),
            }[method]
        action = parts[1]
        if action == "_doc":
            return ("delete", self._delete_doc) if method == "DELETE" else ("index", self._index_doc)
        if action == "_bulk":
            return "bulk", self._bulk
        if action == "_search":
            return "search", self._search
        if action == "_refresh":
            return "indices.refresh", lambda *a: (200, {"_shards": {"failed": 0}})
        if action == "_mapping":
            return ("indices.put_mapping", self._put_mapping) if method == "PUT" else (
                "indices.get_mapping", self._get_mapping)
        if action == "_alias":
            return "indices.put_alias", self._put_alias
        raise NotImplementedError(f"{method} /{'/'.join(parts)}")

    def _write_index(self, name: str, require_alias: bool) -> Tuple[Optional[str], Optional[Response]]:
        if name in self.aliases:
            indices = self.aliases[name]
            if len(indices) != 1:
                return None, _error(400, "illegal_argument_exception", f"no write index is defined for alias [{name}]")
            return next(iter(indices)), None
        if require_alias:
            return None, _error(404, "index_not_found_exception", f"no such index [{name}] and [require_alias] request flag is [true]")
        if name not in self.indices_meta:
            self.indices_meta[name] = _empty_meta()
            self.auto_created.append(name)
        return name, None

    # ===== index APIs =====
    def _exists(self, parts, params, body) -> Response:
        return (200 if self.resolve(parts[0]) else 404), None

    def _create(self, parts, params, body) -> Response:
        name = parts[0]
        body = body or {}
        if name in self.indices_meta or name in self.aliases:
            return _error(400, "resource_already_exists_exception", f"index [{name}] already exists")
        for alias in body.get("aliases", {}):
            if alias in self.indices_meta:
                return _error(400, "invalid_alias_name_exception", f"an index exists with the same name as the alias [{alias}]")
        self.indices_meta[name] = {
            "settings": copy.deepcopy(body.get("settings") or {}),
            "mappings": copy.deepcopy(body.get("mappings") or {"properties": {}}),
        }
        self.docs.setdefault(name, {})
        for alias in body.get("aliases", {}):
            self.aliases.setdefault(alias, set()).add(name)
        return 200, {"acknowledged": True, "index": name}

    def _drop_index(self, name: str) -> None:
        del self.indices_meta[name]
        self.docs.pop(name, None)
        for alias in list(self.aliases):
            self.aliases[alias].discard(name)
            if not self.aliases[alias]:
                del self.aliases[alias]

    def _delete_index(self, parts, params, body) -> Response:
        if parts[0] not in self.indices_meta:
            return _error(404, "index_not_found_exception", f"no such index [{parts[0]}]")
        self._drop_index(parts[0])
        return 200, {"acknowledged": True}

    def _get_mapping(self, parts, params, body) -> Response:
        indices = self.resolve(parts[0])
        if not indices:
            return _error(404, "index_not_found_exception", f"no such index [{parts[0]}]")
        return 200, {i: {"mappings": copy.deepcopy(self.indices_meta[i]["mappings"])} for i in indices}

    def _put_mapping(self, parts, params, body) -> Response:
        indices = self.resolve(parts[0])
        if not indices:
            return _error(404, "index_not_found_exception", f"no such index [{parts[0]}]")
        new = body.get("properties", {})
        for index in indices:
            current = self.indices_meta[index]["mappings"].get("properties", {})
            for field, definition in new.items():
                if field in current and current[field].get("type") != definition.get("type"):
                    return _error(400, "illegal_argument_exception", f"mapper [{field}] cannot be changed")
        for index in indices:
            self.indices_meta[index]["mappings"].setdefault("properties", {}).update(copy.deepcopy(new))
        return 200, {"acknowledged": True}

    # ===== alias APIs =====
    def _exists_alias(self, parts, params, body) -> Response:
        return (200 if parts[1] in self.aliases else 404), None

    def _get_alias(self, parts, params, body) -> Response:
        name = parts[1]
        if name not in self.aliases:
            return 404, {"error": f"alias [{name}] missing", "status": 404}
        return 200, {i: {"aliases": {name: {}}} for i in sorted(self.aliases[name])}

    def _put_alias(self, parts, params, body) -> Response:
        index, name = parts[0], parts[2]
        if index not in self.indices_meta:
            return _error(404, "index_not_found_exception", f"no such index [{index}]")
        self.aliases.setdefault(name, set()).add(index)
        return 200, {"acknowledged": True}

    def _update_aliases(self, parts, params, body) -> Response:
        aliases = copy.deepcopy(self.aliases)
        indices = set(self.indices_meta)
        removed = []
        for action in body["actions"]:
            kind, spec = next(iter(action.items()))
            index = spec["index"]
            if index not in indices:
                return _error(404, "index_not_found_exception", f"no such index [{index}]")
            if kind == "add":
                if spec["alias"] in indices:
                    return _error(400, "invalid_alias_name_exception", f"an index exists with the same name as the alias [{spec['alias']}]")
                aliases.setdefault(spec["alias"], set()).add(index)
            elif kind == "remove":
                if index not in aliases.get(spec["alias"], set()):
                    return _error(404, "aliases_not_found_exception", f"aliases [{spec['alias']}] missing")
                aliases[spec["alias"]].discard(index)
            elif kind == "remove_index":
                indices.discard(index)
                removed.append(index)
        # all actions validated, apply atomically
        for index in removed:
            self._drop_index(index)
        self.aliases = {name: members for name, members in aliases.items() if members}
        return 200, {"acknowledged": True}

    # ===== document APIs =====
    def _index_doc(self, parts, params, body) -> Response:
        index, error = self._write_index(parts[0], params.get("require_alias") == "true")
        if error:
            return error
        store = self.docs.setdefault(index, {})
        doc_id = parts[2]
        result = "updated" if doc_id in store else "created"
        store[doc_id] = copy.deepcopy(body)
        return (200 if result == "updated" else 201), {"_index": index, "_id": doc_id, "result": result}

    def _delete_doc(self, parts, params, body) -> Response:
        indices = self.resolve(parts[0])
        if not indices:
            return _error(404, "index_not_found_exception", f"no such index [{parts[0]}]")
        store = self.docs.get(indices[0], {})
        doc_id = parts[2]
        if doc_id not in store:
            return 404, {"_index": indices[0], "_id": doc_id, "result": "not_found"}
        del store[doc_id]
        return 200, {"_index": indices[0], "_id": doc_id, "result": "deleted"}

    def _bulk(self, parts, params, body) -> Response:
        lines = [json.loads(line) for line in body]
        require_alias = params.get("require_alias") == "true"
        items = []
        i = 0
        while i < len(lines):
            op_type, meta = next(iter(lines[i].items()))
            source = lines[i + 1]
            i += 2
            name = meta.get("_index") or parts[0]
            doc_id = meta["_id"]
            if doc_id in self.reject_ids:
                error = _error(400, "mapper_parsing_exception", "failed to parse field [price]")[1]["error"]
                items.append({op_type: {"_index": name, "_id": doc_id, "status": 400, "error": error}})
                continue
            index, failure = self._write_index(name, require_alias)
            if failure:
                status, payload = failure
                items.append({op_type: {"_index": name, "_id": doc_id, "status": status, "error": payload["error"]}})
                continue
            store = self.docs.setdefault(index, {})
            status = 200 if doc_id in store else 201
            store[doc_id] = copy.deepcopy(source)
            items.append({op_type: {"_index": index, "_id": doc_id, "status": status}})
        errors = any("error" in next(iter(item.values())) for item in items)
        return 200, {"took": 1, "errors": errors, "items": items}

    # ===== search =====
    def _search(self, parts, params, body) -> Response:
        indices = self.resolve(parts[0])
        if not indices:
            return _error(404, "index_not_found_exception", f"no such index [{parts[0]}]")
        body = body or {}
        query = body.get("query")
        sort = body.get("sort")
        from_ = body.get("from", 0)
        size = body.get("size", 10)
        highlight = body.get("highlight")
        docs = [(doc_id, src) for index in indices for doc_id, src in self.docs.get(index, {}).items()]

        matched = []
        for doc_id, src in docs:
            score = self._score(query or {"match_all": {}}, src)
            if score is not None:
                matched.append((doc_id, src, score))

        if sort:
            for clause in reversed(sort):
                field, spec = next(iter(clause.items()))
                reverse = spec.get("order", "asc") == "desc"
                if field == "_score":
                    matched.sort(key=lambda m: m[2], reverse=reverse)
                else:
                    present = [m for m in matched if m[1].get(field) is not None]
                    missing = [m for m in matched if m[1].get(field) is None]
                    present.sort(key=lambda m: m[1][field], reverse=reverse)
                    matched = present + missing

        page = matched[from_:from_ + size]
        resp: Dict[str, Any] = {
            "hits": {
                "total": {"value": len(matched), "relation": "eq"},
                "hits": [
                    {"_id": doc_id, "_score": score, "_source": self._source(src, body.get("_source")),
                     **({"highlight": self._highlight(highlight, src, query)} if highlight else {})}
                    for doc_id, src, score in page
                ],
            }
        }
        if body.get("aggs"):
            resp["aggregations"] = self._aggs(body["aggs"], [m[1] for m in matched])
        if body.get("suggest"):
            resp["suggest"] = self._suggest(body["suggest"], docs, body.get("_source"))
        return 200, resp

    @staticmethod
    def _source(src: Dict, includes) -> Dict:
        if isinstance(includes, list):
            return {k: copy.deepcopy(v) for k, v in src.items() if k in includes}
        return copy.deepcopy(src)

    def _score(self, query: Dict, src: Dict) -> Optional[float]:
        kind, body = next(iter(query.items()))
        if kind == "match_all":
            return 1.0
        if kind == "bool":
            score = 0.0
            for clause in body.get("must", []):
                s = self._score(clause, src)
                if s is None:
                    return None
                score += s
            for clause in body.get("filter", []):
                if self._score(clause, src) is None:
                    return None
            return score
        if kind == "term":
            field, value = next(iter(body.items()))
            actual = src.get(field)
            ok = value in actual if isinstance(actual, list) else actual == value
            return 0.0 if ok else None
        if kind == "terms":
            field, values = next(iter(body.items()))
            actual = src.get(field)
            actual = actual if isinstance(actual, list) else [actual]
            return 0.0 if set(actual) & set(values) else None
        if kind == "range":
            field, bounds = next(iter(body.items()))
            actual = src.get(field)
            if actual is None:
                return None
            if "gte" in bounds and actual < bounds["gte"]:
                return None
            if "lte" in bounds and actual > bounds["lte"]:
                return None
            return 0.0
        if kind == "multi_match":
            terms = _fold(body["query"]).split()
            score = 0.0
            for spec in body["fields"]:
                name, _, boost = spec.partition("^")
                value = src.get(name)
                text = _fold(" ".join(value) if isinstance(value, list) else value or "")
                if any(t in text for t in terms):
                    score += float(boost or 1)
            return score or None
        raise NotImplementedError(kind)

    def _highlight(self, highlight, src, query):
        out = {}
        must = (query or {}).get("bool", {}).get("must", [])
        terms = []
        for clause in must:
            if "multi_match" in clause:
                terms = _fold(clause["multi_match"]["query"]).split()
        for name in highlight.get("fields", {}):
            value = src.get(name)
            if isinstance(value, str) and any(t in _fold(value) for t in terms):
                out[name] = [f"<em>{value}</em>"]
        return out

    def _aggs(self, aggs: Dict, sources: List[Dict]) -> Dict:
        out = {}
        for name, spec in aggs.items():
            if "terms" in spec:
                field = spec["terms"]["field"]
                groups: Dict[Any, List[Dict]] = {}
                for src in sources:
                    values = src.get(field)
                    for v in (values if isinstance(values, list) else [values]):
                        if v is not None:
                            groups.setdefault(v, []).append(src)
                ranked = sorted(groups.items(), key=lambda kv: (-len(kv[1]), str(kv[0])))
                buckets = []
                for key, members in ranked[:spec["terms"].get("size", 10)]:
                    bucket = {"key": key, "doc_count": len(members)}
                    bucket.update(self._aggs(spec.get("aggs", {}), members))
                    buckets.append(bucket)
                out[name] = {"buckets": buckets}
            elif "stats" in spec:
                vals = [s[spec["stats"]["field"]] for s in sources if s.get(spec["stats"]["field"]) is not None]
                out[name] = {
                    "count": len(vals),
                    "min": min(vals) if vals else None,
                    "max": max(vals) if vals else None,
                    "avg": sum(vals) / len(vals) if vals else None,
                    "sum": sum(vals),
                }
            else:
                kind, body = next(iter(spec.items()))
                vals = [s[body["field"]] for s in sources if s.get(body["field"]) is not None]
                fn = {"avg": lambda v: sum(v) / len(v), "min": min, "max": max}[kind]
                out[name] = {"value": fn(vals) if vals else None}
        return out

    def _suggest(self, suggest: Dict, docs: List[Tuple[str, Dict]], includes) -> Dict:
        out = {}
        for name, spec in suggest.items():
            prefix = _fold(spec["prefix"])
            size = spec["completion"].get("size", 5)
            options = [
                {"text": src["name"], "_id": doc_id, "_score": 1.0, "_source": self._source(src, includes)}
                for doc_id, src in sorted(docs, key=lambda d: d[1]["name"])
                if _fold(src.get("name", "")).startswith(prefix)
            ]
            out[name] = [{"text": spec["prefix"], "options": options[:size]}]
        return out


class FakeTransport:
    """Stands in for elastic_transport.Transport; the client above it is the real one"""

    def __init__(self, cluster: FakeCluster):
        self.cluster = cluster
        self.serializers = SerializerCollection()

    def perform_request(self, method, target, *, body=None, headers=None, **kwargs):
        status, payload = self.cluster.handle(method, target, body)
        meta = ApiResponseMeta(
            status=status,
            http_version="1.1",
            headers=HttpHeaders({"content-type": "application/json", "x-elastic-product": "Elasticsearch"}),
            duration=0.0,
            node=NodeConfig("http", "localhost", 9200),
        )
        return TransportApiResponse(meta, payload)

    def close(self):
        self.cluster.closed = True


# ===== FIXTURES =====
@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def es(cluster):
    return Elasticsearch(_transport=FakeTransport(cluster))


@pytest.fixture
def categories():
    return {"cat-phone": "Điện thoại", "cat-laptop": "Laptop"}


@pytest.fixture
def mapper(categories):
    return DocumentMapper(categories)


@pytest.fixture
def engine(es, categories):
    """Engine over an empty cluster; the products alias does not exist yet"""
    return CatalogSearch(es, index=INDEX, categories=categories)


@pytest.fixture
def live_engine(engine, cluster):
    """Engine after startup: the alias is in place and no calls are recorded yet"""
    engine.startup()
    cluster.calls.clear()
    return engine


def make_product(product_id: str, **overrides) -> CanonicalProduct:
    data = {
        "id": product_id,
        "name": f"Product {product_id}",
        "description": "A product",
        "price": 100.0,
        "category": "cat-phone",
        "tags": ["new"],
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return CanonicalProduct(**data)


@pytest.fixture
def product_factory():
    return make_product
