from __future__ import annotations

import copy
import json
import logging
import re
import threading
from collections.abc import Iterable
from typing import Any

from casesearch.errors import DocumentRejected, SearchEngineUnavailable
from casesearch.runtime_profile import true_stack_required
from casesearch.settings import IndexingSettings

logger = logging.getLogger(__name__)


def _import_opensearch() -> Any:
    try:
        import opensearchpy  # type: ignore
        import opensearchpy.exceptions  # type: ignore  # noqa: F401
        import opensearchpy.helpers  # type: ignore  # noqa: F401
    except ImportError as exc:
        raise RuntimeError("opensearch-py is required for CSI_SEARCH_BACKEND=opensearch; install opensearch-py") from exc
    return opensearchpy


def _is_transient_status(status: Any) -> bool:
    return isinstance(status, int) and (status == 429 or status >= 500)


class OpenSearchIndexClient:
    """Thin adapter over ``opensearchpy.OpenSearch`` exposing the calls indexing needs.

    Transport failures, timeouts, 429 and 5xx become ``SearchEngineUnavailable``;
    a rejected document becomes ``DocumentRejected``; anything else propagates.
    """

    def __init__(
        self,
        *,
        url: str = "http://localhost:9200",
        username: str = "",
        password: str = "",
        verify_certs: bool = True,
        timeout_s: float = 10.0,
        client: Any = None,
    ) -> None:
        self._os = _import_opensearch()
        if client is None:
            http_auth = (username, password) if username else None
            client = self._os.OpenSearch(
                hosts=[url],
                http_auth=http_auth,
                use_ssl=url.startswith("https"),
                verify_certs=verify_certs,
                ssl_show_warn=False,
                timeout=timeout_s,
                max_retries=0,
                retry_on_timeout=False,
            )
        self.client = client

    def _call(self, op: str, fn: Any, **kwargs: Any) -> Any:
        exc_mod = self._os.exceptions
        try:
            return fn(**kwargs)
        except exc_mod.ConnectionError as exc:
            logger.warning("search_engine_unreachable op=%s error=%s", op, exc)
            raise SearchEngineUnavailable(f"{op}: {exc}") from exc
        except exc_mod.TransportError as exc:
            status = getattr(exc, "status_code", None)
            if _is_transient_status(status):
                logger.warning("search_engine_transient op=%s status=%s", op, status)
                raise SearchEngineUnavailable(f"{op}: {exc}", status_code=status) from exc
            raise

    def create_index(self, name: str, body: dict[str, Any]) -> bool:
        exc_mod = self._os.exceptions
        try:
            self._call("create_index", self.client.indices.create, index=name, body=body)
        except exc_mod.RequestError as exc:
            if "resource_already_exists_exception" in str(getattr(exc, "error", "")):
                return False
            raise
        return True

    def get_index_meta(self, name: str) -> dict[str, Any] | None:
        exc_mod = self._os.exceptions
        try:
            resp = self._call("get_mapping", self.client.indices.get_mapping, index=name)
        except exc_mod.NotFoundError:
            return None
        for concrete in resp.values():
            return dict((concrete.get("mappings") or {}).get("_meta") or {})
        return None

    def list_indices(self, pattern: str) -> list[str]:
        exc_mod = self._os.exceptions
        try:
            resp = self._call("get_indices", self.client.indices.get, index=pattern)
        except exc_mod.NotFoundError:
            return []
        return sorted(resp)

    def delete_index(self, name: str) -> bool:
        exc_mod = self._os.exceptions
        try:
            self._call("delete_index", self.client.indices.delete, index=name)
        except exc_mod.NotFoundError:
            return False
        return True

    def upsert(self, index: str, doc_id: str, document: dict[str, Any]) -> None:
        exc_mod = self._os.exceptions
        try:
            self._call("index", self.client.index, index=index, id=doc_id, body=document, refresh=False)
        except exc_mod.RequestError as exc:
            raise DocumentRejected(f"document {doc_id} rejected by {index}: {exc.error}") from exc

    def delete(self, index: str, doc_id: str) -> bool:
        exc_mod = self._os.exceptions
        try:
            self._call("delete", self.client.delete, index=index, id=doc_id, refresh=False)
        except exc_mod.NotFoundError:
            return False
        return True

    def bulk_upsert(self, index: str, documents: Iterable[tuple[str, dict[str, Any]]]) -> int:
        actions = [
            {"_op_type": "index", "_index": index, "_id": doc_id, "_source": document}
            for doc_id, document in documents
        ]
        if not actions:
            return 0
        success, errors = self._call(
            "bulk",
            self._os.helpers.bulk,
            client=self.client,
            actions=actions,
            raise_on_error=False,
            refresh=False,
        )
        failures = [next(iter(err.values()), {}) for err in errors or []]
        if any(_is_transient_status(item.get("status")) for item in failures):
            raise SearchEngineUnavailable(f"bulk: {len(failures)} items failed transiently", status_code=429)
        if failures:
            raise DocumentRejected(f"bulk: {len(failures)} documents rejected by {index}")
        return int(success)

    def get(self, index: str, doc_id: str) -> dict[str, Any] | None:
        exc_mod = self._os.exceptions
        try:
            resp = self._call("get", self.client.get, index=index, id=doc_id)
        except exc_mod.NotFoundError:
            return None
        if not resp.get("found", True):
            return None
        return resp.get("_source")

    def list_ids(self, index: str) -> list[str]:
        exc_mod = self._os.exceptions
        try:
            hits = self._call(
                "scan",
                lambda **kw: list(self._os.helpers.scan(**kw)),
                client=self.client,
                index=index,
                query={"query": {"match_all": {}}, "_source": False},
            )
        except exc_mod.NotFoundError:
            return []
        return sorted(str(hit["_id"]) for hit in hits)

    def search(self, index: str, body: dict[str, Any]) -> dict[str, Any]:
        return self._call("search", self.client.search, index=index, body=body)

    def refresh(self, index: str) -> None:
        self._call("refresh", self.client.indices.refresh, index=index)


class _MemoryIndex:
    def __init__(self, name: str, body: dict[str, Any]) -> None:
        self.name = name
        self.settings = copy.deepcopy(body.get("settings") or {})
        self.mappings = copy.deepcopy(body.get("mappings") or {})
        self.docs: dict[str, dict[str, Any]] = {}


def _canonical_copy(document: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(document, sort_keys=True))


def _check_strict(value: Any, mapping: dict[str, Any], path: str) -> None:
    properties = mapping.get("properties")
    if properties is None:
        return
    items = value if isinstance(value, list) else [value]
    for item in items:
        if item is None:
            continue
        if not isinstance(item, dict):
            raise DocumentRejected(f"field {path or '<root>'} expects an object")
        for key, sub in item.items():
            if key not in properties:
                raise DocumentRejected(f"strict_dynamic_mapping_exception: [{path + key}] not mapped")
            _check_strict(sub, properties[key], f"{path}{key}.")


def _field_values(obj: Any, path: str) -> list[Any]:
    current: list[Any] = [obj]
    for part in path.split("."):
        nxt: list[Any] = []
        for value in current:
            if isinstance(value, dict):
                if part in value:
                    nxt.append(value[part])
            elif isinstance(value, str) and part == "raw":
                nxt.append(value)
        current = []
        for value in nxt:
            if isinstance(value, list):
                current.extend(value)
            elif value is not None:
                current.append(value)
    return current


def _relative(field: str, base: str) -> str:
    if base and field.startswith(base + "."):
        return field[len(base) + 1 :]
    return field


_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def _tokens(text: Any) -> set[str]:
    return {t.lower() for t in _TOKEN_RE.findall(str(text))}


class InMemorySearchEngine:
    """Process-local engine evaluating the query DSL subset the pattern layer uses.

    Supports aliases, strict mappings, ``match_all``/``term``/``terms``/``ids``/
    ``exists``/``range``/``match``/``bool``/``nested`` queries, sorting, paging,
    and ``nested``/``reverse_nested``/``filter``/``terms``/``cardinality``
    aggregations with engine-compatible doc counts.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._indices: dict[str, _MemoryIndex] = {}
        self._aliases: dict[str, str] = {}

    def _resolve(self, name: str) -> _MemoryIndex | None:
        concrete = self._aliases.get(name, name)
        return self._indices.get(concrete)

    def _require(self, name: str) -> _MemoryIndex:
        idx = self._resolve(name)
        if idx is None:
            raise KeyError(f"no such index: {name}")
        return idx

    def create_index(self, name: str, body: dict[str, Any]) -> bool:
        with self._lock:
            if name in self._indices:
                return False
            self._indices[name] = _MemoryIndex(name, body)
            for alias in (body.get("aliases") or {}):
                self._aliases[alias] = name
            return True

    def get_index_meta(self, name: str) -> dict[str, Any] | None:
        with self._lock:
            idx = self._resolve(name)
            if idx is None:
                return None
            return dict(idx.mappings.get("_meta") or {})

    def list_indices(self, pattern: str) -> list[str]:
        regex = re.compile(re.escape(pattern).replace(r"\*", ".*"))
        with self._lock:
            return sorted(name for name in self._indices if regex.fullmatch(name))

    def delete_index(self, name: str) -> bool:
        with self._lock:
            concrete = self._aliases.get(name, name)
            if concrete not in self._indices:
                return False
            del self._indices[concrete]
            self._aliases = {a: n for a, n in self._aliases.items() if n != concrete}
            return True

    def upsert(self, index: str, doc_id: str, document: dict[str, Any]) -> None:
        with self._lock:
            idx = self._require(index)
            _check_strict(document, idx.mappings, "")
            idx.docs[doc_id] = _canonical_copy(document)

    def delete(self, index: str, doc_id: str) -> bool:
        with self._lock:
            idx = self._resolve(index)
            if idx is None or doc_id not in idx.docs:
                return False
            del idx.docs[doc_id]
            return True

    def bulk_upsert(self, index: str, documents: Iterable[tuple[str, dict[str, Any]]]) -> int:
        count = 0
        with self._lock:
            for doc_id, document in documents:
                self.upsert(index, doc_id, document)
                count += 1
        return count

    def get(self, index: str, doc_id: str) -> dict[str, Any] | None:
        with self._lock:
            idx = self._resolve(index)
            if idx is None:
                return None
            doc = idx.docs.get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def list_ids(self, index: str) -> list[str]:
        with self._lock:
            idx = self._resolve(index)
            return sorted(idx.docs) if idx is not None else []

    def refresh(self, index: str) -> None:
        return None

    def search(self, index: str, body: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            idx = self._require(index)
            docs = [(doc_id, copy.deepcopy(doc)) for doc_id, doc in sorted(idx.docs.items())]
            concrete = idx.name

        query = body.get("query") or {"match_all": {}}
        matched = [(doc_id, doc) for doc_id, doc in docs if self._matches(query, doc, "", doc_id)]
        matched = self._sort(matched, body.get("sort"))
        start = max(0, int(body.get("from", 0)))
        size = max(0, int(body.get("size", 10)))
        source_spec = body.get("_source", True)
        hits = [
            {
                "_index": concrete,
                "_id": doc_id,
                "_score": 1.0,
                "_source": self._project(doc, source_spec),
            }
            for doc_id, doc in matched[start : start + size]
        ]
        resp: dict[str, Any] = {
            "took": 0,
            "timed_out": False,
            "hits": {
                "total": {"value": len(matched), "relation": "eq"},
                "max_score": 1.0 if hits else None,
                "hits": hits,
            },
        }
        aggs = body.get("aggs") or body.get("aggregations")
        if aggs:
            roots = {doc_id: doc for doc_id, doc in matched}
            scope = [(doc_id, doc, "") for doc_id, doc in matched]
            resp["aggregations"] = self._aggregate(aggs, scope, roots)
        return resp

    @staticmethod
    def _project(doc: dict[str, Any], spec: Any) -> dict[str, Any] | None:
        if spec is False:
            return None
        if isinstance(spec, list):
            return {k: v for k, v in doc.items() if k in spec}
        return doc

    @staticmethod
    def _sort(
        matched: list[tuple[str, dict[str, Any]]],
        spec: Any,
    ) -> list[tuple[str, dict[str, Any]]]:
        if not spec:
            return matched
        clauses = spec if isinstance(spec, list) else [spec]
        ordered = list(matched)
        for clause in reversed(clauses):
            if isinstance(clause, str):
                field, order = clause, "asc"
            else:
                field, opts = next(iter(clause.items()))
                order = opts if isinstance(opts, str) else str(opts.get("order", "asc"))
            reverse = order == "desc"

            def key(item: tuple[str, dict[str, Any]], field: str = field) -> tuple[int, Any]:
                if field == "_id":
                    return (0, item[0])
                values = _field_values(item[1], field)
                if not values:
                    return (1, "")
                return (0, values[0])

            present = [x for x in ordered if key(x)[0] == 0]
            missing = [x for x in ordered if key(x)[0] == 1]
            present.sort(key=lambda x: key(x)[1], reverse=reverse)
            ordered = present + missing
        return ordered

    def _matches(self, query: dict[str, Any], obj: Any, base: str, doc_id: str | None) -> bool:
        if not query:
            return True
        kind, spec = next(iter(query.items()))
        if kind == "match_all":
            return True
        if kind == "match_none":
            return False
        if kind == "bool":
            return self._match_bool(spec, obj, base, doc_id)
        if kind == "nested":
            path = spec["path"]
            entries = _field_values(obj, _relative(path, base))
            return any(self._matches(spec.get("query") or {}, e, path, None) for e in entries)
        if kind == "ids":
            return doc_id is not None and doc_id in set(spec.get("values") or [])
        if kind == "exists":
            return bool(_field_values(obj, _relative(spec["field"], base)))
        field, cond = next(iter(spec.items()))
        values = _field_values(obj, _relative(field, base))
        if kind == "term":
            expected = cond.get("value") if isinstance(cond, dict) else cond
            return any(v == expected for v in values)
        if kind == "terms":
            wanted = list(cond)
            return any(v in wanted for v in values)
        if kind == "range":
            return any(self._in_range(v, cond) for v in values)
        if kind == "match":
            text = cond.get("query") if isinstance(cond, dict) else cond
            wanted_tokens = _tokens(text)
            return any(wanted_tokens & _tokens(v) for v in values)
        raise ValueError(f"unsupported query clause: {kind}")

    def _match_bool(self, spec: dict[str, Any], obj: Any, base: str, doc_id: str | None) -> bool:
        def clauses(key: str) -> list[dict[str, Any]]:
            raw = spec.get(key) or []
            return raw if isinstance(raw, list) else [raw]

        must = clauses("must") + clauses("filter")
        should = clauses("should")
        must_not = clauses("must_not")
        if not all(self._matches(q, obj, base, doc_id) for q in must):
            return False
        if any(self._matches(q, obj, base, doc_id) for q in must_not):
            return False
        if should:
            minimum = spec.get("minimum_should_match", 0 if must else 1)
            hits = sum(1 for q in should if self._matches(q, obj, base, doc_id))
            return hits >= int(minimum)
        return True

    @staticmethod
    def _in_range(value: Any, cond: dict[str, Any]) -> bool:
        try:
            if "gte" in cond and not value >= cond["gte"]:
                return False
            if "gt" in cond and not value > cond["gt"]:
                return False
            if "lte" in cond and not value <= cond["lte"]:
                return False
            if "lt" in cond and not value < cond["lt"]:
                return False
        except TypeError:
            return False
        return True

    def _aggregate(
        self,
        aggs: dict[str, Any],
        scope: list[tuple[str, Any, str]],
        roots: dict[str, dict[str, Any]],
    ) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name, spec in aggs.items():
            sub = spec.get("aggs") or spec.get("aggregations") or {}
            kinds = [k for k in spec if k not in ("aggs", "aggregations")]
            if len(kinds) != 1:
                raise ValueError(f"aggregation {name} must declare exactly one type")
            kind = kinds[0]
            params = spec[kind] or {}
            if kind == "nested":
                path = params["path"]
                inner = [
                    (rid, entry, path)
                    for rid, obj, base in scope
                    for entry in _field_values(obj, _relative(path, base))
                    if isinstance(entry, dict)
                ]
                out[name] = {"doc_count": len(inner), **self._aggregate(sub, inner, roots)}
            elif kind == "reverse_nested":
                seen: dict[str, tuple[str, Any, str]] = {}
                for rid, _obj, _base in scope:
                    seen.setdefault(rid, (rid, roots[rid], ""))
                inner = list(seen.values())
                out[name] = {"doc_count": len(inner), **self._aggregate(sub, inner, roots)}
            elif kind == "filter":
                inner = [
                    (rid, obj, base)
                    for rid, obj, base in scope
                    if self._matches(params, obj, base, rid if not base else None)
                ]
                out[name] = {"doc_count": len(inner), **self._aggregate(sub, inner, roots)}
            elif kind == "terms":
                out[name] = self._terms(params, sub, scope, roots)
            elif kind == "cardinality":
                distinct = {
                    json.dumps(v, sort_keys=True)
                    for _rid, obj, base in scope
                    for v in _field_values(obj, _relative(params["field"], base))
                }
                out[name] = {"value": len(distinct)}
            else:
                raise ValueError(f"unsupported aggregation: {kind}")
        return out

    def _terms(
        self,
        params: dict[str, Any],
        sub: dict[str, Any],
        scope: list[tuple[str, Any, str]],
        roots: dict[str, dict[str, Any]],
    ) -> dict[str, Any]:
        field = params["field"]
        size = int(params.get("size", 10))
        min_doc_count = int(params.get("min_doc_count", 1))
        groups: dict[Any, list[tuple[str, Any, str]]] = {}
        for rid, obj, base in scope:
            for value in dict.fromkeys(_field_values(obj, _relative(field, base))):
                groups.setdefault(value, []).append((rid, obj, base))
        ranked = sorted(groups.items(), key=lambda kv: (-len(kv[1]), str(kv[0])))
        eligible = [(key, members) for key, members in ranked if len(members) >= min_doc_count]
        kept = eligible[:size]
        buckets = [
            {"key": key, "doc_count": len(members), **self._aggregate(sub, members, roots)}
            for key, members in kept
        ]
        other = sum(len(members) for _key, members in eligible[size:])
        return {"doc_count_error_upper_bound": 0, "sum_other_doc_count": other, "buckets": buckets}


SearchEngine = OpenSearchIndexClient | InMemorySearchEngine


def create_search_engine(settings: IndexingSettings) -> SearchEngine:
    backend = settings.search_backend
    if backend == "memory":
        return InMemorySearchEngine()
    if backend == "opensearch":
        return OpenSearchIndexClient(
            url=settings.opensearch_url,
            username=settings.opensearch_user,
            password=settings.opensearch_password,
            verify_certs=settings.opensearch_verify_certs,
            timeout_s=settings.search_timeout_s,
        )
    raise RuntimeError(f"unsupported search backend: {backend}")


def create_search_engine_for_runtime(settings: IndexingSettings) -> SearchEngine:
    """Memory engine when ``CSI_SEARCH_BACKEND=memory`` unless the true stack is required."""
    if settings.search_backend == "memory" and true_stack_required():
        raise ValueError("CSI_SEARCH_BACKEND=memory is not allowed when CSI_REQUIRE_TRUESTACK is set")
    return create_search_engine(settings)
