import asyncio
import copy
import itertools
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .base import (
    Aggregate,
    CasMismatchError,
    Condition,
    Difference,
    DocumentExistsError,
    DocumentNotFoundError,
    DocumentStore,
    Expr,
    Field,
    Filter,
    Matches,
    Product,
    Sort,
    TextSearch,
)

_MISSING = object()


def resolve_path(doc: Dict[str, Any], path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _compare(value: Any, op: str, expected: Any) -> bool:
    if value is _MISSING:
        return op == "ne"
    if op == "eq":
        return value == expected
    if op == "ne":
        return value != expected
    if op == "in":
        return value in expected
    if value is None:
        return False
    if op == "gt":
        return value > expected
    if op == "gte":
        return value >= expected
    if op == "lt":
        return value < expected
    if op == "lte":
        return value <= expected
    raise ValueError(f"Unsupported filter op '{op}'")


def _text_matches(doc: Dict[str, Any], search: TextSearch) -> bool:
    term = search.term.lower()
    for path in search.paths:
        value = resolve_path(doc, path)
        if isinstance(value, str) and term in value.lower():
            return True
    for path in search.array_paths:
        values = resolve_path(doc, path)
        if isinstance(values, list) and any(
            isinstance(v, str) and term in v.lower() for v in values
        ):
            return True
    return False


def matches(doc: Dict[str, Any], conditions: Sequence[Condition]) -> bool:
    for condition in conditions:
        if isinstance(condition, TextSearch):
            if not _text_matches(doc, condition):
                return False
        elif not _compare(resolve_path(doc, condition.path), condition.op, condition.value):
            return False
    return True


def evaluate(doc: Dict[str, Any], expr: Expr) -> float:
    if isinstance(expr, Field):
        value = resolve_path(doc, expr.path)
        return 0 if value is _MISSING or value is None else value
    if isinstance(expr, Product):
        return evaluate(doc, expr.left) * evaluate(doc, expr.right)
    if isinstance(expr, Difference):
        return evaluate(doc, expr.left) - evaluate(doc, expr.right)
    if isinstance(expr, Matches):
        return 1 if resolve_path(doc, expr.path) == expr.value else 0
    raise ValueError(f"Unsupported expression {expr!r}")


class MemoryStore(DocumentStore):
    """Dict-backed store for tests and local development.

    Each instance owns its data; versions come from a per-instance counter so
    conditional replaces behave like the Couchbase CAS checks.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, Tuple[Dict[str, Any], int]]] = {}
        self._versions = itertools.count(1)
        self._lock = asyncio.Lock()

    def _collection(self, name: str) -> Dict[str, Tuple[Dict[str, Any], int]]:
        return self._collections.setdefault(name, {})

    async def get(self, collection: str, key: str) -> Optional[Tuple[Dict[str, Any], int]]:
        entry = self._collection(collection).get(key)
        if entry is None:
            return None
        doc, cas = entry
        return copy.deepcopy(doc), cas

    async def insert(self, collection: str, key: str, doc: Dict[str, Any]) -> int:
        async with self._lock:
            docs = self._collection(collection)
            if key in docs:
                raise DocumentExistsError(f"{collection}/{key} already exists")
            cas = next(self._versions)
            docs[key] = (copy.deepcopy(doc), cas)
            return cas

    async def upsert(self, collection: str, key: str, doc: Dict[str, Any]) -> int:
        async with self._lock:
            cas = next(self._versions)
            self._collection(collection)[key] = (copy.deepcopy(doc), cas)
            return cas

    async def replace(
        self, collection: str, key: str, doc: Dict[str, Any], cas: Optional[int] = None
    ) -> int:
        async with self._lock:
            docs = self._collection(collection)
            if key not in docs:
                raise DocumentNotFoundError(f"{collection}/{key} not found")
            if cas is not None and docs[key][1] != cas:
                raise CasMismatchError(f"{collection}/{key} was modified concurrently")
            new_cas = next(self._versions)
            docs[key] = (copy.deepcopy(doc), new_cas)
            return new_cas

    async def remove(self, collection: str, key: str, cas: Optional[int] = None) -> None:
        async with self._lock:
            docs = self._collection(collection)
            if key not in docs:
                raise DocumentNotFoundError(f"{collection}/{key} not found")
            if cas is not None and docs[key][1] != cas:
                raise CasMismatchError(f"{collection}/{key} was modified concurrently")
            del docs[key]

    def _matching(self, collection: str, conditions: Sequence[Condition]) -> List[Tuple[str, Dict[str, Any]]]:
        return [
            (key, doc)
            for key, (doc, _cas) in self._collection(collection).items()
            if matches(doc, conditions)
        ]

    async def find(
        self,
        collection: str,
        conditions: Sequence[Condition] = (),
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Tuple[str, Dict[str, Any]]]:
        rows = self._matching(collection, conditions)
        if sort is not None:
            # Missing values sort last in both directions, as in N1QL DESC.
            present = [r for r in rows if resolve_path(r[1], sort.path) not in (_MISSING, None)]
            absent = [r for r in rows if resolve_path(r[1], sort.path) in (_MISSING, None)]
            present.sort(key=lambda r: resolve_path(r[1], sort.path), reverse=sort.descending)
            rows = present + absent
        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return [(key, copy.deepcopy(doc)) for key, doc in rows]

    async def count(self, collection: str, conditions: Sequence[Condition] = ()) -> int:
        return len(self._matching(collection, conditions))

    async def aggregate(
        self,
        collection: str,
        conditions: Sequence[Condition],
        aggregates: Dict[str, Aggregate],
    ) -> Optional[Dict[str, Any]]:
        docs = [doc for _key, doc in self._matching(collection, conditions)]
        if not docs:
            return None
        result: Dict[str, Any] = {}
        for name, agg in aggregates.items():
            if agg.func == "count":
                result[name] = len(docs)
                continue
            values = [evaluate(doc, agg.expr) for doc in docs]
            total = sum(values)
            result[name] = total if agg.func == "sum" else total / len(values)
        return result

    async def distinct(
        self, collection: str, path: str, conditions: Sequence[Condition] = ()
    ) -> List[Any]:
        seen: List[Any] = []
        for _key, doc in self._matching(collection, conditions):
            value = resolve_path(doc, path)
            if value is _MISSING or value is None or value in seen:
                continue
            seen.append(value)
        return seen
