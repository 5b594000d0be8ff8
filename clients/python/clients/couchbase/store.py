import functools
from typing import Any, Dict, List, Optional, Sequence, Tuple

from couchbase.exceptions import (
    CASMismatchException,
    CollectionAlreadyExistsException,
    CouchbaseException,
    DocumentExistsException,
    DocumentNotFoundException,
)
from couchbase.management.collections import CollectionSpec

from clients.store import (
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
    IndexSpec,
    Matches,
    Product,
    Sort,
    StoreError,
    TextSearch,
)

from .config import ClusterConnection, CouchbaseConfig
from .keyspace import Keyspace, get_keyspace

_OPERATORS = {"eq": "=", "ne": "!=", "gt": ">", "gte": ">=", "lt": "<", "lte": "<=", "in": "IN"}

DOC_ALIAS = "d"


def store_errors(fn):
    """Re-raise driver failures such as timeouts as StoreError."""

    @functools.wraps(fn)
    async def wrapper(self, collection: str, *args, **kwargs):
        try:
            return await fn(self, collection, *args, **kwargs)
        except CouchbaseException as e:
            raise StoreError(f"{collection}: {e}") from e

    return wrapper


def path_expr(path: str) -> str:
    """Render ``payment.status`` as ``d.`payment`.`status```."""
    parts = path.split(".")
    if not path or any(not p or "`" in p for p in parts):
        raise ValueError(f"Invalid document path '{path}'")
    return DOC_ALIAS + "".join(f".`{p}`" for p in parts)


class _Params:
    def __init__(self):
        self.values: Dict[str, Any] = {}

    def add(self, value: Any) -> str:
        name = f"p{len(self.values)}"
        self.values[name] = value
        return f"${name}"


def compile_conditions(conditions: Sequence[Condition], params: _Params) -> str:
    clauses: List[str] = []
    for condition in conditions:
        if isinstance(condition, TextSearch):
            placeholder = params.add(condition.term.lower())
            parts = [
                f"CONTAINS(LOWER(IFMISSINGORNULL({path_expr(p)}, \"\")), {placeholder})"
                for p in condition.paths
            ]
            parts += [
                f"ANY v IN IFMISSINGORNULL({path_expr(p)}, []) "
                f"SATISFIES CONTAINS(LOWER(v), {placeholder}) END"
                for p in condition.array_paths
            ]
            clauses.append("(" + " OR ".join(parts) + ")")
        elif isinstance(condition, Filter):
            op = _OPERATORS[condition.op]
            clauses.append(f"{path_expr(condition.path)} {op} {params.add(condition.value)}")
        else:
            raise ValueError(f"Unsupported condition {condition!r}")
    return " AND ".join(clauses) if clauses else "TRUE"


def compile_expr(expr: Expr, params: _Params) -> str:
    if isinstance(expr, Field):
        return f"IFMISSINGORNULL({path_expr(expr.path)}, 0)"
    if isinstance(expr, Product):
        return f"({compile_expr(expr.left, params)} * {compile_expr(expr.right, params)})"
    if isinstance(expr, Difference):
        return f"({compile_expr(expr.left, params)} - {compile_expr(expr.right, params)})"
    if isinstance(expr, Matches):
        return f"(CASE WHEN {path_expr(expr.path)} = {params.add(expr.value)} THEN 1 ELSE 0 END)"
    raise ValueError(f"Unsupported expression {expr!r}")


class CouchbaseStore(DocumentStore):
    """DocumentStore backed by Couchbase collections and N1QL queries."""

    def __init__(self, config: CouchbaseConfig):
        self.connection = ClusterConnection(config)

    def keyspace(self, collection: str) -> Keyspace:
        return get_keyspace(self.connection, collection)

    async def connect(self) -> None:
        await self.connection.check_connection()

    async def close(self) -> None:
        await self.connection.close()

    async def ensure_collection(self, collection: str) -> None:
        config = self.connection.config
        if config.scope == "_default" and collection == "_default":
            return
        cluster = await self.connection.get_cluster()
        manager = cluster.bucket(config.bucket).collections()
        try:
            await manager.create_collection(CollectionSpec(collection, scope_name=config.scope))
        except CollectionAlreadyExistsException:
            return

    async def ensure_indexes(self, collection: str, indexes: Sequence[IndexSpec]) -> None:
        await self.ensure_collection(collection)
        keyspace = self.keyspace(collection)
        await keyspace.query(f"CREATE PRIMARY INDEX IF NOT EXISTS ON {keyspace}")
        for index in indexes:
            keys = [f"`{p.replace('.', '`.`')}`" for p in index.paths]
            if index.array_path:
                keys.append(f"DISTINCT ARRAY LOWER(t) FOR t IN `{index.array_path}` END")
            await keyspace.query(
                f"CREATE INDEX IF NOT EXISTS `{index.name}` ON {keyspace}({', '.join(keys)})"
            )

    @store_errors
    async def get(self, collection: str, key: str) -> Optional[Tuple[Dict[str, Any], int]]:
        try:
            coll = await self.keyspace(collection).get_collection()
            result = await coll.get(key)
        except DocumentNotFoundException:
            return None
        return result.content_as[dict], result.cas

    @store_errors
    async def insert(self, collection: str, key: str, doc: Dict[str, Any]) -> int:
        try:
            result = await self.keyspace(collection).insert(key, doc)
        except DocumentExistsException as e:
            raise DocumentExistsError(f"{collection}/{key} already exists") from e
        return result.cas

    @store_errors
    async def upsert(self, collection: str, key: str, doc: Dict[str, Any]) -> int:
        result = await self.keyspace(collection).upsert(key, doc)
        return result.cas

    @store_errors
    async def replace(
        self, collection: str, key: str, doc: Dict[str, Any], cas: Optional[int] = None
    ) -> int:
        try:
            result = await self.keyspace(collection).replace(key, doc, cas=cas)
        except CASMismatchException as e:
            raise CasMismatchError(f"{collection}/{key} was modified concurrently") from e
        except DocumentNotFoundException as e:
            raise DocumentNotFoundError(f"{collection}/{key} not found") from e
        return result.cas

    @store_errors
    async def remove(self, collection: str, key: str, cas: Optional[int] = None) -> None:
        try:
            await self.keyspace(collection).remove(key, cas=cas)
        except CASMismatchException as e:
            raise CasMismatchError(f"{collection}/{key} was modified concurrently") from e
        except DocumentNotFoundException as e:
            raise DocumentNotFoundError(f"{collection}/{key} not found") from e

    @store_errors
    async def find(
        self,
        collection: str,
        conditions: Sequence[Condition] = (),
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Tuple[str, Dict[str, Any]]]:
        keyspace = self.keyspace(collection)
        params = _Params()
        where = compile_conditions(conditions, params)
        query = f"SELECT META({DOC_ALIAS}).id AS id, {DOC_ALIAS} AS doc FROM {keyspace} AS {DOC_ALIAS} WHERE {where}"
        if sort is not None:
            query += f" ORDER BY {path_expr(sort.path)} {'DESC' if sort.descending else 'ASC'}"
        if limit is not None:
            query += f" LIMIT {int(limit)}"
        if offset:
            query += f" OFFSET {int(offset)}"
        rows = await keyspace.query(query, params.values)
        return [(row["id"], row["doc"]) for row in rows if row.get("doc")]

    @store_errors
    async def count(self, collection: str, conditions: Sequence[Condition] = ()) -> int:
        keyspace = self.keyspace(collection)
        params = _Params()
        where = compile_conditions(conditions, params)
        rows = await keyspace.query(
            f"SELECT RAW COUNT(*) FROM {keyspace} AS {DOC_ALIAS} WHERE {where}", params.values
        )
        return int(rows[0]) if rows else 0

    @store_errors
    async def aggregate(
        self,
        collection: str,
        conditions: Sequence[Condition],
        aggregates: Dict[str, Aggregate],
    ) -> Optional[Dict[str, Any]]:
        keyspace = self.keyspace(collection)
        params = _Params()
        selects = ["COUNT(*) AS `__rows`"]
        for name, agg in aggregates.items():
            if agg.func == "count":
                selects.append(f"COUNT(*) AS `{name}`")
            else:
                selects.append(f"{agg.func.upper()}({compile_expr(agg.expr, params)}) AS `{name}`")
        where = compile_conditions(conditions, params)
        rows = await keyspace.query(
            f"SELECT {', '.join(selects)} FROM {keyspace} AS {DOC_ALIAS} WHERE {where}",
            params.values,
        )
        if not rows or not rows[0].get("__rows"):
            return None
        row = dict(rows[0])
        row.pop("__rows", None)
        return row

    @store_errors
    async def distinct(
        self, collection: str, path: str, conditions: Sequence[Condition] = ()
    ) -> List[Any]:
        keyspace = self.keyspace(collection)
        params = _Params()
        where = compile_conditions(conditions, params)
        field = path_expr(path)
        return await keyspace.query(
            f"SELECT DISTINCT RAW {field} FROM {keyspace} AS {DOC_ALIAS} "
            f"WHERE {field} IS NOT NULL AND {where}",
            params.values,
        )
