from dataclasses import dataclass
from typing import Any, Dict, Optional

from couchbase.options import QueryOptions, RemoveOptions, ReplaceOptions
from couchbase.result import MutationResult

from .config import ClusterConnection


@dataclass
class Keyspace:
    connection: ClusterConnection
    bucket_name: str
    scope_name: str
    collection_name: str

    def __str__(self) -> str:
        return f"`{self.bucket_name}`.`{self.scope_name}`.`{self.collection_name}`"

    async def query(self, query: str, params: Optional[Dict[str, Any]] = None) -> list:
        cluster = await self.connection.get_cluster()
        query = query.replace("${keyspace}", str(self))
        options = QueryOptions(named_parameters=params or {})
        result = cluster.query(query, options)
        return [row async for row in result]

    async def get_scope(self):
        cluster = await self.connection.get_cluster()
        bucket = cluster.bucket(self.bucket_name)
        return bucket.scope(self.scope_name)

    async def get_collection(self):
        scope = await self.get_scope()
        return scope.collection(self.collection_name)

    async def insert(self, key: str, value: dict, **kwargs) -> MutationResult:
        collection = await self.get_collection()
        return await collection.insert(key, value, **kwargs)

    async def upsert(self, key: str, value: dict, **kwargs) -> MutationResult:
        """Insert or update a document (idempotent write)."""
        collection = await self.get_collection()
        return await collection.upsert(key, value, **kwargs)

    async def replace(self, key: str, value: dict, cas: Optional[int] = None) -> MutationResult:
        collection = await self.get_collection()
        if cas:
            return await collection.replace(key, value, ReplaceOptions(cas=cas))
        return await collection.replace(key, value)

    async def remove(self, key: str, cas: Optional[int] = None) -> int:
        collection = await self.get_collection()
        if cas:
            result = await collection.remove(key, RemoveOptions(cas=cas))
        else:
            result = await collection.remove(key)
        return result.cas


def get_keyspace(
    connection: ClusterConnection,
    collection_name: str,
    scope_name: Optional[str] = None,
    bucket_name: Optional[str] = None,
) -> Keyspace:
    """
    Create a Keyspace instance with optional scope and bucket parameters.

    Args:
        connection: Cluster connection the keyspace queries through
        collection_name: Name of the collection
        scope_name: Name of the scope (defaults to the configured scope)
        bucket_name: Name of the bucket (defaults to the configured bucket)

    Returns:
        Keyspace instance
    """
    return Keyspace(
        connection,
        bucket_name or connection.config.bucket,
        scope_name or connection.config.scope,
        collection_name,
    )
