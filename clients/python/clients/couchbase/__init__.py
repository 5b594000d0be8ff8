from .config import (
    ClusterConnection,
    CouchbaseConfig,
    VALID_PROTOCOLS,
)
from .keyspace import (
    Keyspace,
    get_keyspace,
)
from .store import (
    CouchbaseStore,
    compile_conditions,
    compile_expr,
    path_expr,
)

__all__ = [
    "ClusterConnection",
    "CouchbaseConfig",
    "CouchbaseStore",
    "Keyspace",
    "VALID_PROTOCOLS",
    "compile_conditions",
    "compile_expr",
    "get_keyspace",
    "path_expr",
]
