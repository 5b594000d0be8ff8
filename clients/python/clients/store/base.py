from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple, Union


class StoreError(Exception):
    """Base exception for document stores."""
    pass


class DocumentNotFoundError(StoreError):
    """Raised when a keyed operation targets a missing document."""
    pass


class DocumentExistsError(StoreError):
    """Raised when inserting a key that is already present."""
    pass


class CasMismatchError(StoreError):
    """Raised when a conditional replace sees a newer document version."""
    pass


#### Query primitives ####

FilterOp = Literal["eq", "ne", "gt", "gte", "lt", "lte", "in"]


@dataclass(frozen=True)
class Filter:
    """Condition on a (dotted) document path, e.g. ``payment.status``."""
    path: str
    op: FilterOp
    value: Any


@dataclass(frozen=True)
class TextSearch:
    """Case-insensitive substring match over several paths (OR-ed)."""
    term: str
    paths: Tuple[str, ...]
    array_paths: Tuple[str, ...] = ()


Condition = Union[Filter, TextSearch]


@dataclass(frozen=True)
class Sort:
    path: str = "created_at"
    descending: bool = True


#### Aggregate expressions ####

@dataclass(frozen=True)
class Field:
    path: str


@dataclass(frozen=True)
class Product:
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Difference:
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Matches:
    """1 when ``path == value`` else 0; summed to count matching rows."""
    path: str
    value: Any


Expr = Union[Field, Product, Difference, Matches]


@dataclass(frozen=True)
class Aggregate:
    func: Literal["sum", "avg", "count"]
    expr: Optional[Expr] = None


@dataclass
class IndexSpec:
    name: str
    paths: List[str] = field(default_factory=list)
    array_path: Optional[str] = None


#### Interface ####

class DocumentStore(ABC):
    """Storage interface the domain operations are written against.

    Documents are plain JSON-compatible dicts grouped in named collections.
    Every read returns a ``cas`` version token; ``replace`` with a token only
    succeeds if the stored document still carries that version.
    """

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ensure_indexes(self, collection: str, indexes: Sequence[IndexSpec]) -> None:
        return None

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[Tuple[Dict[str, Any], int]]:
        """Return ``(document, cas)`` or None."""

    @abstractmethod
    async def insert(self, collection: str, key: str, doc: Dict[str, Any]) -> int:
        """Insert a new document, raising DocumentExistsError on duplicates."""

    @abstractmethod
    async def upsert(self, collection: str, key: str, doc: Dict[str, Any]) -> int:
        ...

    @abstractmethod
    async def replace(
        self, collection: str, key: str, doc: Dict[str, Any], cas: Optional[int] = None
    ) -> int:
        """Replace a document, raising CasMismatchError if ``cas`` is stale."""

    @abstractmethod
    async def remove(self, collection: str, key: str, cas: Optional[int] = None) -> None:
        """Delete a document, raising CasMismatchError if ``cas`` is stale."""

    @abstractmethod
    async def find(
        self,
        collection: str,
        conditions: Sequence[Condition] = (),
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Tuple[str, Dict[str, Any]]]:
        """Return ``(key, document)`` pairs matching all conditions."""

    @abstractmethod
    async def count(self, collection: str, conditions: Sequence[Condition] = ()) -> int:
        ...

    @abstractmethod
    async def aggregate(
        self,
        collection: str,
        conditions: Sequence[Condition],
        aggregates: Dict[str, Aggregate],
    ) -> Optional[Dict[str, Any]]:
        """Compute named aggregates over matching documents.

        Returns None when no document matches.
        """

    @abstractmethod
    async def distinct(
        self, collection: str, path: str, conditions: Sequence[Condition] = ()
    ) -> List[Any]:
        ...
