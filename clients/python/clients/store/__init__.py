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
    IndexSpec,
    Matches,
    Product,
    Sort,
    StoreError,
    TextSearch,
)
from .base_model import BaseDocumentModel, BaseEntityData, DataT, T
from .memory import MemoryStore

__all__ = [
    "Aggregate",
    "BaseDocumentModel",
    "BaseEntityData",
    "CasMismatchError",
    "Condition",
    "DataT",
    "Difference",
    "DocumentExistsError",
    "DocumentNotFoundError",
    "DocumentStore",
    "Expr",
    "Field",
    "Filter",
    "IndexSpec",
    "Matches",
    "MemoryStore",
    "Product",
    "Sort",
    "StoreError",
    "T",
    "TextSearch",
]
