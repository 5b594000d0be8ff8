import asyncio
import uuid
from datetime import datetime, timezone
from typing import Callable, ClassVar, Generic, List, Optional, Sequence, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .base import (
    CasMismatchError,
    Condition,
    DocumentNotFoundError,
    DocumentStore,
    IndexSpec,
    Sort,
)


class BaseEntityData(BaseModel):
    # Stored with snake_case keys, exposed over HTTP in camelCase (by_alias=True).
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by_user_id: Optional[str] = None


DataT = TypeVar("DataT", bound=BaseEntityData)
T = TypeVar("T", bound="BaseDocumentModel")


class BaseDocumentModel(BaseModel, Generic[DataT]):
    id: str
    data: DataT
    cas: Optional[int] = None

    _collection_name: ClassVar[str] = ""
    _indexes: ClassVar[List[IndexSpec]] = []

    @staticmethod
    def model_dump_with_excluded_attributes(data: DataT) -> dict:
        """
        Converts the model to a dictionary for database storage,
        ensuring fields marked with exclude=True are included.
        """
        doc = data.model_dump(mode="json")
        for field_name, field_info in type(data).model_fields.items():
            if field_info.exclude:
                value = getattr(data, field_name)
                if value is not None:
                    doc[field_name] = value
        return doc

    def public_dict(self) -> dict:
        """Wire representation: the document id plus camelCase data."""
        return {"id": self.id, **self.data.model_dump(mode="json", by_alias=True)}

    @classmethod
    def collection(cls) -> str:
        if not cls._collection_name:
            raise ValueError(f"_collection_name not set for {cls.__name__}")
        return cls._collection_name

    @classmethod
    def indexes(cls) -> List[IndexSpec]:
        return list(cls._indexes)

    @classmethod
    async def get(cls: type[T], store: DocumentStore, id: str) -> Optional[T]:
        found = await store.get(cls.collection(), id)
        if found is None:
            return None
        data, cas = found
        return cls(id=id, data=data, cas=cas)

    @classmethod
    async def create(
        cls: type[T],
        store: DocumentStore,
        data: DataT,
        key: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> T:
        if key is None:
            key = str(uuid.uuid4())

        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now

        if user_id:
            data.created_by_user_id = user_id

        doc = cls.model_dump_with_excluded_attributes(data)
        cas = await store.insert(cls.collection(), key, doc)
        return cls(id=key, data=data, cas=cas)

    @classmethod
    async def create_or_update(
        cls: type[T], store: DocumentStore, key: str, data: DataT
    ) -> T:
        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now
        doc = cls.model_dump_with_excluded_attributes(data)
        cas = await store.upsert(cls.collection(), key, doc)
        return cls(id=key, data=data, cas=cas)

    @classmethod
    async def update(cls: type[T], store: DocumentStore, item: T) -> T:
        item.data.updated_at = datetime.now(timezone.utc)
        doc = cls.model_dump_with_excluded_attributes(item.data)
        item.cas = await store.replace(cls.collection(), item.id, doc, cas=item.cas)
        return item

    @classmethod
    async def delete(cls: type[T], store: DocumentStore, id: str, cas: Optional[int] = None) -> bool:
        try:
            await store.remove(cls.collection(), id, cas=cas)
            return True
        except DocumentNotFoundError:
            return False

    @classmethod
    async def find(
        cls: type[T],
        store: DocumentStore,
        conditions: Sequence[Condition] = (),
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[T]:
        rows = await store.find(cls.collection(), conditions, sort=sort, limit=limit, offset=offset)
        return [cls(id=key, data=doc) for key, doc in rows]

    @classmethod
    async def count(cls, store: DocumentStore, conditions: Sequence[Condition] = ()) -> int:
        return await store.count(cls.collection(), conditions)

    @classmethod
    async def mutate(
        cls: type[T],
        store: DocumentStore,
        id: str,
        mutator: Callable[[T], bool],
        max_retries: int = 5,
    ) -> Optional[T]:
        """Read-modify-write a document with CAS-guarded retry.

        *mutator* receives the freshly read entity and mutates ``entity.data``
        in place. It returns False to skip the write (nothing to change) and
        raises to abort. On a CAS conflict the document is re-read and the
        mutator re-applied with exponential backoff (10 ms, 20 ms, 40 ms, ...).
        Returns None if the document does not exist.
        """
        backoff_ms = 10
        for attempt in range(max_retries + 1):
            item = await cls.get(store, id)
            if item is None:
                return None

            if not mutator(item):
                return item

            try:
                return await cls.update(store, item)
            except CasMismatchError:
                if attempt == max_retries:
                    raise
                await asyncio.sleep(backoff_ms / 1000)
                backoff_ms *= 2

        raise CasMismatchError(f"{cls.collection()}/{id}: max retries exceeded")
