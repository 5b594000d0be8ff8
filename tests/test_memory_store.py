import pytest

from clients.store import (
    Aggregate,
    CasMismatchError,
    DocumentExistsError,
    DocumentNotFoundError,
    Field,
    Filter,
    Matches,
    MemoryStore,
    Product,
    Sort,
    TextSearch,
)
from models.entities.documents.credits import CarbonCredit

from conftest import make_credit


class FlakyStore(MemoryStore):
    """Fails the first ``failures`` conditional replaces with a CAS mismatch."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.replace_calls = 0

    async def replace(self, collection, key, doc, cas=None):
        self.replace_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise CasMismatchError(f"{collection}/{key}")
        return await super().replace(collection, key, doc, cas=cas)


@pytest.mark.asyncio
async def test_insert_twice_conflicts(store):
    await store.insert("things", "a", {"n": 1})
    with pytest.raises(DocumentExistsError):
        await store.insert("things", "a", {"n": 2})


@pytest.mark.asyncio
async def test_replace_is_conditional_on_version(store):
    cas = await store.insert("things", "a", {"n": 1})
    new_cas = await store.replace("things", "a", {"n": 2}, cas=cas)
    assert new_cas != cas
    with pytest.raises(CasMismatchError):
        await store.replace("things", "a", {"n": 3}, cas=cas)
    doc, _ = await store.get("things", "a")
    assert doc == {"n": 2}


@pytest.mark.asyncio
async def test_remove_missing_raises(store):
    with pytest.raises(DocumentNotFoundError):
        await store.remove("things", "nope")


@pytest.mark.asyncio
async def test_remove_is_conditional_on_version(store):
    cas = await store.insert("things", "a", {"n": 1})
    await store.replace("things", "a", {"n": 2}, cas=cas)
    with pytest.raises(CasMismatchError):
        await store.remove("things", "a", cas=cas)
    assert await store.get("things", "a") is not None

    _, current = await store.get("things", "a")
    await store.remove("things", "a", cas=current)
    assert await store.get("things", "a") is None


@pytest.mark.asyncio
async def test_returned_documents_are_copies(store):
    await store.insert("things", "a", {"nested": {"n": 1}})
    doc, _ = await store.get("things", "a")
    doc["nested"]["n"] = 99
    again, _ = await store.get("things", "a")
    assert again["nested"]["n"] == 1


@pytest.mark.asyncio
async def test_find_filters_sorts_and_pages(store):
    for i in range(5):
        await store.insert("things", f"k{i}", {"n": i, "kind": "even" if i % 2 == 0 else "odd"})

    rows = await store.find("things", [Filter("kind", "eq", "even")], sort=Sort("n", descending=True))
    assert [doc["n"] for _key, doc in rows] == [4, 2, 0]

    rows = await store.find("things", [], sort=Sort("n", descending=False), limit=2, offset=1)
    assert [doc["n"] for _key, doc in rows] == [1, 2]

    assert await store.count("things", [Filter("n", "gte", 3)]) == 2
    assert await store.count("things", [Filter("n", "in", [0, 4])]) == 2


@pytest.mark.asyncio
async def test_text_search_covers_nested_paths_and_tags(store, seller):
    await make_credit(store, seller.id, title="Solar Rooftops", tags=["community"])
    await make_credit(store, seller.id, title="Wind", project_details={"project_name": "Coastal Breeze"})

    by_tag = await store.count(CarbonCredit.collection(), [TextSearch("COMMUNITY", ("title",), ("tags",))])
    by_project = await store.count(
        CarbonCredit.collection(), [TextSearch("breeze", ("title", "project_details.project_name"))]
    )
    assert by_tag == 1
    assert by_project == 1


@pytest.mark.asyncio
async def test_aggregate(store):
    assert await store.aggregate("things", [], {"n": Aggregate("count")}) is None

    await store.insert("things", "a", {"qty": 2, "price": 5.0, "status": "active"})
    await store.insert("things", "b", {"qty": 3, "price": 10.0, "status": "draft"})
    row = await store.aggregate(
        "things",
        [],
        {
            "count": Aggregate("count"),
            "value": Aggregate("sum", Product(Field("qty"), Field("price"))),
            "active": Aggregate("sum", Matches("status", "active")),
            "avg_qty": Aggregate("avg", Field("qty")),
        },
    )
    assert row == {"count": 2, "value": 40.0, "active": 1, "avg_qty": 2.5}


@pytest.mark.asyncio
async def test_distinct_skips_missing_values(store):
    await store.insert("things", "a", {"country": "Kenya"})
    await store.insert("things", "b", {"country": "Kenya"})
    await store.insert("things", "c", {"country": "Peru"})
    await store.insert("things", "d", {})
    assert sorted(await store.distinct("things", "country")) == ["Kenya", "Peru"]


@pytest.mark.asyncio
async def test_mutate_retries_on_conflict(seller):
    store = FlakyStore(failures=2)
    credit = await make_credit(store, seller.id)

    def bump(item):
        item.data.view_count += 1
        return True

    updated = await CarbonCredit.mutate(store, credit.id, bump)
    assert updated.data.view_count == 1
    assert store.replace_calls == 3


@pytest.mark.asyncio
async def test_mutate_gives_up_after_max_retries(seller):
    store = FlakyStore(failures=10)
    credit = await make_credit(store, seller.id)
    with pytest.raises(CasMismatchError):
        await CarbonCredit.mutate(store, credit.id, lambda item: True, max_retries=2)
    assert store.replace_calls == 3


@pytest.mark.asyncio
async def test_mutate_missing_document_returns_none(store):
    assert await CarbonCredit.mutate(store, "missing", lambda item: True) is None
