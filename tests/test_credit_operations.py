import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from clients.store import MemoryStore
from models.entities.documents.credits import CarbonCredit
from models.errors import ConflictError, NotAuthorizedError, NotFoundError, ValidationError
from models.operations import credits as credit_operations
from models.operations.credits import (
    credit_commit_purchase,
    credit_create,
    credit_delete,
    credit_distinct,
    credit_expire_due,
    credit_get_and_count_view,
    credit_restore,
    credit_search,
    credit_set_status,
    credit_update,
    credit_verify,
)

from conftest import credit_payload, make_credit


@pytest.mark.asyncio
async def test_create_defaults_and_ignores_protected_fields(store, seller):
    payload = credit_payload(available_credits=None, is_verified=True, view_count=99, purchase_count=5)
    credit = await credit_create(store, seller.id, payload)

    assert credit.data.available_credits == 1000
    assert credit.data.status == "draft"
    assert credit.data.is_verified is False
    assert credit.data.view_count == 0
    assert credit.data.purchase_count == 0
    assert credit.data.created_by_user_id == seller.id


@pytest.mark.asyncio
async def test_create_cannot_start_suspended(store, seller):
    with pytest.raises(ValidationError):
        await credit_create(store, seller.id, credit_payload(status="suspended"))


@pytest.mark.asyncio
async def test_view_count_increments(store, credit):
    await credit_get_and_count_view(store, credit.id)
    viewed = await credit_get_and_count_view(store, credit.id)
    assert viewed.data.view_count == 2

    with pytest.raises(NotFoundError):
        await credit_get_and_count_view(store, "missing")


@pytest.mark.asyncio
async def test_update_by_owner(store, seller, credit):
    updated = await credit_update(
        store, credit.id, seller.id, {"price_per_credit": 30.0, "status": "suspended", "tags": ["New"]}
    )
    assert updated.data.price_per_credit == 30.0
    assert updated.data.tags == ["new"]
    # status is not editable through an update
    assert updated.data.status == "active"


@pytest.mark.asyncio
async def test_update_shrinking_total_clamps_available(store, seller, credit):
    updated = await credit_update(store, credit.id, seller.id, {"total_credits": 500})
    assert updated.data.total_credits == 500
    assert updated.data.available_credits == 500


@pytest.mark.asyncio
async def test_update_rejects_invalid_values(store, seller, credit):
    with pytest.raises(ValidationError):
        await credit_update(store, credit.id, seller.id, {"price_per_credit": -1})


@pytest.mark.asyncio
async def test_update_by_other_user_refused(store, buyer, credit):
    with pytest.raises(NotAuthorizedError):
        await credit_update(store, credit.id, buyer.id, {"title": "Mine now"})


@pytest.mark.asyncio
async def test_active_listing_with_purchases_is_locked(store, seller, credit):
    ok, _ = await credit_commit_purchase(store, credit.id, 10)
    assert ok
    with pytest.raises(ValidationError, match="existing transactions"):
        await credit_update(store, credit.id, seller.id, {"title": "Renamed"})
    with pytest.raises(ValidationError, match="existing transactions"):
        await credit_delete(store, credit.id, seller.id)


@pytest.mark.asyncio
async def test_delete(store, seller, credit):
    await credit_delete(store, credit.id, seller.id)
    assert await CarbonCredit.get(store, credit.id) is None


@pytest.mark.asyncio
async def test_delete_refused_when_listing_changed_after_read(store, seller, credit, monkeypatch):
    stale = await CarbonCredit.get(store, credit.id)
    ok, _ = await credit_commit_purchase(store, credit.id, 10)
    assert ok

    async def stale_get(store, credit_id):
        return stale

    monkeypatch.setattr(credit_operations, "credit_get", stale_get)
    with pytest.raises(ConflictError):
        await credit_delete(store, credit.id, seller.id)
    assert await CarbonCredit.get(store, credit.id) is not None


class InterleavingStore(MemoryStore):
    """Yields to the event loop after every read so concurrent writers race."""

    async def get(self, collection, key):
        found = await super().get(collection, key)
        await asyncio.sleep(0)
        return found


@pytest.mark.asyncio
async def test_concurrent_purchases_cannot_oversell():
    store = InterleavingStore()
    credit = await make_credit(store, "seller-1")

    results = await asyncio.gather(
        *(credit_commit_purchase(store, credit.id, 300) for _ in range(3))
    )

    assert sorted(ok for ok, _ in results) == [False, True, True]
    assert [error for ok, error in results if not ok][0].startswith("Insufficient credits")
    listing = await CarbonCredit.get(store, credit.id)
    assert listing.data.available_credits == 200
    assert listing.data.purchase_count == 2


@pytest.mark.asyncio
async def test_commit_purchase_is_conditional(store, credit):
    ok, error = await credit_commit_purchase(store, credit.id, 900)
    assert not ok
    assert "Insufficient credits" in error

    unchanged = await CarbonCredit.get(store, credit.id)
    assert unchanged.data.available_credits == 800
    assert unchanged.data.purchase_count == 0

    ok, _ = await credit_commit_purchase(store, credit.id, 800)
    assert ok
    sold = await CarbonCredit.get(store, credit.id)
    assert sold.data.available_credits == 0
    assert sold.data.status == "sold-out"
    assert sold.data.purchase_count == 1


@pytest.mark.asyncio
async def test_restore_clamps_to_total(store, credit):
    ok, _ = await credit_restore(store, credit.id, 500)
    assert ok
    restored = await CarbonCredit.get(store, credit.id)
    assert restored.data.available_credits == 1000


@pytest.mark.asyncio
async def test_restore_reopens_sold_out_listing(store, credit):
    await credit_commit_purchase(store, credit.id, 800)
    await credit_restore(store, credit.id, 100, revert_purchase=True)
    restored = await CarbonCredit.get(store, credit.id)
    assert restored.data.status == "active"
    assert restored.data.available_credits == 100
    assert restored.data.purchase_count == 0


@pytest.mark.asyncio
async def test_commit_on_missing_listing(store):
    ok, error = await credit_commit_purchase(store, "missing", 1)
    assert not ok
    assert "not found" in error


@pytest.mark.asyncio
async def test_marketplace_search(store, seller):
    await make_credit(store, seller.id, title="Cheap Solar", energy_type="solar", price_per_credit=5.0)
    await make_credit(store, seller.id, title="Pricey Hydro", energy_type="hydro", price_per_credit=50.0)
    await make_credit(store, seller.id, title="Unverified Wind", is_verified=False)
    await make_credit(store, seller.id, title="Draft Wind", status="draft")
    await make_credit(store, seller.id, title="Empty Wind", available_credits=0)

    credits, total = await credit_search(store)
    assert total == 2
    assert {c.data.title for c in credits} == {"Cheap Solar", "Pricey Hydro"}

    credits, total = await credit_search(store, max_price=10)
    assert [c.data.title for c in credits] == ["Cheap Solar"]

    credits, total = await credit_search(store, search="hydro")
    assert [c.data.title for c in credits] == ["Pricey Hydro"]

    credits, total = await credit_search(store, search="AFRICA")
    assert total == 2

    credits, _ = await credit_search(store, sort_by="pricePerCredit", sort_order="asc")
    assert [c.data.price_per_credit for c in credits] == [5.0, 50.0]

    credits, total = await credit_search(store, limit=1, offset=1)
    assert total == 2
    assert len(credits) == 1


@pytest.mark.asyncio
async def test_distinct_values(store, seller):
    await make_credit(store, seller.id, energy_type="solar")
    await make_credit(store, seller.id, energy_type="wind")
    await make_credit(store, seller.id, energy_type="solar", project_location={"country": "Chile"})
    assert await credit_distinct(store, "energy_type") == ["solar", "wind"]
    assert await credit_distinct(store, "project_location.country") == ["Chile", "Kenya"]


@pytest.mark.asyncio
async def test_verify(store, seller):
    credit = await make_credit(store, seller.id, is_verified=False)
    verified = await credit_verify(store, credit.id)
    assert verified.data.is_verified
    assert verified.data.verification_date is not None


@pytest.mark.asyncio
async def test_set_status(store, seller, buyer):
    credit = await make_credit(store, seller.id, status="draft")
    published = await credit_set_status(store, credit.id, seller.id, "active")
    assert published.data.status == "active"

    with pytest.raises(NotAuthorizedError):
        await credit_set_status(store, credit.id, buyer.id, "suspended")
    with pytest.raises(ValidationError):
        await credit_set_status(store, credit.id, seller.id, "expired")


@pytest.mark.asyncio
async def test_expire_due(store, seller):
    now = datetime.now(timezone.utc)
    lapsed_cert = credit_payload()["certification"] | {"expiry_date": now - timedelta(days=1)}
    lapsed = await make_credit(store, seller.id, certification=lapsed_cert)
    current = await make_credit(store, seller.id)
    draft = await make_credit(store, seller.id, status="draft", certification=lapsed_cert)

    assert await credit_expire_due(store, now) == 1
    assert (await CarbonCredit.get(store, lapsed.id)).data.status == "expired"
    assert (await CarbonCredit.get(store, current.id)).data.status == "active"
    assert (await CarbonCredit.get(store, draft.id)).data.status == "draft"

    with pytest.raises(ValidationError):
        await credit_set_status(store, lapsed.id, seller.id, "active")
