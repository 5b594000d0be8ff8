import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from clients.store import CasMismatchError, DocumentStore, Filter, Sort, TextSearch

from models.entities.documents.credits import (
    CarbonCredit,
    CarbonCreditData,
    normalise_availability,
)
from models.errors import ConflictError, NotAuthorizedError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Wire names accepted for ``sortBy`` mapped to stored paths.
SORT_FIELDS = {
    "createdAt": "created_at",
    "pricePerCredit": "price_per_credit",
    "availableCredits": "available_credits",
    "totalCredits": "total_credits",
    "averageRating": "average_rating",
    "viewCount": "view_count",
    "purchaseCount": "purchase_count",
    "title": "title",
}

SEARCH_PATHS = ("title", "description", "project_details.project_name")

# Fields the owner may not set through an update.
PROTECTED_FIELDS = {
    "seller_id",
    "status",
    "is_verified",
    "verification_date",
    "view_count",
    "purchase_count",
    "average_rating",
    "total_reviews",
    "created_at",
    "updated_at",
    "created_by_user_id",
}


async def credit_create(store: DocumentStore, seller_id: str, payload: Dict[str, Any]) -> CarbonCredit:
    status = payload.get("status") or "draft"
    if status not in ("draft", "active"):
        raise ValidationError("New credits can only be created as draft or active")
    payload = {k: v for k, v in payload.items() if k not in PROTECTED_FIELDS}
    payload["status"] = status
    if payload.get("available_credits") is None:
        payload["available_credits"] = payload.get("total_credits")
    data = CarbonCreditData(seller_id=seller_id, **payload)
    credit = await CarbonCredit.create(store, data, user_id=seller_id)
    logger.info(f"Carbon credit {credit.id} created by seller {seller_id}")
    return credit


async def credit_get(store: DocumentStore, credit_id: str) -> CarbonCredit:
    credit = await CarbonCredit.get(store, credit_id)
    if credit is None:
        raise NotFoundError("Carbon credit not found")
    return credit


async def credit_get_and_count_view(store: DocumentStore, credit_id: str) -> CarbonCredit:
    def _mutate(credit: CarbonCredit) -> bool:
        credit.data.view_count += 1
        return True

    try:
        credit = await CarbonCredit.mutate(store, credit_id, _mutate)
    except CasMismatchError:
        # A lost view increment is not worth failing the read for.
        logger.warning(f"View count update for credit {credit_id} lost to contention")
        credit = await CarbonCredit.get(store, credit_id)
    if credit is None:
        raise NotFoundError("Carbon credit not found")
    return credit


async def credit_search(
    store: DocumentStore,
    energy_type: Optional[str] = None,
    country: Optional[str] = None,
    standard: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    min_available: Optional[int] = None,
    search: Optional[str] = None,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
    limit: int = 10,
    offset: int = 0,
) -> Tuple[List[CarbonCredit], int]:
    """Marketplace browse: active, verified listings with credits left."""
    conditions: List[Any] = [
        Filter("status", "eq", "active"),
        Filter("is_verified", "eq", True),
        Filter("available_credits", "gt", 0),
    ]
    if energy_type:
        conditions.append(Filter("energy_type", "eq", energy_type))
    if country:
        conditions.append(Filter("project_location.country", "eq", country))
    if standard:
        conditions.append(Filter("certification.standard", "eq", standard))
    if min_price is not None:
        conditions.append(Filter("price_per_credit", "gte", min_price))
    if max_price is not None:
        conditions.append(Filter("price_per_credit", "lte", max_price))
    if min_available is not None:
        conditions.append(Filter("available_credits", "gte", min_available))
    if search and search.strip():
        conditions.append(TextSearch(search.strip(), SEARCH_PATHS, array_paths=("tags",)))

    sort = Sort(SORT_FIELDS.get(sort_by, "created_at"), descending=sort_order != "asc")
    credits = await CarbonCredit.find(store, conditions, sort=sort, limit=limit, offset=offset)
    total = await CarbonCredit.count(store, conditions)
    return credits, total


async def credit_list_by_seller(
    store: DocumentStore,
    seller_id: str,
    status: Optional[str] = None,
    limit: int = 10,
    offset: int = 0,
) -> Tuple[List[CarbonCredit], int]:
    conditions: List[Any] = [Filter("seller_id", "eq", seller_id)]
    if status:
        conditions.append(Filter("status", "eq", status))
    credits = await CarbonCredit.find(store, conditions, sort=Sort(), limit=limit, offset=offset)
    total = await CarbonCredit.count(store, conditions)
    return credits, total


async def credit_update(
    store: DocumentStore, credit_id: str, user_id: str, changes: Dict[str, Any]
) -> CarbonCredit:
    """Apply owner edits to a listing.

    Refused while the listing is active and has purchases. Runs through the
    CAS-guarded update so edits cannot clobber a concurrent purchase.
    """
    changes = {k: v for k, v in changes.items() if k not in PROTECTED_FIELDS}

    def _mutate(credit: CarbonCredit) -> bool:
        if credit.data.seller_id != user_id:
            raise NotAuthorizedError("Not authorized to update this credit")
        if credit.data.status == "active" and credit.data.purchase_count > 0:
            raise ValidationError("Cannot update credit with existing transactions")
        merged = credit.data.model_dump()
        merged.update(changes)
        try:
            credit.data = CarbonCreditData.model_validate(merged)
        except ValueError as e:
            raise ValidationError(f"Invalid credit update: {e}") from e
        return True

    try:
        credit = await CarbonCredit.mutate(store, credit_id, _mutate)
    except CasMismatchError as e:
        raise ConflictError("Concurrent update conflict, please retry") from e
    if credit is None:
        raise NotFoundError("Carbon credit not found")
    return credit


async def credit_delete(store: DocumentStore, credit_id: str, user_id: str) -> None:
    credit = await credit_get(store, credit_id)
    if credit.data.seller_id != user_id:
        raise NotAuthorizedError("Not authorized to delete this credit")
    if credit.data.purchase_count > 0:
        raise ValidationError("Cannot delete credit with existing transactions")
    try:
        await CarbonCredit.delete(store, credit_id, cas=credit.cas)
    except CasMismatchError as e:
        raise ConflictError("Credit was modified concurrently, please retry") from e
    logger.info(f"Carbon credit {credit_id} deleted by seller {user_id}")


async def credit_verify(store: DocumentStore, credit_id: str) -> CarbonCredit:
    def _mutate(credit: CarbonCredit) -> bool:
        credit.data.is_verified = True
        credit.data.verification_date = datetime.now(timezone.utc)
        return True

    try:
        credit = await CarbonCredit.mutate(store, credit_id, _mutate)
    except CasMismatchError as e:
        raise ConflictError("Concurrent update conflict, please retry") from e
    if credit is None:
        raise NotFoundError("Carbon credit not found")
    return credit


async def credit_set_status(store: DocumentStore, credit_id: str, user_id: str, status: str) -> CarbonCredit:
    """Owner publishes (active), drafts or suspends a listing."""
    if status not in ("draft", "active", "suspended"):
        raise ValidationError(f"Cannot set credit status to {status}")

    def _mutate(credit: CarbonCredit) -> bool:
        if credit.data.seller_id != user_id:
            raise NotAuthorizedError("Not authorized to update this credit")
        if credit.data.status == "expired":
            raise ValidationError("Expired credits cannot be re-listed")
        credit.data.status = status
        normalise_availability(credit.data)
        return True

    try:
        credit = await CarbonCredit.mutate(store, credit_id, _mutate)
    except CasMismatchError as e:
        raise ConflictError("Concurrent update conflict, please retry") from e
    if credit is None:
        raise NotFoundError("Carbon credit not found")
    return credit


async def credit_distinct(store: DocumentStore, path: str) -> List[Any]:
    return sorted(await store.distinct(CarbonCredit.collection(), path), key=str)


async def _credit_cas_update(
    store: DocumentStore,
    credit_id: str,
    mutator: Callable[[CarbonCreditData], Optional[str]],
) -> Tuple[bool, Optional[str]]:
    """Read-modify-write a listing's counters with CAS-guarded retry.

    *mutator* returns None on success or an error string to abort without
    writing. Availability is re-normalised before every write.
    """
    error: Optional[str] = None

    def _apply(credit: CarbonCredit) -> bool:
        nonlocal error
        error = mutator(credit.data)
        if error is not None:
            return False
        normalise_availability(credit.data)
        return True

    try:
        credit = await CarbonCredit.mutate(store, credit_id, _apply)
    except CasMismatchError:
        return False, "Concurrent update conflict, please retry"
    if credit is None:
        return False, f"Carbon credit {credit_id} not found"
    return error is None, error


async def credit_commit_purchase(
    store: DocumentStore, credit_id: str, quantity: int, count_purchase: bool = True
) -> Tuple[bool, Optional[str]]:
    """Atomically take *quantity* credits off a listing.

    Fails without writing when fewer than *quantity* credits are left.
    """

    def _mutate(data: CarbonCreditData) -> Optional[str]:
        if data.available_credits < quantity:
            return (
                f"Insufficient credits: requested {quantity} "
                f"but only {data.available_credits} available"
            )
        data.available_credits -= quantity
        if count_purchase:
            data.purchase_count += 1
        return None

    return await _credit_cas_update(store, credit_id, _mutate)


async def credit_restore(
    store: DocumentStore, credit_id: str, quantity: int, revert_purchase: bool = False
) -> Tuple[bool, Optional[str]]:
    """Atomically put *quantity* credits back, clamped to the listing total."""

    def _mutate(data: CarbonCreditData) -> Optional[str]:
        data.available_credits = min(data.available_credits + quantity, data.total_credits)
        if revert_purchase:
            data.purchase_count = max(data.purchase_count - 1, 0)
        return None

    return await _credit_cas_update(store, credit_id, _mutate)


async def credit_set_rating(
    store: DocumentStore, credit_id: str, average_rating: float, total_reviews: int
) -> Tuple[bool, Optional[str]]:
    def _mutate(data: CarbonCreditData) -> Optional[str]:
        data.average_rating = round(max(0.0, min(average_rating, 5.0)), 2)
        data.total_reviews = total_reviews
        return None

    return await _credit_cas_update(store, credit_id, _mutate)


async def credit_expire_due(store: DocumentStore, now: Optional[datetime] = None) -> int:
    """Move active listings whose certification has lapsed to expired."""
    now = now or datetime.now(timezone.utc)
    due = await CarbonCredit.find(
        store,
        [
            Filter("status", "in", ["active", "sold-out"]),
            Filter("certification.expiry_date", "lt", now.strftime("%Y-%m-%dT%H:%M:%SZ")),
        ],
    )

    def _expire(credit: CarbonCredit) -> bool:
        if credit.data.status not in ("active", "sold-out"):
            return False
        if credit.data.certification.expiry_date >= now:
            return False
        credit.data.status = "expired"
        return True

    expired = 0
    for credit in due:
        try:
            updated = await CarbonCredit.mutate(store, credit.id, _expire)
        except CasMismatchError:
            logger.warning(f"Could not expire credit {credit.id}: concurrent update conflict")
            continue
        if updated is not None and updated.data.status == "expired":
            expired += 1
    if expired:
        logger.info(f"Expired {expired} carbon credit listing(s)")
    return expired
