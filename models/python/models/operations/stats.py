from typing import Any, Dict

from clients.store import Aggregate, Difference, DocumentStore, Field, Filter, Matches, Product

from models.entities.documents.credits import CarbonCredit
from models.entities.documents.transactions import Transaction

SELLER_CREDIT_STATS = {
    "total_credits": Aggregate("sum", Field("total_credits")),
    "total_available": Aggregate("sum", Field("available_credits")),
    "total_sold": Aggregate("sum", Difference(Field("total_credits"), Field("available_credits"))),
    "total_value": Aggregate("sum", Product(Field("total_credits"), Field("price_per_credit"))),
    "available_value": Aggregate(
        "sum", Product(Field("available_credits"), Field("price_per_credit"))
    ),
    "sold_value": Aggregate(
        "sum",
        Product(Difference(Field("total_credits"), Field("available_credits")), Field("price_per_credit")),
    ),
    "total_listings": Aggregate("count"),
    "active_listings": Aggregate("sum", Matches("status", "active")),
    "total_views": Aggregate("sum", Field("view_count")),
    "total_purchases": Aggregate("sum", Field("purchase_count")),
    "average_rating": Aggregate("avg", Field("average_rating")),
}

TRANSACTION_STATS = {
    "total_transactions": Aggregate("count"),
    "total_volume": Aggregate("sum", Field("total_amount")),
    "total_credits": Aggregate("sum", Field("quantity")),
    "completed_transactions": Aggregate("sum", Matches("status", "completed")),
    "pending_transactions": Aggregate("sum", Matches("status", "pending")),
    "average_transaction_value": Aggregate("avg", Field("total_amount")),
}

_MONEY = {"total_value", "available_value", "sold_value", "total_volume", "average_transaction_value"}
_FLOATS = _MONEY | {"average_rating"}


def _normalise(row: Dict[str, Any], names) -> Dict[str, Any]:
    result = {}
    for name in names:
        value = (row or {}).get(name) or 0
        if name in _FLOATS:
            result[name] = round(float(value), 2)
        else:
            result[name] = int(value)
    return result


async def seller_credit_stats(store: DocumentStore, seller_id: str) -> Dict[str, Any]:
    row = await store.aggregate(
        CarbonCredit.collection(), [Filter("seller_id", "eq", seller_id)], SELLER_CREDIT_STATS
    )
    return _normalise(row, SELLER_CREDIT_STATS)


async def transaction_stats(store: DocumentStore, user_id: str, role: str) -> Dict[str, Any]:
    path = "buyer_id" if role == "buyer" else "seller_id"
    row = await store.aggregate(
        Transaction.collection(), [Filter(path, "eq", user_id)], TRANSACTION_STATS
    )
    return _normalise(row, TRANSACTION_STATS)
