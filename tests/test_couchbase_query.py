import pytest

pytest.importorskip("couchbase")

from couchbase.exceptions import CouchbaseException  # noqa: E402

from clients.couchbase.store import _Params, compile_conditions, compile_expr, path_expr, store_errors  # noqa: E402
from clients.store import Difference, Field, Filter, Matches, Product, StoreError, TextSearch  # noqa: E402


def test_path_expr_quotes_each_segment():
    assert path_expr("payment.status") == "d.`payment`.`status`"


@pytest.mark.parametrize("path", ["", "a..b", "bad`name"])
def test_path_expr_rejects_invalid_paths(path):
    with pytest.raises(ValueError):
        path_expr(path)


def test_conditions_are_parameterised():
    params = _Params()
    where = compile_conditions(
        [Filter("status", "eq", "active"), Filter("price_per_credit", "lte", 30), Filter("status", "in", ["a", "b"])],
        params,
    )
    assert where == "d.`status` = $p0 AND d.`price_per_credit` <= $p1 AND d.`status` IN $p2"
    assert params.values == {"p0": "active", "p1": 30, "p2": ["a", "b"]}


def test_no_conditions_match_everything():
    assert compile_conditions([], _Params()) == "TRUE"


def test_text_search_lowercases_term_and_scans_arrays():
    params = _Params()
    where = compile_conditions([TextSearch("Wind", ("title",), ("tags",))], params)
    assert params.values == {"p0": "wind"}
    assert 'CONTAINS(LOWER(IFMISSINGORNULL(d.`title`, "")), $p0)' in where
    assert "ANY v IN IFMISSINGORNULL(d.`tags`, []) SATISFIES CONTAINS(LOWER(v), $p0) END" in where


def test_aggregate_expressions():
    params = _Params()
    sold_value = Product(Difference(Field("total_credits"), Field("available_credits")), Field("price_per_credit"))
    assert compile_expr(sold_value, params) == (
        "((IFMISSINGORNULL(d.`total_credits`, 0) - IFMISSINGORNULL(d.`available_credits`, 0))"
        " * IFMISSINGORNULL(d.`price_per_credit`, 0))"
    )
    assert compile_expr(Matches("status", "active"), params) == (
        "(CASE WHEN d.`status` = $p0 THEN 1 ELSE 0 END)"
    )


class DriverTimeout(CouchbaseException):
    def __init__(self):
        Exception.__init__(self, "operation timed out")

    def __str__(self):
        return "operation timed out"


class TimingOutStore:
    @store_errors
    async def get(self, collection, key):
        raise DriverTimeout()


@pytest.mark.asyncio
async def test_driver_failures_surface_as_store_errors():
    with pytest.raises(StoreError, match="transactions: operation timed out"):
        await TimingOutStore().get("transactions", "t1")
