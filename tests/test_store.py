import pytest

from Stockwright import repos
from Stockwright.db import session_scope
from Stockwright.errors import ExecutionFailure, NotFound, ValidationError
from Stockwright.seed import seed_demo_data


async def _qty(store, product="widget-A", warehouse="warehouse-1") -> int:
    data = await store.check_stock(product, warehouse)
    return data["total_quantity"]


async def test_seed_is_idempotent(store):
    assert await seed_demo_data() is False


async def test_lookup_by_id_sku_or_name_case_insensitive(store):
    for ref in ("widget-A", "wid-a", "Widget A"):
        data = await store.get_product_details(ref)
        assert data["product_id"] == "widget-A"


async def test_check_stock_totals(store):
    data = await store.check_stock("widget-A")
    assert data["total_quantity"] == 115
    assert {lv["warehouse_id"] for lv in data["levels"]} == {"warehouse-1", "warehouse-2"}
    assert await _qty(store) == 100


async def test_transfer_moves_stock_and_records_movements(store):
    await store.transfer_stock("widget-A", "warehouse-1", "warehouse-2", 10, "rebalance")
    assert await _qty(store, warehouse="warehouse-1") == 90
    assert await _qty(store, warehouse="warehouse-2") == 25
    async with session_scope() as s:
        moves = await repos.list_movements(s, product_id="widget-A")
    assert sorted(m.quantity for m in moves) == [-10, 10]
    assert all(m.movement_type == "transfer" for m in moves)


async def test_transfer_into_empty_warehouse_creates_level(store):
    data = await store.transfer_stock("hinges", "warehouse-2", "bay-3", 2, "van stock")
    assert data["to_quantity"] == 2


async def test_transfer_insufficient_stock_changes_nothing(store):
    with pytest.raises(ExecutionFailure, match="Available: 15, Requested: 20"):
        await store.transfer_stock("widget-A", "warehouse-2", "warehouse-1", 20, "x")
    assert await _qty(store, warehouse="warehouse-2") == 15
    assert await _qty(store, warehouse="warehouse-1") == 100


async def test_transfer_same_warehouse_by_name_is_rejected(store):
    with pytest.raises(ValidationError):
        await store.transfer_stock("widget-A", "warehouse-1", "Main Warehouse", 1, "x")


async def test_add_then_remove(store):
    added = await store.add_stock("bolts", "warehouse-1", 50, "delivery")
    assert (added["previous_quantity"], added["new_quantity"]) == (500, 550)
    removed = await store.remove_stock("bolts", "warehouse-1", 550, "job")
    assert removed["new_quantity"] == 0


async def test_add_to_new_location_creates_level(store):
    data = await store.add_stock("bolts", "bay-3", 25, "van restock")
    assert data["previous_quantity"] == 0
    assert data["new_quantity"] == 25


async def test_remove_more_than_on_hand_fails(store):
    with pytest.raises(ExecutionFailure, match="Insufficient stock"):
        await store.remove_stock("hinges", "warehouse-2", 13, "job")
    with pytest.raises(ExecutionFailure, match="does not exist"):
        await store.remove_stock("hinges", "bay-3", 1, "job")


async def test_adjust_can_go_to_zero_but_not_below(store):
    data = await store.adjust_stock("hinges", "warehouse-2", -12, "count")
    assert data["new_quantity"] == 0
    with pytest.raises(ExecutionFailure):
        await store.adjust_stock("hinges", "warehouse-2", -1, "count")


async def test_missing_entities_raise_not_found(store):
    with pytest.raises(NotFound) as ei:
        await store.add_stock("bolts", "warehouse-99", 1, "x")
    assert ei.value.entity == "warehouse"
    with pytest.raises(NotFound):
        await store.supplier_availability("nope")


async def test_search_product(store):
    data = await store.search_product("copper")
    assert [r["product_id"] for r in data["results"]] == ["copper-15"]
    data = await store.search_product("widget", category="plumbing")
    assert data["results"] == []


async def test_low_stock_uses_reorder_level_by_default(store):
    data = await store.get_low_stock_items()
    found = {(i["product_id"], i["warehouse_id"]) for i in data["items"]}
    assert found == {
        ("widget-A", "warehouse-2"),
        ("hinges", "warehouse-2"),
        ("copper-15", "bay-3"),
    }


async def test_low_stock_with_threshold_and_warehouse(store):
    data = await store.get_low_stock_items(threshold=15, warehouse_id="warehouse-2")
    assert {i["product_id"] for i in data["items"]} == {"widget-A", "hinges"}


async def test_warehouse_report(store):
    data = await store.warehouse_inventory_report("warehouse-1")
    assert data["summary"]["total_products"] == 2
    assert data["summary"]["total_items"] == 600
    assert data["summary"]["total_value"] == pytest.approx(100 * 2.50 + 500 * 0.12)


async def test_supplier_availability_sorted_by_lead_time(store):
    data = await store.supplier_availability("widget-A")
    assert [s["supplier"] for s in data["suppliers"]] == ["FixCo Ltd", "Acme Supplies"]


async def test_create_parts_list_reuses_customer(store):
    items = [{"product_id": "bolts", "quantity": 10}]
    first = await store.create_parts_list("J-1", items, "Acme")
    second = await store.create_parts_list("J-2", items, "acme")
    assert first["parts_list_id"] != second["parts_list_id"]
    assert second["customer_name"] == "Acme"
    assert first["status"] == "draft"


async def test_create_parts_list_unknown_product_creates_nothing(store):
    with pytest.raises(NotFound):
        await store.create_parts_list("J-3", [{"product_id": "ghost", "quantity": 1}], "Acme")
