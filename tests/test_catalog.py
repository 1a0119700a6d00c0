import orjson
import pytest

from Stockwright.catalog import (
    DEFAULT_CATALOG,
    ToolCatalog,
    ToolName,
    is_present,
    merge_parameters,
)
from Stockwright.executor import HANDLERS


def test_catalog_has_every_tool_and_a_handler_for_each():
    assert len(DEFAULT_CATALOG) == len(ToolName)
    assert set(HANDLERS) == set(ToolName)


def test_mutating_tools():
    mutating = {s.name for s in DEFAULT_CATALOG if s.mutating}
    assert mutating == {
        ToolName.transfer_stock,
        ToolName.adjust_stock,
        ToolName.add_stock,
        ToolName.remove_stock,
        ToolName.create_parts_list,
    }


def test_required_fields_keep_schema_order():
    spec = DEFAULT_CATALOG.get(ToolName.transfer_stock)
    assert spec.required_fields == [
        "product_id",
        "from_warehouse_id",
        "to_warehouse_id",
        "quantity",
    ]
    assert "reason" not in spec.required_fields


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("transfer_stock", ToolName.transfer_stock),
        ("Transfer Stock", ToolName.transfer_stock),
        ("check-stock", ToolName.check_stock),
        ("count_stock", ToolName.check_stock),
        ("receive", ToolName.add_stock),
        ("low_stock_report", ToolName.get_low_stock_items),
    ],
)
def test_resolve_known_names_and_aliases(raw, expected):
    assert DEFAULT_CATALOG.resolve(raw) is expected


@pytest.mark.parametrize("raw", [None, "", "delete_everything", "none", "clarify"])
def test_resolve_rejects_unknown(raw):
    assert DEFAULT_CATALOG.resolve(raw) is None


def test_resolve_respects_a_narrowed_catalog():
    only_reads = ToolCatalog(tuple(s for s in DEFAULT_CATALOG if not s.mutating))
    assert only_reads.resolve("add_stock") is None
    assert only_reads.resolve("check_stock") is ToolName.check_stock


def test_normalize_parameters_maps_aliases_and_drops_unknown():
    out = DEFAULT_CATALOG.normalize_parameters(
        ToolName.transfer_stock,
        {"item": "widget-A", "From": "warehouse-1", "to-location": "warehouse-2", "qty": 10,
         "colour": "red"},
    )
    assert out == {
        "product_id": "widget-A",
        "from_warehouse_id": "warehouse-1",
        "to_warehouse_id": "warehouse-2",
        "quantity": 10,
    }


def test_normalize_parameters_prefers_canonical_key():
    out = DEFAULT_CATALOG.normalize_parameters(
        ToolName.add_stock, {"product_id": "bolts", "product": "nuts"}
    )
    assert out["product_id"] == "bolts"


def test_missing_required_treats_blank_as_absent():
    missing = DEFAULT_CATALOG.missing_required(
        ToolName.add_stock, {"product_id": "bolts", "quantity": None, "warehouse_id": "  "}
    )
    assert missing == ["quantity", "warehouse_id"]


def test_is_present():
    assert is_present(0)
    assert is_present("x")
    assert not is_present(None)
    assert not is_present("")
    assert not is_present([])


def test_merge_parameters_never_erases_with_absent_values():
    base = {"product_id": "bolts", "quantity": 5}
    merged = merge_parameters(base, {"quantity": None, "warehouse_id": "warehouse-1"})
    assert merged == {"product_id": "bolts", "quantity": 5, "warehouse_id": "warehouse-1"}
    assert merge_parameters(base, {"quantity": 50})["quantity"] == 50


def test_prompt_catalog_is_json():
    data = orjson.loads(DEFAULT_CATALOG.to_prompt_catalog())
    names = [t["name"] for t in data]
    assert names == DEFAULT_CATALOG.names()
    transfer = data[0]["parameters"]
    assert transfer["quantity"] == {
        "type": "integer",
        "required": True,
        "description": "Units to move, greater than zero",
    }


def test_describe_operations_lists_each_tool():
    text = DEFAULT_CATALOG.describe_operations()
    for name in DEFAULT_CATALOG.names():
        assert f"- {name}:" in text
