"""Closed catalog of inventory operations ("tools") the pipeline can execute.

Unknown action names are rejected here, at resolve time. Nothing downstream
ever dispatches on a raw string.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

import orjson

FieldType = Literal["string", "integer", "array"]


class ToolName(str, Enum):
    transfer_stock = "transfer_stock"
    adjust_stock = "adjust_stock"
    add_stock = "add_stock"
    remove_stock = "remove_stock"
    check_stock = "check_stock"
    search_product = "search_product"
    create_parts_list = "create_parts_list"
    get_low_stock_items = "get_low_stock_items"
    warehouse_inventory_report = "warehouse_inventory_report"
    supplier_availability = "supplier_availability"
    get_product_details = "get_product_details"


# Stage-1 pseudo actions that are never executable
NONE_ACTION = "none"
CLARIFY_ACTION = "clarify"


@dataclass(frozen=True)
class FieldSpec:
    type: FieldType
    required: bool
    description: str


@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    description: str
    # Insertion order is the order missing fields are reported in
    argument_schema: Mapping[str, FieldSpec]
    mutating: bool = False
    examples: tuple[str, ...] = field(default_factory=tuple)

    @property
    def required_fields(self) -> list[str]:
        return [k for k, f in self.argument_schema.items() if f.required]

    def to_prompt_dict(self) -> dict[str, Any]:
        return {
            "name": self.name.value,
            "description": self.description,
            "parameters": {
                k: {"type": f.type, "required": f.required, "description": f.description}
                for k, f in self.argument_schema.items()
            },
        }


def _s(description: str, required: bool = True) -> FieldSpec:
    return FieldSpec("string", required, description)


def _i(description: str, required: bool = True) -> FieldSpec:
    return FieldSpec("integer", required, description)


_REASON = _s("Why the change is made (e.g. 'received shipment', 'damaged')", required=False)

BUILTIN_TOOLS: tuple[ToolSpec, ...] = (
    ToolSpec(
        ToolName.transfer_stock,
        "Move a quantity of a product from one warehouse to another.",
        {
            "product_id": _s("Product id or part number"),
            "from_warehouse_id": _s("Source warehouse id"),
            "to_warehouse_id": _s("Destination warehouse id"),
            "quantity": _i("Units to move, greater than zero"),
            "reason": _REASON,
        },
        mutating=True,
        examples=(
            "transfer 10 units of widget-A from warehouse-1 to warehouse-2",
            "move 5 bolts from main to bay-3",
        ),
    ),
    ToolSpec(
        ToolName.adjust_stock,
        "Correct the stock level of a product in a warehouse by a signed amount.",
        {
            "product_id": _s("Product id or part number"),
            "warehouse_id": _s("Warehouse id"),
            "quantity_change": _i("Signed change, positive adds and negative removes"),
            "reason": _REASON,
        },
        mutating=True,
        examples=("adjust widget-A in warehouse-1 by -3, cycle count",),
    ),
    ToolSpec(
        ToolName.add_stock,
        "Receive units of a product into a warehouse.",
        {
            "product_id": _s("Product id or part number"),
            "quantity": _i("Units to add, greater than zero"),
            "warehouse_id": _s("Warehouse receiving the stock"),
            "reason": _REASON,
        },
        mutating=True,
        examples=("add 50 bolts to warehouse-1", "received 12 widget-A at bay-3"),
    ),
    ToolSpec(
        ToolName.remove_stock,
        "Take units of a product out of a warehouse (used, sold, scrapped).",
        {
            "product_id": _s("Product id or part number"),
            "quantity": _i("Units to remove, greater than zero"),
            "warehouse_id": _s("Warehouse the stock leaves"),
            "reason": _REASON,
        },
        mutating=True,
        examples=("remove 4 hinges from warehouse-2", "used 2 widget-A from bay-3"),
    ),
    ToolSpec(
        ToolName.check_stock,
        "Report how many units of a product are on hand, optionally in one warehouse.",
        {
            "product_id": _s("Product id or part number"),
            "warehouse_id": _s("Limit to this warehouse", required=False),
        },
        examples=("how many widget-A do we have?", "check bolts in warehouse-1"),
    ),
    ToolSpec(
        ToolName.search_product,
        "Find products by name, description or part number.",
        {
            "query": _s("Search text"),
            "category": _s("Limit to a category", required=False),
        },
        examples=("find copper fittings", "search for 3/4 inch valves"),
    ),
    ToolSpec(
        ToolName.create_parts_list,
        "Create a parts list for a job and customer.",
        {
            "job_number": _s("Job or work-order number"),
            "items": FieldSpec(
                "array", True, "List of {product_id, quantity} objects, quantity > 0"
            ),
            "customer_name": _s("Customer the job is for"),
            "notes": _s("Free-form notes", required=False),
        },
        mutating=True,
        examples=("parts list for job J-100 for Acme: 4 widget-A and 10 bolts",),
    ),
    ToolSpec(
        ToolName.get_low_stock_items,
        "List products at or below a stock threshold (default: each product's reorder level).",
        {
            "threshold": _i("Quantity at or below which stock is low", required=False),
            "warehouse_id": _s("Limit to this warehouse", required=False),
        },
        examples=("what is running low?", "show items under 5 in warehouse-2"),
    ),
    ToolSpec(
        ToolName.warehouse_inventory_report,
        "Summarize everything stocked in one warehouse, with totals and value.",
        {"warehouse_id": _s("Warehouse id")},
        examples=("inventory report for warehouse-1",),
    ),
    ToolSpec(
        ToolName.supplier_availability,
        "List suppliers that carry a product, with price and lead time.",
        {"product_id": _s("Product id or part number")},
        examples=("who supplies widget-A?",),
    ),
    ToolSpec(
        ToolName.get_product_details,
        "Show the full record of a product and its stock per warehouse.",
        {"product_id": _s("Product id or part number")},
        examples=("tell me about widget-A",),
    ),
)

# Legacy intent labels and loose spellings seen in model output
_ACTION_ALIASES: dict[str, ToolName] = {
    "add": ToolName.add_stock,
    "receive": ToolName.add_stock,
    "remove": ToolName.remove_stock,
    "use_stock": ToolName.remove_stock,
    "check": ToolName.check_stock,
    "stock_check": ToolName.check_stock,
    "count_stock": ToolName.check_stock,
    "transfer": ToolName.transfer_stock,
    "move_stock": ToolName.transfer_stock,
    "adjust": ToolName.adjust_stock,
    "search": ToolName.search_product,
    "find_product": ToolName.search_product,
    "search_stock": ToolName.search_product,
    "search_catalogue": ToolName.search_product,
    "low_stock": ToolName.get_low_stock_items,
    "low_stock_report": ToolName.get_low_stock_items,
    "inventory_report": ToolName.warehouse_inventory_report,
    "warehouse_report": ToolName.warehouse_inventory_report,
    "create_job": ToolName.create_parts_list,
    "parts_list": ToolName.create_parts_list,
    "add_parts_to_job": ToolName.create_parts_list,
    "supplier_info": ToolName.supplier_availability,
    "suppliers": ToolName.supplier_availability,
    "product_details": ToolName.get_product_details,
    "product_info": ToolName.get_product_details,
}

# Parameter aliases keyed by lowercased, separator-free spelling
_PARAM_ALIASES: dict[str, str] = {
    "item": "product_id",
    "itemid": "product_id",
    "product": "product_id",
    "part": "product_id",
    "partnumber": "product_id",
    "sku": "product_id",
    "location": "warehouse_id",
    "locationid": "warehouse_id",
    "warehouse": "warehouse_id",
    "from": "from_warehouse_id",
    "fromlocation": "from_warehouse_id",
    "fromwarehouse": "from_warehouse_id",
    "source": "from_warehouse_id",
    "to": "to_warehouse_id",
    "tolocation": "to_warehouse_id",
    "towarehouse": "to_warehouse_id",
    "destination": "to_warehouse_id",
    "qty": "quantity",
    "amount": "quantity",
    "count": "quantity",
    "change": "quantity_change",
    "delta": "quantity_change",
    "search": "query",
    "term": "query",
    "job": "job_number",
    "jobnumber": "job_number",
    "customer": "customer_name",
    "customername": "customer_name",
}

_SEP_RE = re.compile(r"[\s\-]+")


def _normalize_name(raw: str) -> str:
    return _SEP_RE.sub("_", raw.strip()).lower()


def is_present(value: Any) -> bool:
    """A parameter counts as supplied unless null, blank, or an empty container."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, list | dict | tuple):
        return len(value) > 0
    return True


class ToolCatalog:
    def __init__(self, specs: tuple[ToolSpec, ...] = BUILTIN_TOOLS) -> None:
        self._specs: dict[ToolName, ToolSpec] = {s.name: s for s in specs}

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def names(self) -> list[str]:
        return [n.value for n in self._specs]

    def get(self, name: ToolName) -> ToolSpec:
        return self._specs[name]

    def resolve(self, raw: str | None) -> ToolName | None:
        """Map a model- or user-supplied action label onto a catalog tool."""
        if not raw:
            return None
        key = _normalize_name(raw)
        try:
            name = ToolName(key)
        except ValueError:
            name = _ACTION_ALIASES.get(key)
        if name is None or name not in self._specs:
            return None
        return name

    def normalize_parameters(self, name: ToolName, params: Mapping[str, Any]) -> dict[str, Any]:
        """Rename aliased keys and drop anything outside the tool's schema.

        Canonical keys take precedence over aliases carrying the same field.
        """
        schema = self._specs[name].argument_schema
        out: dict[str, Any] = {}
        aliased: dict[str, Any] = {}
        for key, value in params.items():
            if key in schema:
                out[key] = value
                continue
            compact = _SEP_RE.sub("", str(key)).replace("_", "").lower()
            target = _PARAM_ALIASES.get(compact)
            if target is None:
                target = next(
                    (k for k in schema if k.replace("_", "") == compact), None
                )
            if target is not None and target in schema:
                aliased.setdefault(target, value)
        for key, value in aliased.items():
            if not is_present(out.get(key)):
                out[key] = value
        return out

    def missing_required(self, name: ToolName, params: Mapping[str, Any]) -> list[str]:
        spec = self._specs[name]
        return [f for f in spec.required_fields if not is_present(params.get(f))]

    def describe_operations(self) -> str:
        return "\n".join(f"- {s.name.value}: {s.description}" for s in self)

    def to_prompt_catalog(self) -> str:
        return orjson.dumps([s.to_prompt_dict() for s in self]).decode()


def merge_parameters(
    base: Mapping[str, Any] | None, update: Mapping[str, Any] | None
) -> dict[str, Any]:
    """Overlay supplied values from ``update`` onto ``base``.

    Absent values in ``update`` never erase a field already in ``base``.
    """
    out = {k: v for k, v in (base or {}).items() if is_present(v)}
    for k, v in (update or {}).items():
        if is_present(v):
            out[k] = v
    return out


DEFAULT_CATALOG = ToolCatalog()
