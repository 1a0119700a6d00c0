from __future__ import annotations

import math
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from Stockwright.catalog import DEFAULT_CATALOG, ToolCatalog, ToolName
from Stockwright.errors import CommandError, ExecutionFailure, ValidationError
from Stockwright.ids import new_entry_id, now_ms
from Stockwright.metrics import inc_counter, observe_histogram
from Stockwright.schemas import CommandLogEntry, ExecutionResult, ToolCall
from Stockwright.store import InventoryStore

log = structlog.get_logger()

Args = dict[str, Any]

_INT_RE = re.compile(r"^[+-]?\d+$")


# ---------------------------------------------------------------------------
# Argument coercion
# ---------------------------------------------------------------------------


def _label(key: str) -> str:
    return key.removesuffix("_id").replace("_", " ").capitalize()


def _text(args: Args, key: str, *, default: str | None = None) -> str:
    raw = args.get(key)
    value = str(raw).strip() if raw is not None else ""
    if value:
        return value
    if default is not None:
        return default
    raise ValidationError(f"{_label(key)} is required.")


def _opt_text(args: Args, key: str) -> str | None:
    raw = args.get(key)
    value = str(raw).strip() if raw is not None else ""
    return value or None


def _int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{_label(key)} must be a whole number.")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    if isinstance(value, str) and _INT_RE.match(value.strip()):
        return int(value.strip())
    raise ValidationError(f"{_label(key)} must be a whole number (got {value!r}).")


def _positive(args: Args, key: str) -> int:
    n = _int(args.get(key), key)
    if n <= 0:
        raise ValidationError(f"{_label(key)} must be greater than zero (got {n}).")
    return n


def _same_ref(a: str, b: str) -> bool:
    return a.strip().lower() == b.strip().lower()


# ---------------------------------------------------------------------------
# Per-tool validation
# ---------------------------------------------------------------------------


def _v_transfer(args: Args) -> Args:
    out = {
        "product_id": _text(args, "product_id"),
        "from_warehouse_id": _text(args, "from_warehouse_id"),
        "to_warehouse_id": _text(args, "to_warehouse_id"),
        "quantity": _positive(args, "quantity"),
        "reason": _text(args, "reason", default="transfer"),
    }
    if _same_ref(out["from_warehouse_id"], out["to_warehouse_id"]):
        raise ValidationError("Source and destination warehouse must be different.")
    return out


async def _p_transfer(store: InventoryStore, args: Args) -> None:
    # Catches an id on one side and the same warehouse by name on the other
    src = await store.resolve_warehouse(args["from_warehouse_id"])
    if src is not None and src == await store.resolve_warehouse(args["to_warehouse_id"]):
        raise ValidationError("Source and destination warehouse must be different.")


def _v_adjust(args: Args) -> Args:
    change = _int(args.get("quantity_change"), "quantity_change")
    if change == 0:
        raise ValidationError("Quantity change cannot be zero.")
    return {
        "product_id": _text(args, "product_id"),
        "warehouse_id": _text(args, "warehouse_id"),
        "quantity_change": change,
        "reason": _text(args, "reason", default="manual adjustment"),
    }


def _v_receive(default_reason: str) -> Callable[[Args], Args]:
    def validate(args: Args) -> Args:
        return {
            "product_id": _text(args, "product_id"),
            "warehouse_id": _text(args, "warehouse_id"),
            "quantity": _positive(args, "quantity"),
            "reason": _text(args, "reason", default=default_reason),
        }

    return validate


def _v_check(args: Args) -> Args:
    return {
        "product_id": _text(args, "product_id"),
        "warehouse_id": _opt_text(args, "warehouse_id"),
    }


def _v_search(args: Args) -> Args:
    return {"query": _text(args, "query"), "category": _opt_text(args, "category")}


def _v_parts_list(args: Args) -> Args:
    items = args.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("Items must be a non-empty list of products and quantities.")
    clean: list[dict[str, Any]] = []
    for n, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            raise ValidationError(f"Item {n} must name a product and a quantity.")
        ref = item.get("product_id") or item.get("product") or item.get("item")
        qty = item.get("quantity", item.get("qty"))
        if not ref or not str(ref).strip():
            raise ValidationError(f"Item {n} is missing its product.")
        try:
            count = _positive({"quantity": qty}, "quantity")
        except ValidationError as e:
            raise ValidationError(f"Item {n}: {e.message}") from e
        clean.append({"product_id": str(ref).strip(), "quantity": count})
    return {
        "job_number": _text(args, "job_number"),
        "items": clean,
        "customer_name": _text(args, "customer_name"),
        "notes": _opt_text(args, "notes"),
    }


def _v_low_stock(args: Args) -> Args:
    threshold = args.get("threshold")
    value = None
    if threshold is not None and str(threshold).strip() != "":
        value = _int(threshold, "threshold")
        if value < 0:
            raise ValidationError(f"Threshold cannot be negative (got {value}).")
    return {"threshold": value, "warehouse_id": _opt_text(args, "warehouse_id")}


def _v_warehouse(args: Args) -> Args:
    return {"warehouse_id": _text(args, "warehouse_id")}


def _v_product(args: Args) -> Args:
    return {"product_id": _text(args, "product_id")}


# ---------------------------------------------------------------------------
# Inverses, computed from the values the store actually applied
# ---------------------------------------------------------------------------


def _r_transfer(data: Args) -> ToolCall:
    return ToolCall(
        action=ToolName.transfer_stock,
        parameters={
            "product_id": data["product_id"],
            "from_warehouse_id": data["to_warehouse_id"],
            "to_warehouse_id": data["from_warehouse_id"],
            "quantity": data["quantity"],
            "reason": "undo transfer",
        },
    )


def _r_adjust(data: Args) -> ToolCall:
    return ToolCall(
        action=ToolName.adjust_stock,
        parameters={
            "product_id": data["product_id"],
            "warehouse_id": data["warehouse_id"],
            "quantity_change": -data["quantity_change"],
            "reason": "undo adjustment",
        },
    )


def _r_counter(action: ToolName) -> Callable[[Args], ToolCall]:
    def reverse(data: Args) -> ToolCall:
        return ToolCall(
            action=action,
            parameters={
                "product_id": data["product_id"],
                "warehouse_id": data["warehouse_id"],
                "quantity": data["quantity"],
                "reason": f"undo {data.get('reason') or 'stock change'}",
            },
        )

    return reverse


# ---------------------------------------------------------------------------
# User-facing summaries
# ---------------------------------------------------------------------------


def _s_transfer(d: Args) -> str:
    return (
        f"Moved {d['quantity']} x {d['product']} from {d['from_warehouse_id']} "
        f"to {d['to_warehouse_id']}."
    )


def _s_adjust(d: Args) -> str:
    return (
        f"Adjusted {d['product']} at {d['warehouse_id']} by {d['quantity_change']:+d}; "
        f"now {d['new_quantity']}."
    )


def _s_add(d: Args) -> str:
    return (
        f"Added {d['quantity']} x {d['product']} to {d['warehouse_id']}; "
        f"now {d['new_quantity']}."
    )


def _s_remove(d: Args) -> str:
    return (
        f"Removed {d['quantity']} x {d['product']} from {d['warehouse_id']}; "
        f"now {d['new_quantity']}."
    )


def _s_check(d: Args) -> str:
    where = f" in {d['warehouse_id']}" if d.get("warehouse_id") else ""
    return f"{d['product']}: {d['total_quantity']} on hand{where}."


def _s_search(d: Args) -> str:
    n = len(d["results"])
    if not n:
        return f"No products found matching '{d['query']}'."
    return f"Found {n} product(s) matching '{d['query']}'."


def _s_parts_list(d: Args) -> str:
    return (
        f"Parts list #{d['parts_list_id']} created for job {d['job_number']} "
        f"({len(d['items'])} line(s), customer {d['customer_name']})."
    )


def _s_low_stock(d: Args) -> str:
    n = len(d["items"])
    return f"Found {n} low stock item(s)." if n else "No low stock items found."


def _s_report(d: Args) -> str:
    s = d["summary"]
    return (
        f"{d['warehouse']}: {s['total_products']} product(s), {s['total_items']} unit(s), "
        f"value {s['total_value']:.2f}."
    )


def _s_suppliers(d: Args) -> str:
    n = len(d["suppliers"])
    if not n:
        return f"No suppliers found for {d['product']}."
    return f"Found {n} supplier(s) for {d['product']}."


def _s_details(d: Args) -> str:
    return f"{d['name']} ({d['sku']}): {d['total_stock']} on hand."


# ---------------------------------------------------------------------------
# Dispatch table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolHandler:
    validate: Callable[[Args], Args]
    dispatch: Callable[[InventoryStore, Args], Awaitable[Args]]
    summarize: Callable[[Args], str]
    reverse: Callable[[Args], ToolCall] | None = None
    precheck: Callable[[InventoryStore, Args], Awaitable[None]] | None = None


HANDLERS: dict[ToolName, ToolHandler] = {
    ToolName.transfer_stock: ToolHandler(
        _v_transfer,
        lambda st, a: st.transfer_stock(**a),
        _s_transfer,
        _r_transfer,
        precheck=_p_transfer,
    ),
    ToolName.adjust_stock: ToolHandler(
        _v_adjust, lambda st, a: st.adjust_stock(**a), _s_adjust, _r_adjust
    ),
    ToolName.add_stock: ToolHandler(
        _v_receive("received"),
        lambda st, a: st.add_stock(**a),
        _s_add,
        _r_counter(ToolName.remove_stock),
    ),
    ToolName.remove_stock: ToolHandler(
        _v_receive("used"),
        lambda st, a: st.remove_stock(**a),
        _s_remove,
        _r_counter(ToolName.add_stock),
    ),
    ToolName.check_stock: ToolHandler(_v_check, lambda st, a: st.check_stock(**a), _s_check),
    ToolName.search_product: ToolHandler(
        _v_search, lambda st, a: st.search_product(**a), _s_search
    ),
    # Not reversible: removing a created record has no tool in the catalog
    ToolName.create_parts_list: ToolHandler(
        _v_parts_list, lambda st, a: st.create_parts_list(**a), _s_parts_list
    ),
    ToolName.get_low_stock_items: ToolHandler(
        _v_low_stock, lambda st, a: st.get_low_stock_items(**a), _s_low_stock
    ),
    ToolName.warehouse_inventory_report: ToolHandler(
        _v_warehouse, lambda st, a: st.warehouse_inventory_report(**a), _s_report
    ),
    ToolName.supplier_availability: ToolHandler(
        _v_product, lambda st, a: st.supplier_availability(**a), _s_suppliers
    ),
    ToolName.get_product_details: ToolHandler(
        _v_product, lambda st, a: st.get_product_details(**a), _s_details
    ),
}

_unhandled = set(ToolName) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"tools without a handler: {sorted(t.value for t in _unhandled)}")


class CommandExecutor:
    """Validate a resolved tool call, dispatch it to the store, and log it.

    Never raises for domain failures: validation, lookup and store errors all
    come back as an unsuccessful ``ExecutionResult`` with a stable error kind.
    """

    def __init__(self, store: InventoryStore, catalog: ToolCatalog = DEFAULT_CATALOG) -> None:
        self.store = store
        self.catalog = catalog

    async def execute(
        self,
        call: ToolCall,
        *,
        raw_command: str = "",
        undoes: str | None = None,
    ) -> tuple[ExecutionResult, CommandLogEntry | None]:
        """Run ``call``.

        Returns the result plus the log entry to append. The entry is None
        when the call was rejected before reaching the store.
        """
        handler = HANDLERS[call.action]
        spec = self.catalog.get(call.action)
        try:
            missing = self.catalog.missing_required(call.action, call.parameters)
            if missing:
                raise ValidationError(
                    "Missing required field(s): " + ", ".join(_label(m).lower() for m in missing)
                )
            args = handler.validate(call.parameters)
        except ValidationError as e:
            return self._invalid(call, e), None

        start = time.perf_counter()
        try:
            if handler.precheck is not None:
                await handler.precheck(self.store, args)
            data = await handler.dispatch(self.store, args)
        except ValidationError as e:
            # The store rolled back, so this is not a logged command
            return self._invalid(call, e), None
        except CommandError as e:
            inc_counter(f"executor.failed.{e.kind.value}")
            log.info(
                "executor.dispatch_failed",
                action=call.action.value,
                error_kind=e.kind.value,
                reason=e.message,
            )
            result = self._failure(e)
            return result, self._entry(call.action, args, result, raw_command, undoes=undoes)
        except Exception:
            inc_counter("executor.failed.unexpected")
            log.error("executor.dispatch_error", action=call.action.value, exc_info=True)
            result = self._failure(
                ExecutionFailure(
                    "The inventory operation failed unexpectedly. Nothing was changed."
                )
            )
            return result, self._entry(call.action, args, result, raw_command, undoes=undoes)
        finally:
            observe_histogram("executor.dispatch.ms", int((time.perf_counter() - start) * 1000))

        result = ExecutionResult(success=True, data=data, message=handler.summarize(data))
        reverse = None
        if handler.reverse is not None and spec.mutating and undoes is None:
            reverse = handler.reverse(data)
        inc_counter("executor.ok")
        log.info(
            "executor.completed",
            action=call.action.value,
            reversible=reverse is not None,
            undoes=undoes,
        )
        entry = self._entry(
            call.action, args, result, raw_command, reverse=reverse, undoes=undoes
        )
        return result, entry

    def _invalid(self, call: ToolCall, e: ValidationError) -> ExecutionResult:
        inc_counter("executor.validation_failed")
        log.info("executor.validation_failed", action=call.action.value, reason=e.message)
        return self._failure(e)

    @staticmethod
    def _failure(e: CommandError) -> ExecutionResult:
        return ExecutionResult(success=False, error_kind=e.kind, message=e.message)

    @staticmethod
    def _entry(
        action: ToolName,
        args: Args,
        result: ExecutionResult,
        raw_command: str,
        *,
        reverse: ToolCall | None = None,
        undoes: str | None = None,
    ) -> CommandLogEntry:
        ts = now_ms()
        return CommandLogEntry(
            id=new_entry_id(ts),
            timestamp_ms=ts,
            raw_command=raw_command,
            action=action,
            parameters=args,
            success=result.success,
            result_summary=result.message,
            reversible=reverse is not None,
            reverse_action=reverse,
            undoes=undoes,
        )
