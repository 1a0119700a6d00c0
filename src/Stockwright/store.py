"""Inventory store: the collaborator the executor dispatches tool calls to.

``InventoryStore`` is the narrow contract; ``SqlInventoryStore`` is the
SQLAlchemy implementation. Every method is one transaction and returns plain
structured data, raising ``NotFound``, ``ValidationError`` or
``ExecutionFailure`` on failure.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from Stockwright import models, repos
from Stockwright.db import session_scope
from Stockwright.errors import ExecutionFailure, ValidationError

log = structlog.get_logger()

ScopeFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class InventoryStore(Protocol):
    async def transfer_stock(
        self,
        product_id: str,
        from_warehouse_id: str,
        to_warehouse_id: str,
        quantity: int,
        reason: str,
    ) -> dict[str, Any]: ...

    async def adjust_stock(
        self, product_id: str, warehouse_id: str, quantity_change: int, reason: str
    ) -> dict[str, Any]: ...

    async def add_stock(
        self, product_id: str, warehouse_id: str, quantity: int, reason: str
    ) -> dict[str, Any]: ...

    async def remove_stock(
        self, product_id: str, warehouse_id: str, quantity: int, reason: str
    ) -> dict[str, Any]: ...

    async def check_stock(
        self, product_id: str, warehouse_id: str | None = None
    ) -> dict[str, Any]: ...

    async def search_product(self, query: str, category: str | None = None) -> dict[str, Any]: ...

    async def create_parts_list(
        self,
        job_number: str,
        items: list[dict[str, Any]],
        customer_name: str,
        notes: str | None = None,
    ) -> dict[str, Any]: ...

    async def get_low_stock_items(
        self, threshold: int | None = None, warehouse_id: str | None = None
    ) -> dict[str, Any]: ...

    async def warehouse_inventory_report(self, warehouse_id: str) -> dict[str, Any]: ...

    async def supplier_availability(self, product_id: str) -> dict[str, Any]: ...

    async def get_product_details(self, product_id: str) -> dict[str, Any]: ...

    async def resolve_warehouse(self, ref: str) -> str | None: ...


def _level_row(level: models.StockLevel) -> dict[str, Any]:
    return {
        "product_id": level.product_id,
        "warehouse_id": level.warehouse_id,
        "warehouse": level.warehouse.name,
        "quantity": level.quantity,
    }


class SqlInventoryStore:
    def __init__(self, scope: ScopeFactory = session_scope) -> None:
        self._scope = scope

    async def resolve_warehouse(self, ref: str) -> str | None:
        """Canonical id for a warehouse id or name, None when unknown."""
        async with self._scope() as s:
            warehouse = await repos.find_warehouse(s, ref)
            return warehouse.id if warehouse is not None else None

    async def transfer_stock(
        self,
        product_id: str,
        from_warehouse_id: str,
        to_warehouse_id: str,
        quantity: int,
        reason: str,
    ) -> dict[str, Any]:
        async with self._scope() as s:
            product = await repos.require_product(s, product_id)
            src = await repos.require_warehouse(s, from_warehouse_id)
            dst = await repos.require_warehouse(s, to_warehouse_id)
            if src.id == dst.id:
                raise ValidationError("Source and destination warehouse must be different.")
            src_level = await repos.get_stock_level(s, product.id, src.id)
            available = src_level.quantity if src_level else 0
            if src_level is None or available < quantity:
                raise ExecutionFailure(
                    f"Insufficient stock. Available: {available}, Requested: {quantity}"
                )
            dst_level = await repos.get_or_create_stock_level(s, product.id, dst.id)
            src_level.quantity -= quantity
            dst_level.quantity += quantity
            repos.record_movement(
                s,
                product_id=product.id,
                warehouse_id=src.id,
                quantity=-quantity,
                movement_type="transfer",
                reason=f"Transfer to {dst.id}: {reason}",
            )
            repos.record_movement(
                s,
                product_id=product.id,
                warehouse_id=dst.id,
                quantity=quantity,
                movement_type="transfer",
                reason=f"Transfer from {src.id}: {reason}",
            )
            log.info(
                "store.transfer",
                product_id=product.id,
                from_warehouse_id=src.id,
                to_warehouse_id=dst.id,
                quantity=quantity,
            )
            return {
                "product_id": product.id,
                "product": product.name,
                "from_warehouse_id": src.id,
                "to_warehouse_id": dst.id,
                "quantity": quantity,
                "from_quantity": src_level.quantity,
                "to_quantity": dst_level.quantity,
                "reason": reason,
            }

    async def _apply_delta(
        self, product_ref: str, warehouse_ref: str, delta: int, movement_type: str, reason: str
    ) -> dict[str, Any]:
        async with self._scope() as s:
            product = await repos.require_product(s, product_ref)
            warehouse = await repos.require_warehouse(s, warehouse_ref)
            level = await repos.get_stock_level(s, product.id, warehouse.id)
            if level is None and delta < 0:
                raise ExecutionFailure("Cannot reduce stock that does not exist.")
            previous = level.quantity if level else 0
            if previous + delta < 0:
                raise ExecutionFailure(
                    f"Insufficient stock. Available: {previous}, Requested: {-delta}"
                )
            if level is None:
                level = await repos.get_or_create_stock_level(s, product.id, warehouse.id)
            level.quantity = previous + delta
            repos.record_movement(
                s,
                product_id=product.id,
                warehouse_id=warehouse.id,
                quantity=delta,
                movement_type=movement_type,
                reason=reason,
            )
            log.info(
                "store.stock_changed",
                product_id=product.id,
                warehouse_id=warehouse.id,
                delta=delta,
                movement_type=movement_type,
            )
            return {
                "product_id": product.id,
                "product": product.name,
                "warehouse_id": warehouse.id,
                "quantity_change": delta,
                "previous_quantity": previous,
                "new_quantity": level.quantity,
                "reason": reason,
            }

    async def adjust_stock(
        self, product_id: str, warehouse_id: str, quantity_change: int, reason: str
    ) -> dict[str, Any]:
        if quantity_change == 0:
            raise ValidationError("Quantity change cannot be zero.")
        return await self._apply_delta(
            product_id, warehouse_id, quantity_change, "adjustment", reason
        )

    async def add_stock(
        self, product_id: str, warehouse_id: str, quantity: int, reason: str
    ) -> dict[str, Any]:
        data = await self._apply_delta(product_id, warehouse_id, quantity, "receipt", reason)
        data["quantity"] = quantity
        return data

    async def remove_stock(
        self, product_id: str, warehouse_id: str, quantity: int, reason: str
    ) -> dict[str, Any]:
        data = await self._apply_delta(product_id, warehouse_id, -quantity, "issue", reason)
        data["quantity"] = quantity
        return data

    async def check_stock(self, product_id: str, warehouse_id: str | None = None) -> dict[str, Any]:
        async with self._scope() as s:
            product = await repos.require_product(s, product_id)
            wh_id = None
            if warehouse_id:
                wh_id = (await repos.require_warehouse(s, warehouse_id)).id
            levels = await repos.list_stock_levels(s, product_id=product.id, warehouse_id=wh_id)
            return {
                "product_id": product.id,
                "product": product.name,
                "sku": product.sku,
                "warehouse_id": wh_id,
                "total_quantity": sum(lv.quantity for lv in levels),
                "reorder_level": product.reorder_level,
                "levels": [_level_row(lv) for lv in levels],
            }

    async def search_product(self, query: str, category: str | None = None) -> dict[str, Any]:
        async with self._scope() as s:
            products = await repos.search_products(s, query, category=category)
            results = []
            for p in products:
                levels = await repos.list_stock_levels(s, product_id=p.id)
                results.append(
                    {
                        "product_id": p.id,
                        "name": p.name,
                        "sku": p.sku,
                        "category": p.category,
                        "unit_price": p.unit_price,
                        "total_stock": sum(lv.quantity for lv in levels),
                    }
                )
            return {"query": query, "category": category, "results": results}

    async def create_parts_list(
        self,
        job_number: str,
        items: list[dict[str, Any]],
        customer_name: str,
        notes: str | None = None,
    ) -> dict[str, Any]:
        async with self._scope() as s:
            resolved: list[tuple[models.Product, int]] = []
            for item in items:
                product = await repos.require_product(s, item["product_id"])
                resolved.append((product, item["quantity"]))
            customer = await repos.get_or_create_customer(s, customer_name)
            plist = models.PartsList(job_number=job_number, customer_id=customer.id, notes=notes)
            s.add(plist)
            await s.flush()
            for product, qty in resolved:
                s.add(
                    models.PartsListItem(
                        parts_list_id=plist.id, product_id=product.id, quantity=qty
                    )
                )
            log.info("store.parts_list_created", parts_list_id=plist.id, job_number=job_number)
            return {
                "parts_list_id": plist.id,
                "job_number": job_number,
                "customer_name": customer.name,
                "notes": notes,
                "status": plist.status or "draft",
                "items": [
                    {"product_id": p.id, "product": p.name, "quantity": q} for p, q in resolved
                ],
            }

    async def get_low_stock_items(
        self, threshold: int | None = None, warehouse_id: str | None = None
    ) -> dict[str, Any]:
        async with self._scope() as s:
            wh_id = None
            if warehouse_id:
                wh_id = (await repos.require_warehouse(s, warehouse_id)).id
            levels = await repos.list_stock_levels(s, warehouse_id=wh_id)
            items = []
            for lv in levels:
                limit = threshold if threshold is not None else lv.product.reorder_level
                if lv.quantity <= limit:
                    items.append(
                        {
                            **_level_row(lv),
                            "product": lv.product.name,
                            "reorder_level": lv.product.reorder_level,
                            "shortfall": max(0, lv.product.reorder_level - lv.quantity),
                        }
                    )
            return {"threshold": threshold, "warehouse_id": wh_id, "items": items}

    async def warehouse_inventory_report(self, warehouse_id: str) -> dict[str, Any]:
        async with self._scope() as s:
            wh = await repos.require_warehouse(s, warehouse_id)
            levels = await repos.list_stock_levels(s, warehouse_id=wh.id)
            items = [
                {
                    "product_id": lv.product_id,
                    "product": lv.product.name,
                    "sku": lv.product.sku,
                    "quantity": lv.quantity,
                    "unit_price": lv.product.unit_price,
                    "total_value": round(lv.quantity * lv.product.unit_price, 2),
                }
                for lv in levels
            ]
            return {
                "warehouse_id": wh.id,
                "warehouse": wh.name,
                "location": wh.location,
                "summary": {
                    "total_products": len(items),
                    "total_items": sum(i["quantity"] for i in items),
                    "total_value": round(sum(i["total_value"] for i in items), 2),
                },
                "items": items,
            }

    async def supplier_availability(self, product_id: str) -> dict[str, Any]:
        async with self._scope() as s:
            product = await repos.require_product(s, product_id)
            links = await repos.list_product_suppliers(s, product.id)
            return {
                "product_id": product.id,
                "product": product.name,
                "suppliers": [
                    {
                        "supplier_id": ps.supplier_id,
                        "supplier": ps.supplier.name,
                        "supplier_sku": ps.supplier_sku,
                        "unit_cost": ps.unit_cost,
                        "lead_time_days": ps.lead_time_days,
                        "min_order": ps.min_order,
                        "email": ps.supplier.email,
                    }
                    for ps in links
                ],
            }

    async def get_product_details(self, product_id: str) -> dict[str, Any]:
        async with self._scope() as s:
            p = await repos.require_product(s, product_id)
            levels = await repos.list_stock_levels(s, product_id=p.id)
            links = await repos.list_product_suppliers(s, p.id)
            return {
                "product_id": p.id,
                "name": p.name,
                "sku": p.sku,
                "description": p.description,
                "category": p.category,
                "unit": p.unit,
                "unit_price": p.unit_price,
                "reorder_level": p.reorder_level,
                "total_stock": sum(lv.quantity for lv in levels),
                "levels": [_level_row(lv) for lv in levels],
                "suppliers": [ps.supplier.name for ps in links],
            }
