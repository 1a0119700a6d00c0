# repos.py

from __future__ import annotations

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from Stockwright import models
from Stockwright.errors import NotFound


async def find_product(s: AsyncSession, ref: str) -> models.Product | None:
    """Look a product up by id, SKU or exact name, case-insensitively."""
    key = ref.strip().lower()
    q = await s.execute(
        select(models.Product)
        .where(
            or_(
                func.lower(models.Product.id) == key,
                func.lower(models.Product.sku) == key,
                func.lower(models.Product.name) == key,
            )
        )
        .order_by(models.Product.id)
        .limit(1)
    )
    return q.scalar_one_or_none()


async def require_product(s: AsyncSession, ref: str) -> models.Product:
    obj = await find_product(s, ref)
    if obj is None:
        raise NotFound(
            "product",
            ref,
            "Search the catalog for the right part number, or add the product first.",
        )
    return obj


async def find_warehouse(s: AsyncSession, ref: str) -> models.Warehouse | None:
    key = ref.strip().lower()
    q = await s.execute(
        select(models.Warehouse)
        .where(
            or_(
                func.lower(models.Warehouse.id) == key,
                func.lower(models.Warehouse.name) == key,
            )
        )
        .order_by(models.Warehouse.id)
        .limit(1)
    )
    return q.scalar_one_or_none()


async def require_warehouse(s: AsyncSession, ref: str) -> models.Warehouse:
    obj = await find_warehouse(s, ref)
    if obj is None:
        raise NotFound("warehouse", ref, "Check the warehouse id, or create the warehouse first.")
    return obj


async def get_stock_level(
    s: AsyncSession, product_id: str, warehouse_id: str
) -> models.StockLevel | None:
    q = await s.execute(
        select(models.StockLevel).where(
            models.StockLevel.product_id == product_id,
            models.StockLevel.warehouse_id == warehouse_id,
        )
    )
    return q.scalar_one_or_none()


async def get_or_create_stock_level(
    s: AsyncSession, product_id: str, warehouse_id: str
) -> models.StockLevel:
    obj = await get_stock_level(s, product_id, warehouse_id)
    if obj:
        return obj
    obj = models.StockLevel(product_id=product_id, warehouse_id=warehouse_id, quantity=0)
    s.add(obj)
    await s.flush()
    return obj


async def list_stock_levels(
    s: AsyncSession, *, product_id: str | None = None, warehouse_id: str | None = None
) -> list[models.StockLevel]:
    stmt = select(models.StockLevel)
    if product_id is not None:
        stmt = stmt.where(models.StockLevel.product_id == product_id)
    if warehouse_id is not None:
        stmt = stmt.where(models.StockLevel.warehouse_id == warehouse_id)
    q = await s.execute(stmt.order_by(models.StockLevel.product_id, models.StockLevel.warehouse_id))
    return list(q.scalars().all())


def record_movement(
    s: AsyncSession,
    *,
    product_id: str,
    warehouse_id: str,
    quantity: int,
    movement_type: str,
    reason: str | None,
) -> models.StockMovement:
    mv = models.StockMovement(
        product_id=product_id,
        warehouse_id=warehouse_id,
        quantity=quantity,
        movement_type=movement_type,
        reason=reason,
    )
    s.add(mv)
    return mv


async def list_movements(
    s: AsyncSession, *, product_id: str | None = None, limit: int = 50
) -> list[models.StockMovement]:
    stmt = select(models.StockMovement)
    if product_id is not None:
        stmt = stmt.where(models.StockMovement.product_id == product_id)
    q = await s.execute(stmt.order_by(models.StockMovement.id.desc()).limit(limit))
    return list(q.scalars().all())


async def search_products(
    s: AsyncSession, query: str, *, category: str | None = None, limit: int = 10
) -> list[models.Product]:
    like = f"%{query.strip().lower()}%"
    stmt = select(models.Product).where(
        models.Product.active.is_(True),
        or_(
            func.lower(models.Product.name).like(like),
            func.lower(models.Product.sku).like(like),
            func.lower(models.Product.description).like(like),
        ),
    )
    if category:
        stmt = stmt.where(func.lower(models.Product.category) == category.strip().lower())
    q = await s.execute(stmt.order_by(models.Product.name).limit(limit))
    return list(q.scalars().all())


async def list_product_suppliers(
    s: AsyncSession, product_id: str
) -> list[models.ProductSupplier]:
    q = await s.execute(
        select(models.ProductSupplier)
        .where(models.ProductSupplier.product_id == product_id)
        .order_by(models.ProductSupplier.lead_time_days)
    )
    return list(q.scalars().all())


async def get_or_create_customer(s: AsyncSession, name: str) -> models.Customer:
    key = name.strip()
    q = await s.execute(
        select(models.Customer).where(func.lower(models.Customer.name) == key.lower())
    )
    obj = q.scalar_one_or_none()
    if obj:
        return obj
    obj = models.Customer(name=key)
    s.add(obj)
    await s.flush()
    return obj
