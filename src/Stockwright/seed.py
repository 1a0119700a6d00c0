# seed.py
"""Small demo inventory so a fresh database can be exercised from the CLI."""

from __future__ import annotations

import structlog
from sqlalchemy import func, select

from Stockwright import models
from Stockwright.db import session_scope

log = structlog.get_logger()

WAREHOUSES = [
    ("warehouse-1", "Main Warehouse", "Unit 4, Dock Road"),
    ("warehouse-2", "Overflow Store", "Unit 9, Dock Road"),
    ("bay-3", "Van Bay 3", None),
]

PRODUCTS = [
    # id, sku, name, category, unit_price, reorder_level
    ("widget-A", "WID-A", "Widget A", "widgets", 2.50, 20),
    ("bolts", "BLT-M8", "M8 Bolts", "fixings", 0.12, 200),
    ("hinges", "HNG-75", "75mm Hinges", "hardware", 1.80, 30),
    ("copper-15", "CU-15", "15mm Copper Fitting", "plumbing", 0.95, 50),
]

LEVELS = [
    ("widget-A", "warehouse-1", 100),
    ("widget-A", "warehouse-2", 15),
    ("bolts", "warehouse-1", 500),
    ("hinges", "warehouse-2", 12),
    ("copper-15", "bay-3", 40),
]

SUPPLIERS = [
    ("acme", "Acme Supplies", "orders@acme.example"),
    ("fixco", "FixCo Ltd", "sales@fixco.example"),
]

PRODUCT_SUPPLIERS = [
    # product, supplier, supplier_sku, unit_cost, lead_time_days, min_order
    ("widget-A", "acme", "AC-WA", 1.60, 3, 10),
    ("widget-A", "fixco", "FX-200", 1.75, 1, 1),
    ("bolts", "fixco", "FX-M8", 0.05, 2, 100),
]


async def seed_demo_data() -> bool:
    """Insert the demo rows unless products already exist. Returns True if seeded."""
    async with session_scope() as s:
        existing = (await s.execute(select(func.count(models.Product.id)))).scalar_one()
        if existing:
            log.info("seed.skipped", products=existing)
            return False
        for wid, name, location in WAREHOUSES:
            s.add(models.Warehouse(id=wid, name=name, location=location))
        for pid, sku, name, category, price, reorder in PRODUCTS:
            s.add(
                models.Product(
                    id=pid,
                    sku=sku,
                    name=name,
                    category=category,
                    unit_price=price,
                    reorder_level=reorder,
                )
            )
        for sid, name, email in SUPPLIERS:
            s.add(models.Supplier(id=sid, name=name, email=email))
        await s.flush()
        for pid, wid, qty in LEVELS:
            s.add(models.StockLevel(product_id=pid, warehouse_id=wid, quantity=qty))
        for pid, sid, ssku, cost, lead, min_order in PRODUCT_SUPPLIERS:
            s.add(
                models.ProductSupplier(
                    product_id=pid,
                    supplier_id=sid,
                    supplier_sku=ssku,
                    unit_cost=cost,
                    lead_time_days=lead,
                    min_order=min_order,
                )
            )
    log.info("seed.completed", products=len(PRODUCTS), warehouses=len(WAREHOUSES))
    return True
