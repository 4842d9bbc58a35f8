# production_ledger/inventory.py - Inventory views over the ledger
import logging
from decimal import Decimal

import pandas as pd
from sqlalchemy import case, func, select, type_coerce

from .common import day_bounds, export_to_excel
from .ledger import StockLedger
from .models import MovementType
from .schema import Quantity, inventory_lots, inventory_movements, inventory_stock, products, warehouses
from .utils.config import config

logger = logging.getLogger(__name__)


class InventoryManager:
    """Read-side reports for inventory screens and dashboards"""

    def __init__(self, engine, settings=None, ledger=None):
        self.engine = engine
        self.settings = settings or config
        self.ledger = ledger or StockLedger(engine, settings)

    def get_stock_summary(self, warehouse_id=None):
        """Current stock per (warehouse, product, lot) with display names"""
        query = (
            select(
                warehouses.c.id.label("warehouse_id"),
                warehouses.c.name.label("warehouse"),
                products.c.id.label("product_id"),
                products.c.sku,
                products.c.name.label("product_name"),
                products.c.type.label("product_type"),
                inventory_lots.c.lot_number,
                inventory_stock.c.quantity,
                products.c.unit_of_measure,
                products.c.reorder_point,
                inventory_stock.c.updated_at,
            )
            .select_from(inventory_stock)
            .join(warehouses, inventory_stock.c.warehouse_id == warehouses.c.id)
            .join(products, inventory_stock.c.product_id == products.c.id)
            .outerjoin(inventory_lots, inventory_stock.c.lot_id == inventory_lots.c.id)
        )

        if warehouse_id is not None:
            query = query.where(inventory_stock.c.warehouse_id == warehouse_id)

        query = query.order_by(warehouses.c.name, products.c.name, inventory_stock.c.lot_key)

        with self.engine.connect() as conn:
            return pd.read_sql(query, conn)

    def get_low_stock_items(self, warehouse_id=None):
        """Products whose on-hand in a warehouse, all lots together, is at or
        below the product's reorder point"""
        on_hand = func.sum(inventory_stock.c.quantity)
        shortage = type_coerce(products.c.reorder_point - on_hand, Quantity)
        query = (
            select(
                warehouses.c.name.label("warehouse"),
                products.c.id.label("product_id"),
                products.c.name.label("product_name"),
                on_hand.label("current_stock"),
                products.c.reorder_point,
                shortage.label("shortage"),
            )
            .select_from(inventory_stock)
            .join(warehouses, inventory_stock.c.warehouse_id == warehouses.c.id)
            .join(products, inventory_stock.c.product_id == products.c.id)
            .group_by(warehouses.c.name, products.c.id, products.c.name, products.c.reorder_point)
            .having(on_hand <= products.c.reorder_point)
            .order_by(shortage.desc())
        )

        if warehouse_id is not None:
            query = query.where(inventory_stock.c.warehouse_id == warehouse_id)

        with self.engine.connect() as conn:
            return pd.read_sql(query, conn)

    def check_stock_availability(self, requirements, warehouse_id, conn=None):
        """Compare required quantities with the lot-agnostic on-hand entry.

        Consumption is written against the entry without a lot, so that is
        the figure checked here.
        """
        availability = []

        for requirement in requirements:
            available = self.ledger.current_stock(
                warehouse_id, requirement.material_product_id, conn=conn
            )
            shortage = max(requirement.required_quantity - available, Decimal("0"))
            availability.append({
                "material_id": requirement.material_product_id,
                "required": requirement.required_quantity,
                "available": available,
                "shortage": shortage,
                "sufficient": shortage == 0,
                "unit_of_measure": requirement.unit_of_measure,
            })

        return pd.DataFrame(
            availability,
            columns=["material_id", "required", "available", "shortage", "sufficient", "unit_of_measure"],
        )

    def get_movements(self, warehouse_id=None, product_id=None, movement_type=None,
                      reference_type=None, reference_id=None, limit=None):
        """Movement history with display names, newest first"""
        query = (
            select(
                inventory_movements.c.id,
                inventory_movements.c.created_at,
                inventory_movements.c.movement_type,
                warehouses.c.name.label("warehouse"),
                products.c.sku,
                products.c.name.label("product_name"),
                inventory_lots.c.lot_number,
                inventory_movements.c.quantity,
                inventory_movements.c.reference_type,
                inventory_movements.c.reference_id,
                inventory_movements.c.created_by,
                inventory_movements.c.notes,
            )
            .select_from(inventory_movements)
            .join(warehouses, inventory_movements.c.warehouse_id == warehouses.c.id)
            .join(products, inventory_movements.c.product_id == products.c.id)
            .outerjoin(inventory_lots, inventory_movements.c.lot_id == inventory_lots.c.id)
        )

        if warehouse_id is not None:
            query = query.where(inventory_movements.c.warehouse_id == warehouse_id)
        if product_id is not None:
            query = query.where(inventory_movements.c.product_id == product_id)
        if movement_type is not None:
            query = query.where(inventory_movements.c.movement_type == MovementType(movement_type).value)
        if reference_type is not None:
            query = query.where(inventory_movements.c.reference_type == reference_type)
        if reference_id is not None:
            query = query.where(inventory_movements.c.reference_id == reference_id)

        query = (
            query.order_by(inventory_movements.c.created_at.desc(), inventory_movements.c.id.desc())
            .limit(limit or self.settings.movement_history_limit)
        )

        with self.engine.connect() as conn:
            return pd.read_sql(query, conn)

    def get_production_impact(self, start_date, end_date):
        """Produced, consumed and net change per product from production movements"""
        start, end = day_bounds(start_date, end_date)
        qty = inventory_movements.c.quantity
        mtype = inventory_movements.c.movement_type

        produced = func.sum(type_coerce(
            case((mtype == MovementType.PRODUCTION_OUTPUT.value, qty), else_=0), Quantity
        ))
        consumed = func.sum(type_coerce(
            case((mtype == MovementType.PRODUCTION_CONSUME.value, -qty), else_=0), Quantity
        ))

        query = (
            select(
                products.c.id.label("product_id"),
                products.c.name.label("product_name"),
                produced.label("produced"),
                consumed.label("consumed"),
                func.sum(qty).label("net_change"),
            )
            .select_from(inventory_movements)
            .join(products, inventory_movements.c.product_id == products.c.id)
            .where(mtype.in_([MovementType.PRODUCTION_OUTPUT.value, MovementType.PRODUCTION_CONSUME.value]))
            .where(inventory_movements.c.created_at >= start)
            .where(inventory_movements.c.created_at < end)
            .group_by(products.c.id, products.c.name)
            .order_by(products.c.name)
        )

        with self.engine.connect() as conn:
            return pd.read_sql(query, conn)

    def export_movements(self, output=None, **filters):
        """Write movements and current stock to an Excel audit workbook"""
        movements = self.get_movements(**filters)
        stock = self.get_stock_summary(filters.get("warehouse_id"))
        logger.info(f"Exporting {len(movements)} movement(s) to Excel")
        return export_to_excel({"Movements": movements, "Stock": stock}, output)
