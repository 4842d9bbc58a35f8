# production_ledger/production.py - Production order state machine
import logging
from datetime import datetime
from decimal import Decimal

import pandas as pd
from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError

from .bom import BOMManager
from .catalog import CatalogManager
from .common import calculate_date_range, day_bounds, format_number, generate_order_number, to_quantity
from .exceptions import (
    ConcurrencyConflict,
    InsufficientStock,
    InvalidBOM,
    InvalidQuantity,
    InvalidTransition,
    ReferenceNotFound,
)
from .inventory import InventoryManager
from .ledger import StockLedger
from .lots import LotRegistry
from .models import Movement, MovementType, OrderStatus, ProductionOrder
from .resolver import resolve
from .schema import bom_headers, inventory_movements, production_orders, products, warehouses
from .utils.config import config
from .utils.db import run_in_transaction

logger = logging.getLogger(__name__)

REFERENCE_TYPE = "production_order"

# Allowed moves; completed and cancelled have no way out
TRANSITIONS = {
    OrderStatus.DRAFT: {OrderStatus.SCHEDULED, OrderStatus.CANCELLED},
    OrderStatus.SCHEDULED: {OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED},
    OrderStatus.IN_PROGRESS: {OrderStatus.COMPLETED},
}


class ProductionManager:
    """Drive production orders through their lifecycle.

    Starting an order consumes the BOM materials for the planned quantity;
    completing it mints a lot and books the produced quantity into stock.
    Each transition, with all of its movements, is one transaction.
    """

    def __init__(self, engine, settings=None, catalog=None, boms=None, ledger=None,
                 lots=None, inventory=None, clock=None):
        self.engine = engine
        self.settings = settings or config
        self.clock = clock or datetime.now
        self.catalog = catalog or CatalogManager(engine, settings)
        self.boms = boms or BOMManager(engine, settings, catalog=self.catalog)
        self.ledger = ledger or StockLedger(engine, settings, catalog=self.catalog, clock=self.clock)
        self.lots = lots or LotRegistry(engine, settings, catalog=self.catalog, clock=self.clock)
        self.inventory = inventory or InventoryManager(engine, settings, ledger=self.ledger)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_order(self, bom_id, warehouse_id, planned_quantity, scheduled_start=None,
                     scheduled_end=None, created_by=None, draft=False) -> ProductionOrder:
        """Create a production order in ``scheduled`` (or ``draft``) state"""
        planned_quantity = to_quantity(planned_quantity, "planned_quantity")
        if planned_quantity <= 0:
            raise InvalidQuantity(f"Planned quantity must be positive, got {planned_quantity}")
        if scheduled_start and scheduled_end and scheduled_end < scheduled_start:
            raise ValueError("Scheduled end is before scheduled start")

        status = OrderStatus.DRAFT if draft else OrderStatus.SCHEDULED

        def _create(conn):
            bom = self.boms.get_bom(bom_id, conn=conn)
            if not bom.is_active:
                raise InvalidBOM(f"BOM {bom_id} is inactive")
            self.catalog.get_warehouse(warehouse_id, conn=conn)

            now = self.clock()
            order_number = self._next_order_number(conn, now)
            try:
                result = conn.execute(insert(production_orders).values(
                    order_number=order_number,
                    bom_id=bom.id,
                    product_id=bom.product_id,
                    warehouse_id=warehouse_id,
                    planned_quantity=planned_quantity,
                    produced_quantity=Decimal("0"),
                    waste_quantity=Decimal("0"),
                    status=status.value,
                    scheduled_start=scheduled_start,
                    scheduled_end=scheduled_end,
                    created_by=created_by,
                    created_at=now,
                    updated_at=now,
                ))
            except IntegrityError as e:
                raise ConcurrencyConflict(f"Order number {order_number} already taken: {e.orig}")

            return self._get_order(conn, result.inserted_primary_key[0])

        order = run_in_transaction(self.engine, _create, self.settings)
        logger.info(f"Created production order {order.order_number} "
                    f"({format_number(order.planned_quantity)} of product {order.product_id}, {order.status})")
        return order

    def transition_order(self, order_id, target_status, produced_quantity=None,
                         waste_quantity=None) -> ProductionOrder:
        """Move an order to ``target_status`` and apply the ledger effects.

        scheduled -> in_progress writes one production_consume movement per
        BOM line; in_progress -> completed mints a lot and writes one
        production_output movement. Cancelling draft or scheduled orders and
        releasing drafts only change the status. Anything else raises
        InvalidTransition without writing.
        """

        def _transition(conn):
            order = self._get_order(conn, order_id)
            current = OrderStatus(order.status)
            try:
                target = OrderStatus(target_status)
            except ValueError:
                raise InvalidTransition(order_id, current.value, target_status)

            if target not in TRANSITIONS.get(current, ()):
                raise InvalidTransition(order_id, current.value, target.value)

            if produced_quantity is not None or waste_quantity is not None:
                order = self._apply_output(conn, order, produced_quantity, waste_quantity)

            if target == OrderStatus.IN_PROGRESS:
                self._start(conn, order)
            elif target == OrderStatus.COMPLETED:
                self._complete(conn, order)
            else:
                self._set_status(conn, order, target)

            return self._get_order(conn, order_id)

        try:
            order = run_in_transaction(self.engine, _transition, self.settings)
        except InvalidTransition as e:
            logger.warning(f"Rejected transition: {e}")
            raise
        except Exception as e:
            logger.error(f"Error moving order {order_id} to {target_status}: {e}")
            raise

        logger.info(f"Order {order.order_number} is now {order.status}")
        return order

    def record_output(self, order_id, produced_quantity=None, waste_quantity=None) -> ProductionOrder:
        """Record operator-entered produced and waste quantities"""

        def _record(conn):
            order = self._get_order(conn, order_id)
            self._apply_output(conn, order, produced_quantity, waste_quantity)
            return self._get_order(conn, order_id)

        order = run_in_transaction(self.engine, _record, self.settings)
        logger.info(f"Order {order.order_number}: produced {format_number(order.produced_quantity)}, "
                    f"waste {format_number(order.waste_quantity)}")
        return order

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_order(self, order_id) -> ProductionOrder:
        with self.engine.connect() as conn:
            return self._get_order(conn, order_id)

    def get_order_movements(self, order_id):
        """Ledger movements written by an order, newest first"""
        return self.ledger.history(reference_type=REFERENCE_TYPE, reference_id=order_id)

    def get_orders(self, status=None, from_date=None, to_date=None):
        """Get production orders with filters"""
        query = (
            select(
                production_orders.c.id,
                production_orders.c.order_number,
                production_orders.c.status,
                production_orders.c.planned_quantity,
                production_orders.c.produced_quantity,
                production_orders.c.waste_quantity,
                products.c.name.label("product_name"),
                products.c.sku.label("product_sku"),
                products.c.unit_of_measure,
                bom_headers.c.name.label("bom_name"),
                bom_headers.c.version.label("bom_version"),
                warehouses.c.name.label("warehouse_name"),
                production_orders.c.scheduled_start,
                production_orders.c.actual_start,
                production_orders.c.actual_end,
                production_orders.c.created_at,
            )
            .join(products, production_orders.c.product_id == products.c.id)
            .join(bom_headers, production_orders.c.bom_id == bom_headers.c.id)
            .join(warehouses, production_orders.c.warehouse_id == warehouses.c.id)
        )

        if status:
            query = query.where(production_orders.c.status == OrderStatus(status).value)

        if from_date:
            query = query.where(production_orders.c.created_at >= day_bounds(from_date, from_date)[0])

        if to_date:
            query = query.where(production_orders.c.created_at < day_bounds(to_date, to_date)[1])

        query = query.order_by(production_orders.c.created_at.desc(), production_orders.c.id.desc())

        with self.engine.connect() as conn:
            return pd.read_sql(query, conn)

    def get_order_materials(self, order_id):
        """Materials an order needs, what is on hand, and what it already consumed"""
        with self.engine.connect() as conn:
            order = self._get_order(conn, order_id)
            bom = self.boms.get_bom(order.bom_id, conn=conn)
            requirements = resolve(bom, order.planned_quantity)
            materials = self.inventory.check_stock_availability(requirements, order.warehouse_id, conn=conn)

            consumed = {
                row.product_id: -row.total
                for row in conn.execute(
                    select(
                        inventory_movements.c.product_id,
                        func.sum(inventory_movements.c.quantity).label("total"),
                    )
                    .where(inventory_movements.c.reference_type == REFERENCE_TYPE)
                    .where(inventory_movements.c.reference_id == order_id)
                    .where(inventory_movements.c.movement_type == MovementType.PRODUCTION_CONSUME.value)
                    .group_by(inventory_movements.c.product_id)
                )
            }
            names = {
                row.id: row.name
                for row in conn.execute(
                    select(products.c.id, products.c.name)
                    .where(products.c.id.in_([r.material_product_id for r in requirements]))
                )
            }

        materials.insert(1, "material_name", materials["material_id"].map(names))
        materials["consumed"] = [consumed.get(m, Decimal("0")) for m in materials["material_id"]]
        return materials

    def get_production_summary(self, start_date=None, end_date=None):
        """Get production summary statistics"""
        if start_date is None or end_date is None:
            start_date, end_date = calculate_date_range("month", self.clock().date())
        start, end = day_bounds(start_date, end_date)

        query = (
            select(
                production_orders.c.status,
                production_orders.c.planned_quantity,
                production_orders.c.produced_quantity,
                production_orders.c.waste_quantity,
            )
            .where(production_orders.c.created_at >= start)
            .where(production_orders.c.created_at < end)
        )

        with self.engine.connect() as conn:
            orders = pd.read_sql(query, conn)

        counts = orders["status"].value_counts().to_dict()
        completed = orders[orders["status"] == OrderStatus.COMPLETED.value]

        # read_sql hands quantities back as floats; fine for a dashboard
        total_output = float(completed["produced_quantity"].astype(float).sum())
        total_waste = float(completed["waste_quantity"].astype(float).sum())
        total_planned = float(completed["planned_quantity"].astype(float).sum())
        total_orders = len(orders)

        return {
            "total_orders": total_orders,
            "draft_orders": counts.get(OrderStatus.DRAFT.value, 0),
            "scheduled_orders": counts.get(OrderStatus.SCHEDULED.value, 0),
            "in_progress_orders": counts.get(OrderStatus.IN_PROGRESS.value, 0),
            "completed_orders": counts.get(OrderStatus.COMPLETED.value, 0),
            "cancelled_orders": counts.get(OrderStatus.CANCELLED.value, 0),
            "total_output": total_output,
            "total_waste": total_waste,
            "completion_rate": round(len(completed) * 100.0 / total_orders, 1) if total_orders else 0.0,
            "yield_rate": round(total_output * 100.0 / total_planned, 1) if total_planned else 0.0,
        }

    def get_material_consumption(self, start_date, end_date, warehouse_id=None):
        """Get material consumption report"""
        start, end = day_bounds(start_date, end_date)
        query = (
            select(
                products.c.id.label("material_id"),
                products.c.name.label("material_name"),
                (-func.sum(inventory_movements.c.quantity)).label("total_consumed"),
                products.c.unit_of_measure,
                func.count(func.distinct(inventory_movements.c.reference_id)).label("order_count"),
            )
            .select_from(inventory_movements)
            .join(products, inventory_movements.c.product_id == products.c.id)
            .where(inventory_movements.c.movement_type == MovementType.PRODUCTION_CONSUME.value)
            .where(inventory_movements.c.created_at >= start)
            .where(inventory_movements.c.created_at < end)
        )

        if warehouse_id is not None:
            query = query.where(inventory_movements.c.warehouse_id == warehouse_id)

        query = (
            query.group_by(products.c.id, products.c.name, products.c.unit_of_measure)
            .order_by((-func.sum(inventory_movements.c.quantity)).desc())
        )

        with self.engine.connect() as conn:
            return pd.read_sql(query, conn)

    # ------------------------------------------------------------------
    # Transition steps (run inside the caller's transaction)
    # ------------------------------------------------------------------

    def _start(self, conn, order):
        bom = self.boms.get_bom(order.bom_id, conn=conn)
        self.catalog.get_warehouse(order.warehouse_id, conn=conn)
        requirements = resolve(bom, order.planned_quantity)

        # Every reference must resolve before the first movement is written
        for requirement in requirements:
            self.catalog.get_product(requirement.material_product_id, conn=conn)

        if not self.settings.allow_negative_stock:
            availability = self.inventory.check_stock_availability(requirements, order.warehouse_id, conn=conn)
            short = availability[~availability["sufficient"].astype(bool)]
            if not short.empty:
                raise InsufficientStock(order.warehouse_id, short.to_dict("records"))

        now = self.clock()
        self._set_status(conn, order, OrderStatus.IN_PROGRESS, actual_start=now)

        movements = []
        for requirement in requirements:
            if requirement.required_quantity == 0:
                logger.warning(f"Order {order.order_number}: requirement for material "
                               f"{requirement.material_product_id} rounds to zero, skipped")
                continue
            movements.append(Movement(
                movement_type=MovementType.PRODUCTION_CONSUME.value,
                warehouse_id=order.warehouse_id,
                product_id=requirement.material_product_id,
                lot_id=None,
                quantity=-requirement.required_quantity,
                reference_type=REFERENCE_TYPE,
                reference_id=order.id,
                created_by=order.created_by,
                notes=f"Consumed by {order.order_number}",
            ))

        self.ledger.append_movements(movements, conn=conn)
        logger.info(f"Order {order.order_number}: consumed {len(movements)} material(s) "
                    f"for {format_number(order.planned_quantity)} planned")

    def _complete(self, conn, order):
        if order.produced_quantity <= 0:
            raise InvalidQuantity(
                f"Order {order.order_number} needs a positive produced quantity before completion"
            )

        now = self.clock()
        self._set_status(conn, order, OrderStatus.COMPLETED, actual_end=now)

        lot = self.lots.create_lot(
            product_id=order.product_id,
            production_date=now.date(),
            initial_quantity=order.produced_quantity,
            production_order_id=order.id,
            conn=conn,
        )
        # Waste is recorded on the order only; its material left stock at start
        self.ledger.append_movement(Movement(
            movement_type=MovementType.PRODUCTION_OUTPUT.value,
            warehouse_id=order.warehouse_id,
            product_id=order.product_id,
            lot_id=lot.id,
            quantity=order.produced_quantity,
            reference_type=REFERENCE_TYPE,
            reference_id=order.id,
            created_by=order.created_by,
            notes=f"Output of {order.order_number}",
        ), conn=conn)

    def _apply_output(self, conn, order, produced_quantity, waste_quantity):
        if OrderStatus(order.status).is_terminal:
            raise InvalidTransition(order.id, order.status, "output update")

        values = {}
        if produced_quantity is not None:
            values["produced_quantity"] = to_quantity(produced_quantity, "produced_quantity")
            if values["produced_quantity"] < 0:
                raise InvalidQuantity("Produced quantity cannot be negative")
        if waste_quantity is not None:
            values["waste_quantity"] = to_quantity(waste_quantity, "waste_quantity")
            if values["waste_quantity"] < 0:
                raise InvalidQuantity("Waste quantity cannot be negative")

        if values:
            self._guarded_update(conn, order, order.status, **values)
        return self._get_order(conn, order.id)

    def _set_status(self, conn, order, target, **values):
        self._guarded_update(conn, order, target.value, status=target.value, **values)

    def _guarded_update(self, conn, order, target, **values):
        """Update the order only if its status is still the one we read"""
        result = conn.execute(
            update(production_orders)
            .where(production_orders.c.id == order.id)
            .where(production_orders.c.status == order.status)
            .values(updated_at=self.clock(), **values)
        )
        if result.rowcount != 1:
            current = self._get_order(conn, order.id)
            raise InvalidTransition(order.id, current.status, target)

    def _get_order(self, conn, order_id):
        row = conn.execute(
            select(production_orders).where(production_orders.c.id == order_id)
        ).first()
        if row is None:
            raise ReferenceNotFound("production order", order_id)
        return ProductionOrder.from_row(row)

    def _next_order_number(self, conn, now):
        prefix = f"{self.settings.order_number_prefix}-{now:%Y%m%d}-"
        issued = conn.execute(
            select(func.count(production_orders.c.id))
            .where(production_orders.c.order_number.like(f"{prefix}%"))
        ).scalar()
        return generate_order_number(now.date(), (issued or 0) + 1, self.settings.order_number_prefix)
