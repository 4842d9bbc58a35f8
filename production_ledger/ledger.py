# production_ledger/ledger.py - Append-only stock ledger with materialized on-hand
import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from .catalog import CatalogManager
from .common import format_number, to_quantity
from .exceptions import ConcurrencyConflict, InvalidQuantity, ReferenceNotFound
from .models import Movement, MovementType, StockEntry
from .schema import inventory_lots, inventory_movements, inventory_stock
from .utils.config import config
from .utils.db import run_in_transaction

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class StockLedger:
    """The ledger of record for inventory.

    Every quantity change is an appended movement row. The inventory_stock
    table is derived from those rows: each append adjusts the matching entry
    with a single ``quantity = quantity + delta`` statement in the same
    transaction, so on-hand never lags the log and concurrent writers cannot
    lose each other's deltas.

    The ledger records what happened; it does not refuse outflows that take
    an entry below zero.
    """

    def __init__(self, engine, settings=None, catalog=None, clock=None):
        self.engine = engine
        self.settings = settings or config
        self.catalog = catalog or CatalogManager(engine, settings)
        self.clock = clock or datetime.now

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append_movement(self, movement: Movement, conn=None) -> StockEntry:
        """Append one movement and return the updated stock entry for its key"""
        return run_in_transaction(
            self.engine, lambda c: self._append(c, movement), self.settings, conn=conn
        )

    def append_movements(self, movements, conn=None):
        """Append several movements as one unit of work, all or nothing"""
        movements = list(movements)

        def _append_all(c):
            return [self._append(c, movement) for movement in movements]

        return run_in_transaction(self.engine, _append_all, self.settings, conn=conn)

    def record_receipt(self, warehouse_id, product_id, quantity, lot_id=None,
                       reference_type=None, reference_id=None, created_by=None, notes=None):
        """Record a purchase receipt (inbound only)"""
        quantity = to_quantity(quantity)
        if quantity <= 0:
            raise InvalidQuantity(f"Receipt quantity must be positive, got {quantity}")

        return self.append_movement(Movement(
            movement_type=MovementType.PURCHASE.value,
            warehouse_id=warehouse_id,
            product_id=product_id,
            lot_id=lot_id,
            quantity=quantity,
            reference_type=reference_type,
            reference_id=reference_id,
            created_by=created_by,
            notes=notes,
        ))

    def record_adjustment(self, warehouse_id, product_id, quantity, lot_id=None,
                          created_by=None, notes=None):
        """Record a signed manual adjustment, e.g. after a physical count"""
        return self.append_movement(Movement(
            movement_type=MovementType.ADJUSTMENT.value,
            warehouse_id=warehouse_id,
            product_id=product_id,
            lot_id=lot_id,
            quantity=quantity,
            created_by=created_by,
            notes=notes,
        ))

    def transfer(self, from_warehouse_id, to_warehouse_id, product_id, quantity,
                 lot_id=None, created_by=None, notes=None):
        """Move stock between warehouses; both legs commit together"""
        quantity = to_quantity(quantity)
        if quantity <= 0:
            raise InvalidQuantity(f"Transfer quantity must be positive, got {quantity}")
        if from_warehouse_id == to_warehouse_id:
            raise InvalidQuantity("Transfer source and destination are the same warehouse")

        legs = [
            Movement(
                movement_type=MovementType.TRANSFER.value,
                warehouse_id=warehouse_id,
                product_id=product_id,
                lot_id=lot_id,
                quantity=signed,
                created_by=created_by,
                notes=notes,
            )
            for warehouse_id, signed in ((from_warehouse_id, -quantity), (to_warehouse_id, quantity))
        ]
        outbound, inbound = self.append_movements(legs)
        logger.info(f"Transferred {format_number(quantity)} of product {product_id} "
                    f"from warehouse {from_warehouse_id} to {to_warehouse_id}")
        return outbound, inbound

    def rebuild_stock(self):
        """Recompute every stock entry from the ledger; returns the number of keys touched"""

        def _rebuild(conn):
            now = self.clock()
            totals = self._ledger_totals(conn)
            touched = 0

            for key, total in totals.items():
                warehouse_id, product_id, lot_id = key
                result = conn.execute(
                    update(inventory_stock)
                    .where(self._key_clause(warehouse_id, product_id, lot_id))
                    .values(quantity=total, version=inventory_stock.c.version + 1, updated_at=now)
                )
                if result.rowcount == 0:
                    self._insert_entry(conn, warehouse_id, product_id, lot_id, total, now)
                touched += 1

            # Entries with no movements behind them hold nothing
            for entry in self._stock_entries(conn):
                if (entry.warehouse_id, entry.product_id, entry.lot_id) not in totals:
                    conn.execute(
                        update(inventory_stock)
                        .where(self._key_clause(entry.warehouse_id, entry.product_id, entry.lot_id))
                        .values(quantity=ZERO, version=inventory_stock.c.version + 1, updated_at=now)
                    )
                    touched += 1

            return touched

        touched = run_in_transaction(self.engine, _rebuild, self.settings)
        logger.info(f"Rebuilt {touched} stock entries from the ledger")
        return touched

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def current_stock(self, warehouse_id, product_id, lot_id=None, conn=None) -> Decimal:
        """On-hand for one key; zero if nothing was ever recorded"""
        query = select(inventory_stock.c.quantity).where(
            self._key_clause(warehouse_id, product_id, lot_id)
        )
        quantity = self._scalar(query, conn)
        return quantity if quantity is not None else ZERO

    def get_stock(self, warehouse_id=None, product_id=None, lot_id=None, conn=None):
        """Stock entries matching the given filters"""
        query = select(inventory_stock)
        if warehouse_id is not None:
            query = query.where(inventory_stock.c.warehouse_id == warehouse_id)
        if product_id is not None:
            query = query.where(inventory_stock.c.product_id == product_id)
        if lot_id is not None:
            query = query.where(inventory_stock.c.lot_id == lot_id)
        query = query.order_by(
            inventory_stock.c.warehouse_id, inventory_stock.c.product_id, inventory_stock.c.lot_key
        )

        if conn is not None:
            return [StockEntry.from_row(row) for row in conn.execute(query)]
        with self.engine.connect() as own_conn:
            return [StockEntry.from_row(row) for row in own_conn.execute(query)]

    def ledger_quantity(self, warehouse_id, product_id, lot_id=None, conn=None) -> Decimal:
        """Sum of all movements for one key"""
        lot_clause = (
            inventory_movements.c.lot_id.is_(None)
            if lot_id is None
            else inventory_movements.c.lot_id == lot_id
        )
        query = select(func.sum(inventory_movements.c.quantity)).where(
            inventory_movements.c.warehouse_id == warehouse_id,
            inventory_movements.c.product_id == product_id,
            lot_clause,
        )
        total = self._scalar(query, conn)
        return total if total is not None else ZERO

    def history(self, warehouse_id=None, product_id=None, reference_type=None,
                reference_id=None, movement_type=None, lot_id=None, limit=None, conn=None):
        """Movements matching the filters, newest first"""
        query = select(inventory_movements)
        if warehouse_id is not None:
            query = query.where(inventory_movements.c.warehouse_id == warehouse_id)
        if product_id is not None:
            query = query.where(inventory_movements.c.product_id == product_id)
        if reference_type is not None:
            query = query.where(inventory_movements.c.reference_type == reference_type)
        if reference_id is not None:
            query = query.where(inventory_movements.c.reference_id == reference_id)
        if movement_type is not None:
            query = query.where(inventory_movements.c.movement_type == MovementType(movement_type).value)
        if lot_id is not None:
            query = query.where(inventory_movements.c.lot_id == lot_id)

        query = query.order_by(inventory_movements.c.created_at.desc(), inventory_movements.c.id.desc())
        if limit:
            query = query.limit(limit)

        if conn is not None:
            return [Movement.from_row(row) for row in conn.execute(query)]
        with self.engine.connect() as own_conn:
            return [Movement.from_row(row) for row in own_conn.execute(query)]

    def reconcile(self):
        """Keys whose materialized quantity disagrees with the ledger sum"""
        with self.engine.connect() as conn:
            totals = self._ledger_totals(conn)
            entries = {
                (e.warehouse_id, e.product_id, e.lot_id): e.quantity
                for e in self._stock_entries(conn)
            }

        mismatches = []
        for key in sorted(set(totals) | set(entries), key=lambda k: (k[0], k[1], k[2] or 0)):
            ledger_qty = totals.get(key, ZERO)
            stock_qty = entries.get(key, ZERO)
            if ledger_qty != stock_qty:
                warehouse_id, product_id, lot_id = key
                mismatches.append({
                    "warehouse_id": warehouse_id,
                    "product_id": product_id,
                    "lot_id": lot_id,
                    "stock_quantity": stock_qty,
                    "ledger_quantity": ledger_qty,
                })

        if mismatches:
            logger.warning(f"Ledger reconciliation found {len(mismatches)} mismatched key(s)")
        return mismatches

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _append(self, conn, movement):
        movement_type = MovementType(movement.movement_type)
        quantity = to_quantity(movement.quantity)
        if quantity == 0:
            raise InvalidQuantity("Movement quantity must be nonzero")

        self.catalog.get_warehouse(movement.warehouse_id, conn=conn)
        self.catalog.get_product(movement.product_id, conn=conn)
        if movement.lot_id is not None:
            lot_product = conn.execute(
                select(inventory_lots.c.product_id).where(inventory_lots.c.id == movement.lot_id)
            ).scalar()
            if lot_product is None:
                raise ReferenceNotFound("lot", movement.lot_id)
            if lot_product != movement.product_id:
                raise ReferenceNotFound(f"lot for product {movement.product_id}", movement.lot_id)

        now = self.clock()
        result = conn.execute(insert(inventory_movements).values(
            movement_type=movement_type.value,
            warehouse_id=movement.warehouse_id,
            product_id=movement.product_id,
            lot_id=movement.lot_id,
            quantity=quantity,
            reference_type=movement.reference_type,
            reference_id=movement.reference_id,
            notes=movement.notes,
            created_by=movement.created_by,
            created_at=now,
        ))

        key_clause = self._key_clause(movement.warehouse_id, movement.product_id, movement.lot_id)
        updated = conn.execute(
            update(inventory_stock)
            .where(key_clause)
            .values(
                quantity=inventory_stock.c.quantity + quantity,
                version=inventory_stock.c.version + 1,
                updated_at=now,
            )
        )
        if updated.rowcount == 0:
            self._insert_entry(conn, movement.warehouse_id, movement.product_id,
                               movement.lot_id, quantity, now)

        entry = StockEntry.from_row(conn.execute(select(inventory_stock).where(key_clause)).one())
        logger.debug(f"Movement {result.inserted_primary_key[0]} {movement_type.value} "
                     f"{format_number(quantity, 6)} -> wh={entry.warehouse_id} "
                     f"product={entry.product_id} lot={entry.lot_id} on hand {format_number(entry.quantity, 6)}")
        return entry

    def _insert_entry(self, conn, warehouse_id, product_id, lot_id, quantity, now):
        try:
            conn.execute(insert(inventory_stock).values(
                warehouse_id=warehouse_id,
                product_id=product_id,
                lot_id=lot_id,
                lot_key=lot_id or 0,
                quantity=quantity,
                version=1,
                updated_at=now,
            ))
        except IntegrityError as e:
            # A concurrent writer created the entry first; redo the whole unit
            raise ConcurrencyConflict(f"Stock entry created concurrently: {e.orig}")

    @staticmethod
    def _key_clause(warehouse_id, product_id, lot_id):
        return and_(
            inventory_stock.c.warehouse_id == warehouse_id,
            inventory_stock.c.product_id == product_id,
            inventory_stock.c.lot_key == (lot_id or 0),
        )

    def _ledger_totals(self, conn):
        query = select(
            inventory_movements.c.warehouse_id,
            inventory_movements.c.product_id,
            inventory_movements.c.lot_id,
            func.sum(inventory_movements.c.quantity).label("total"),
        ).group_by(
            inventory_movements.c.warehouse_id,
            inventory_movements.c.product_id,
            inventory_movements.c.lot_id,
        )
        return {
            (row.warehouse_id, row.product_id, row.lot_id): row.total
            for row in conn.execute(query)
        }

    def _stock_entries(self, conn):
        return [StockEntry.from_row(row) for row in conn.execute(select(inventory_stock))]

    def _scalar(self, query, conn=None):
        if conn is not None:
            return conn.execute(query).scalar()
        with self.engine.connect() as own_conn:
            return own_conn.execute(query).scalar()
