# production_ledger/lots.py - Production lot registry
import logging
from datetime import date, datetime, timedelta

from sqlalchemy import func, insert, select
from sqlalchemy.exc import IntegrityError

from .catalog import CatalogManager
from .common import format_number, generate_lot_number, to_quantity
from .exceptions import ConcurrencyConflict, InvalidQuantity, ReferenceNotFound
from .models import Lot
from .schema import inventory_lots
from .utils.config import config
from .utils.db import run_in_transaction

logger = logging.getLogger(__name__)


class LotRegistry:
    """Create and look up immutable production lots"""

    def __init__(self, engine, settings=None, catalog=None, clock=None):
        self.engine = engine
        self.settings = settings or config
        self.catalog = catalog or CatalogManager(engine, settings)
        self.clock = clock or datetime.now

    def create_lot(self, product_id, production_date, initial_quantity,
                   production_order_id=None, expiry_date=None, conn=None) -> Lot:
        """Mint a lot for the output of one production order.

        When no expiry date is given and the product declares a shelf life,
        the expiry is the production date plus that many days.
        """
        initial_quantity = to_quantity(initial_quantity, "initial_quantity")
        if initial_quantity <= 0:
            raise InvalidQuantity(f"Lot quantity must be positive, got {initial_quantity}")
        if expiry_date is not None and expiry_date < production_date:
            raise ValueError(f"Expiry {expiry_date} is before production date {production_date}")

        def _create(c):
            product = self.catalog.get_product(product_id, conn=c)

            expiry = expiry_date
            if expiry is None and product.shelf_life_days is not None:
                expiry = production_date + timedelta(days=product.shelf_life_days)

            sequence = 1
            if production_order_id is None:
                sequence = self._manual_lot_count(c, product.id, production_date) + 1

            lot_number = generate_lot_number(
                production_date, product.sku, production_order_id,
                self.settings.lot_number_prefix, sequence,
            )
            statement = insert(inventory_lots).values(
                lot_number=lot_number,
                product_id=product.id,
                production_order_id=production_order_id,
                production_date=production_date,
                expiry_date=expiry,
                initial_quantity=initial_quantity,
                created_at=self.clock(),
            )
            if production_order_id is not None:
                result = c.execute(statement)
            else:
                try:
                    result = c.execute(statement)
                except IntegrityError as e:
                    raise ConcurrencyConflict(f"Lot number {lot_number} already taken: {e.orig}")
            return self.get_lot(result.inserted_primary_key[0], conn=c)

        lot = run_in_transaction(self.engine, _create, self.settings, conn=conn)
        logger.info(f"Created lot {lot.lot_number} ({format_number(lot.initial_quantity)} units, "
                    f"expires {lot.expiry_date or 'never'})")
        return lot

    def get_lot(self, lot_id, conn=None) -> Lot:
        row = self._fetch_one(select(inventory_lots).where(inventory_lots.c.id == lot_id), conn)
        if row is None:
            raise ReferenceNotFound("lot", lot_id)
        return Lot.from_row(row)

    def get_lot_by_number(self, lot_number, conn=None) -> Lot:
        row = self._fetch_one(
            select(inventory_lots).where(inventory_lots.c.lot_number == lot_number), conn
        )
        if row is None:
            raise ReferenceNotFound("lot", lot_number)
        return Lot.from_row(row)

    def get_lot_for_order(self, production_order_id, conn=None):
        """The lot minted by an order, or None before completion"""
        row = self._fetch_one(
            select(inventory_lots).where(inventory_lots.c.production_order_id == production_order_id),
            conn,
        )
        return Lot.from_row(row) if row is not None else None

    def list_lots(self, product_id=None, expiring_within_days=None, today=None):
        """Lots newest first; with ``expiring_within_days`` only lots expiring
        by today + N days, already expired ones included"""
        query = select(inventory_lots)

        if product_id is not None:
            query = query.where(inventory_lots.c.product_id == product_id)

        if expiring_within_days is not None:
            horizon = (today or date.today()) + timedelta(days=expiring_within_days)
            query = query.where(
                inventory_lots.c.expiry_date.is_not(None),
                inventory_lots.c.expiry_date <= horizon,
            )

        query = query.order_by(inventory_lots.c.production_date.desc(), inventory_lots.c.id.desc())

        with self.engine.connect() as conn:
            return [Lot.from_row(row) for row in conn.execute(query)]

    def _fetch_one(self, query, conn=None):
        if conn is not None:
            return conn.execute(query).first()
        with self.engine.connect() as own_conn:
            return own_conn.execute(query).first()

    def _manual_lot_count(self, conn, product_id, production_date):
        return conn.execute(
            select(func.count(inventory_lots.c.id))
            .where(inventory_lots.c.product_id == product_id)
            .where(inventory_lots.c.production_date == production_date)
            .where(inventory_lots.c.production_order_id.is_(None))
        ).scalar() or 0
