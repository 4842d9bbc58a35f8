# production_ledger/bom.py - Bill of Materials registry
import logging
from datetime import datetime

import pandas as pd
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from .catalog import CatalogManager
from .common import to_quantity
from .exceptions import ConcurrencyConflict, InvalidBOM, InvalidQuantity, ReferenceNotFound
from .models import BOM, BOMLine, OrderStatus, ProductType
from .schema import bom_headers, bom_lines, production_orders, products
from .utils.db import run_in_transaction

logger = logging.getLogger(__name__)


class BOMManager:
    """Manage versioned Bill of Materials.

    A BOM is a header (finished product, batch size) plus a line set of
    (material, quantity per batch). Lines are never edited individually:
    every save replaces the whole set inside one transaction.
    """

    def __init__(self, engine, settings=None, catalog=None):
        self.engine = engine
        self.settings = settings
        self.catalog = catalog or CatalogManager(engine, settings)

    def create_bom(self, header, lines):
        """Create a new BOM version for the header's product and return it"""

        def _create(conn):
            values, line_values = self._validate(conn, header, lines)
            version = self._next_version(conn, values["product_id"])

            try:
                result = conn.execute(insert(bom_headers).values(
                    version=version,
                    created_at=datetime.now(),
                    **values
                ))
            except IntegrityError as e:
                # Another writer took this version number
                raise ConcurrencyConflict(f"BOM version {version} already taken: {e.orig}")

            bom_id = result.inserted_primary_key[0]
            self._insert_lines(conn, bom_id, line_values)
            return self.get_bom(bom_id, conn=conn)

        bom = run_in_transaction(self.engine, _create, self.settings)
        logger.info(f"Created BOM {bom.id} v{bom.version} for product {bom.product_id} "
                    f"with {len(bom.lines)} line(s)")
        return bom

    def update_bom(self, bom_id, header, lines):
        """Replace a BOM's header fields and its full line set.

        Only BOMs that no live order was planned against can be edited; once
        an order references it, changes go into a new version via create_bom.
        """

        def _update(conn):
            current = self.get_bom(bom_id, conn=conn)
            values, line_values = self._validate(conn, header, lines)

            in_use = self._orders_using(conn, bom_id)
            if in_use:
                raise InvalidBOM(
                    f"BOM {bom_id} is referenced by {in_use} production order(s); create a new version instead"
                )

            if values["product_id"] != current.product_id:
                values["version"] = self._next_version(conn, values["product_id"])

            conn.execute(
                update(bom_headers)
                .where(bom_headers.c.id == bom_id)
                .values(updated_at=datetime.now(), **values)
            )
            conn.execute(delete(bom_lines).where(bom_lines.c.bom_id == bom_id))
            self._insert_lines(conn, bom_id, line_values)
            return self.get_bom(bom_id, conn=conn)

        bom = run_in_transaction(self.engine, _update, self.settings)
        logger.info(f"Updated BOM {bom_id}: {len(bom.lines)} line(s)")
        return bom

    def set_bom_active(self, bom_id, active):
        """Activate or deactivate a BOM; existing orders are unaffected"""

        def _update(conn):
            self.get_bom(bom_id, conn=conn)
            conn.execute(
                update(bom_headers)
                .where(bom_headers.c.id == bom_id)
                .values(is_active=bool(active), updated_at=datetime.now())
            )

        run_in_transaction(self.engine, _update, self.settings)
        logger.info(f"BOM {bom_id} active={bool(active)}")

    def get_bom(self, bom_id, conn=None):
        """Get a BOM with its lines"""
        if conn is None:
            with self.engine.connect() as own_conn:
                return self.get_bom(bom_id, conn=own_conn)

        header = conn.execute(select(bom_headers).where(bom_headers.c.id == bom_id)).first()
        if header is None:
            raise ReferenceNotFound("bom", bom_id)

        rows = conn.execute(
            select(bom_lines).where(bom_lines.c.bom_id == bom_id).order_by(bom_lines.c.id)
        ).all()

        return BOM(
            id=header.id,
            product_id=header.product_id,
            name=header.name,
            version=header.version,
            batch_size=header.batch_size,
            is_active=header.is_active,
            lines=[BOMLine.from_row(row) for row in rows],
        )

    def get_active_bom(self, product_id):
        """Get the highest active BOM version for a product"""
        query = (
            select(bom_headers.c.id)
            .where(bom_headers.c.product_id == product_id)
            .where(bom_headers.c.is_active.is_(True))
            .order_by(bom_headers.c.version.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            bom_id = conn.execute(query).scalar()
            if bom_id is None:
                raise ReferenceNotFound("active bom for product", product_id)
            return self.get_bom(bom_id, conn=conn)

    def get_boms(self, product_id=None, active=None):
        """Get list of BOMs with filters"""
        line_count = (
            select(func.count(bom_lines.c.id))
            .where(bom_lines.c.bom_id == bom_headers.c.id)
            .scalar_subquery()
        )
        query = (
            select(
                bom_headers.c.id,
                bom_headers.c.name,
                bom_headers.c.version,
                bom_headers.c.batch_size,
                bom_headers.c.is_active,
                bom_headers.c.product_id,
                products.c.name.label("product_name"),
                products.c.sku.label("product_sku"),
                line_count.label("line_count"),
                bom_headers.c.created_at,
            )
            .join(products, bom_headers.c.product_id == products.c.id)
        )

        if product_id is not None:
            query = query.where(bom_headers.c.product_id == product_id)

        if active is not None:
            query = query.where(bom_headers.c.is_active.is_(bool(active)))

        query = query.order_by(bom_headers.c.created_at.desc(), bom_headers.c.id.desc())

        with self.engine.connect() as conn:
            return pd.read_sql(query, conn)

    def get_where_used(self, material_id):
        """Find where a product is used as material"""
        finished = products.alias("finished")
        query = (
            select(
                bom_headers.c.id.label("bom_id"),
                bom_headers.c.name.label("bom_name"),
                bom_headers.c.version,
                bom_headers.c.is_active,
                finished.c.name.label("product_name"),
                bom_lines.c.quantity,
                bom_lines.c.unit_of_measure,
                bom_headers.c.batch_size,
            )
            .join(bom_headers, bom_lines.c.bom_id == bom_headers.c.id)
            .join(finished, bom_headers.c.product_id == finished.c.id)
            .where(bom_lines.c.product_id == material_id)
            .order_by(bom_headers.c.is_active.desc(), bom_headers.c.name)
        )

        with self.engine.connect() as conn:
            return pd.read_sql(query, conn)

    def _validate(self, conn, header, lines):
        """Check header and lines, returning normalized insert values"""
        try:
            batch_size = to_quantity(header.get("batch_size"), "batch_size")
        except InvalidQuantity as e:
            raise InvalidBOM(e.message)
        if batch_size <= 0:
            raise InvalidBOM(f"Batch size must be positive, got {batch_size}")

        target = self.catalog.get_product(header.get("product_id"), conn=conn)
        if target.type != ProductType.FINISHED_PRODUCT.value:
            raise InvalidBOM(f"BOM target {target.sku} is not a finished product")

        line_values = []
        for line in lines:
            if isinstance(line, BOMLine):
                line = {
                    "product_id": line.product_id,
                    "quantity": line.quantity,
                    "unit_of_measure": line.unit_of_measure,
                    "notes": line.notes,
                }

            material = self.catalog.get_product(line.get("product_id"), conn=conn)
            if material.type == ProductType.FINISHED_PRODUCT.value:
                raise InvalidBOM(f"Material {material.sku} is a finished product")

            try:
                quantity = to_quantity(line.get("quantity"), "line quantity")
            except InvalidQuantity as e:
                raise InvalidBOM(e.message)
            if quantity <= 0:
                raise InvalidBOM(f"Quantity for {material.sku} must be positive, got {quantity}")

            line_values.append({
                "product_id": material.id,
                "quantity": quantity,
                "unit_of_measure": line.get("unit_of_measure") or material.unit_of_measure,
                "notes": line.get("notes"),
            })

        values = {
            "product_id": target.id,
            "name": header.get("name") or target.name,
            "batch_size": batch_size,
            "is_active": bool(header.get("is_active", True)),
        }
        return values, line_values

    def _orders_using(self, conn, bom_id):
        """Number of non-cancelled orders planned against a BOM"""
        return conn.execute(
            select(func.count(production_orders.c.id))
            .where(production_orders.c.bom_id == bom_id)
            .where(production_orders.c.status != OrderStatus.CANCELLED.value)
        ).scalar() or 0

    def _next_version(self, conn, product_id):
        current = conn.execute(
            select(func.max(bom_headers.c.version)).where(bom_headers.c.product_id == product_id)
        ).scalar()
        return (current or 0) + 1

    def _insert_lines(self, conn, bom_id, line_values):
        if line_values:
            conn.execute(insert(bom_lines), [dict(bom_id=bom_id, **line) for line in line_values])
