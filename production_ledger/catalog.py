# production_ledger/catalog.py - Product and warehouse reference data
import logging

import pandas as pd
from sqlalchemy import insert, select, update

from .common import to_quantity
from .exceptions import InvalidQuantity, ReferenceNotFound
from .models import Product, ProductType, Warehouse
from .schema import products, warehouses
from .utils.db import run_in_transaction

logger = logging.getLogger(__name__)


class CatalogManager:
    """Products and warehouses that the ledger references but does not own"""

    def __init__(self, engine, settings=None):
        self.engine = engine
        self.settings = settings

    def create_product(self, sku, name, product_type, unit_of_measure,
                       reorder_point=0, shelf_life_days=None):
        """Register a product and return it"""
        product_type = ProductType(product_type)
        reorder_point = to_quantity(reorder_point, "reorder_point")
        if shelf_life_days is not None and shelf_life_days < 0:
            raise InvalidQuantity("shelf_life_days cannot be negative")

        def _create(conn):
            result = conn.execute(insert(products).values(
                sku=sku,
                name=name,
                type=product_type.value,
                unit_of_measure=unit_of_measure,
                reorder_point=reorder_point,
                shelf_life_days=shelf_life_days,
                is_active=True,
            ))
            return self.get_product(result.inserted_primary_key[0], conn=conn)

        product = run_in_transaction(self.engine, _create, self.settings)
        logger.info(f"Created product {sku} ({product_type.value})")
        return product

    def get_product(self, product_id, conn=None):
        """Get a product, raising ReferenceNotFound if it does not exist"""
        row = self._fetch_one(select(products).where(products.c.id == product_id), conn)
        if row is None:
            raise ReferenceNotFound("product", product_id)
        return Product.from_row(row)

    def get_products(self, product_type=None):
        """Get active products"""
        query = select(
            products.c.id,
            products.c.sku,
            products.c.name,
            products.c.type,
            products.c.unit_of_measure,
            products.c.reorder_point,
            products.c.shelf_life_days,
        ).where(products.c.is_active.is_(True))

        if product_type:
            query = query.where(products.c.type == ProductType(product_type).value)

        with self.engine.connect() as conn:
            return pd.read_sql(query.order_by(products.c.name), conn)

    def create_warehouse(self, code, name, address=None):
        def _create(conn):
            result = conn.execute(insert(warehouses).values(
                code=code, name=name, address=address, is_active=True,
            ))
            return self.get_warehouse(result.inserted_primary_key[0], conn=conn)

        warehouse = run_in_transaction(self.engine, _create, self.settings)
        logger.info(f"Created warehouse {code}")
        return warehouse

    def get_warehouse(self, warehouse_id, conn=None):
        row = self._fetch_one(select(warehouses).where(warehouses.c.id == warehouse_id), conn)
        if row is None:
            raise ReferenceNotFound("warehouse", warehouse_id)
        return Warehouse.from_row(row)

    def get_warehouses(self):
        """Get list of active warehouses"""
        query = (
            select(warehouses.c.id, warehouses.c.code, warehouses.c.name, warehouses.c.address)
            .where(warehouses.c.is_active.is_(True))
            .order_by(warehouses.c.name)
        )
        with self.engine.connect() as conn:
            return pd.read_sql(query, conn)

    def set_warehouse_active(self, warehouse_id, active):
        def _update(conn):
            self.get_warehouse(warehouse_id, conn=conn)
            conn.execute(
                update(warehouses)
                .where(warehouses.c.id == warehouse_id)
                .values(is_active=bool(active))
            )

        run_in_transaction(self.engine, _update, self.settings)
        logger.info(f"Warehouse {warehouse_id} active={bool(active)}")

    def _fetch_one(self, query, conn=None):
        if conn is not None:
            return conn.execute(query).first()
        with self.engine.connect() as own_conn:
            return own_conn.execute(query).first()
