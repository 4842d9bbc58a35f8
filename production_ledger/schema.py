# production_ledger/schema.py - Table definitions
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.types import TypeDecorator

from .common import QUANTITY_STEP


class Quantity(TypeDecorator):
    """Exact fixed-point quantity with 6 decimal places.

    Backends with a decimal type store NUMERIC(18, 6). SQLite has none and
    would round-trip through float, so there the value is stored as an
    integer count of millionths; sums and in-place increments then run as
    integer arithmetic in the database.
    """

    impl = Numeric(18, 6, asdecimal=True)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(BigInteger())
        return dialect.type_descriptor(Numeric(18, 6, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = value if isinstance(value, Decimal) else Decimal(str(value))
        if dialect.name == "sqlite":
            return int((value / QUANTITY_STEP).to_integral_value(rounding=ROUND_HALF_UP))
        return value.quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "sqlite":
            return Decimal(int(value)) * QUANTITY_STEP
        return Decimal(value).quantize(QUANTITY_STEP)


metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("sku", String(64), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("type", String(32), nullable=False),
    Column("unit_of_measure", String(16), nullable=False),
    Column("reorder_point", Quantity, nullable=False, default=0),
    Column("shelf_life_days", Integer, nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    CheckConstraint(
        "type IN ('raw_material', 'packaging', 'finished_product')",
        name="ck_products_type",
    ),
)

warehouses = Table(
    "warehouses",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("code", String(32), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("address", Text, nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

bom_headers = Table(
    "bom_headers",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("version", Integer, nullable=False),
    Column("batch_size", Quantity, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=True),
    UniqueConstraint("product_id", "version", name="uq_bom_product_version"),
    CheckConstraint("batch_size > 0", name="ck_bom_batch_size"),
)

bom_lines = Table(
    "bom_lines",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("bom_id", Integer, ForeignKey("bom_headers.id"), nullable=False, index=True),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("quantity", Quantity, nullable=False),
    Column("unit_of_measure", String(16), nullable=False),
    Column("notes", Text, nullable=True),
    CheckConstraint("quantity > 0", name="ck_bom_line_quantity"),
)

production_orders = Table(
    "production_orders",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_number", String(64), nullable=False, unique=True),
    Column("bom_id", Integer, ForeignKey("bom_headers.id"), nullable=False),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("warehouse_id", Integer, ForeignKey("warehouses.id"), nullable=False),
    Column("planned_quantity", Quantity, nullable=False),
    Column("produced_quantity", Quantity, nullable=False, default=0),
    Column("waste_quantity", Quantity, nullable=False, default=0),
    Column("status", String(16), nullable=False),
    Column("scheduled_start", DateTime, nullable=True),
    Column("scheduled_end", DateTime, nullable=True),
    Column("actual_start", DateTime, nullable=True),
    Column("actual_end", DateTime, nullable=True),
    Column("created_by", String(64), nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    CheckConstraint("planned_quantity > 0", name="ck_order_planned_quantity"),
    Index("ix_production_orders_status", "status"),
)

inventory_lots = Table(
    "inventory_lots",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("lot_number", String(128), nullable=False, unique=True),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("production_order_id", Integer, ForeignKey("production_orders.id"), nullable=True, unique=True),
    Column("production_date", Date, nullable=False),
    Column("expiry_date", Date, nullable=True),
    Column("initial_quantity", Quantity, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Index("ix_inventory_lots_expiry", "expiry_date"),
)

# Append-only: rows are inserted, never updated or deleted
inventory_movements = Table(
    "inventory_movements",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("movement_type", String(32), nullable=False),
    Column("warehouse_id", Integer, ForeignKey("warehouses.id"), nullable=False),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("lot_id", Integer, ForeignKey("inventory_lots.id"), nullable=True),
    Column("quantity", Quantity, nullable=False),
    Column("reference_type", String(32), nullable=True),
    Column("reference_id", Integer, nullable=True),
    Column("notes", Text, nullable=True),
    Column("created_by", String(64), nullable=True),
    Column("created_at", DateTime, nullable=False),
    CheckConstraint("quantity <> 0", name="ck_movement_quantity"),
    CheckConstraint(
        "movement_type IN ('purchase', 'production_consume', 'production_output', 'transfer', 'adjustment')",
        name="ck_movement_type",
    ),
    Index("ix_movements_key", "warehouse_id", "product_id", "lot_id"),
    Index("ix_movements_reference", "reference_type", "reference_id"),
    Index("ix_movements_created_at", "created_at"),
)

# Materialized on-hand per (warehouse, product, lot); lot_key is lot_id or 0
inventory_stock = Table(
    "inventory_stock",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("warehouse_id", Integer, ForeignKey("warehouses.id"), nullable=False),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("lot_id", Integer, ForeignKey("inventory_lots.id"), nullable=True),
    Column("lot_key", Integer, nullable=False),
    Column("quantity", Quantity, nullable=False),
    Column("version", Integer, nullable=False, default=1),
    Column("updated_at", DateTime, nullable=False),
    UniqueConstraint("warehouse_id", "product_id", "lot_key", name="uq_stock_key"),
)


def create_schema(engine):
    """Create all ledger tables that do not exist yet"""
    metadata.create_all(engine)
