# production_ledger/models.py - Typed records for ledger entities
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional


class ProductType(str, Enum):
    RAW_MATERIAL = "raw_material"
    PACKAGING = "packaging"
    FINISHED_PRODUCT = "finished_product"


class OrderStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


class MovementType(str, Enum):
    PURCHASE = "purchase"
    PRODUCTION_CONSUME = "production_consume"
    PRODUCTION_OUTPUT = "production_output"
    TRANSFER = "transfer"
    ADJUSTMENT = "adjustment"


class ExpiryStatus(str, Enum):
    EXPIRED = "expired"
    NEAR_EXPIRY = "near_expiry"
    VALID = "valid"
    UNKNOWN = "unknown"


class _Record:
    """Build a record from a result row, ignoring columns it does not declare"""

    @classmethod
    def from_row(cls, row):
        mapping = row._mapping if hasattr(row, "_mapping") else row
        names = {f.name for f in fields(cls) if f.init}
        return cls(**{k: v for k, v in mapping.items() if k in names})


@dataclass(frozen=True)
class Product(_Record):
    id: int
    sku: str
    name: str
    type: str
    unit_of_measure: str
    reorder_point: Decimal = Decimal("0")
    shelf_life_days: Optional[int] = None
    is_active: bool = True


@dataclass(frozen=True)
class Warehouse(_Record):
    id: int
    code: str
    name: str
    address: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class BOMLine(_Record):
    product_id: int
    quantity: Decimal
    unit_of_measure: str
    notes: Optional[str] = None
    id: Optional[int] = None
    bom_id: Optional[int] = None


@dataclass(frozen=True)
class BOM(_Record):
    """BOM header plus its full line set"""

    id: int
    product_id: int
    name: str
    version: int
    batch_size: Decimal
    is_active: bool = True
    lines: List[BOMLine] = field(default_factory=list)


@dataclass(frozen=True)
class ProductionOrder(_Record):
    id: int
    order_number: str
    bom_id: int
    product_id: int
    warehouse_id: int
    planned_quantity: Decimal
    produced_quantity: Decimal
    waste_quantity: Decimal
    status: str
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Lot(_Record):
    id: int
    lot_number: str
    product_id: int
    production_date: date
    initial_quantity: Decimal
    expiry_date: Optional[date] = None
    production_order_id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Movement(_Record):
    """A signed quantity change; id and created_at are set once appended"""

    movement_type: str
    warehouse_id: int
    product_id: int
    quantity: Decimal
    lot_id: Optional[int] = None
    reference_type: Optional[str] = None
    reference_id: Optional[int] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class StockEntry(_Record):
    warehouse_id: int
    product_id: int
    lot_id: Optional[int]
    quantity: Decimal
    version: int = 1
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class MaterialRequirement:
    material_product_id: int
    required_quantity: Decimal
    unit_of_measure: str


@dataclass(frozen=True)
class LotExpiry:
    lot: Lot
    days_to_expiry: Optional[int]
    status: ExpiryStatus
    on_hand: Decimal
