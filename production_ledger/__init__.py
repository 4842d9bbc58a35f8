# production_ledger/__init__.py
"""Production & Inventory Ledger - BOMs, production orders, lots and stock"""

from .bom import BOMManager
from .catalog import CatalogManager
from .expiry import ExpiryMonitor
from .inventory import InventoryManager
from .ledger import StockLedger
from .lots import LotRegistry
from .production import ProductionManager
from .resolver import resolve
from .schema import create_schema
from .utils.db import get_db_engine

__all__ = [
    'BOMManager',
    'CatalogManager',
    'ExpiryMonitor',
    'InventoryManager',
    'LotRegistry',
    'ProductionManager',
    'StockLedger',
    'create_schema',
    'get_db_engine',
    'resolve',
]

__version__ = '1.0.0'
