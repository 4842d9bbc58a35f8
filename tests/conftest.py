"""Pytest configuration and fixtures."""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from production_ledger import (
    BOMManager,
    CatalogManager,
    ExpiryMonitor,
    InventoryManager,
    LotRegistry,
    ProductionManager,
    StockLedger,
    create_schema,
    get_db_engine,
)
from production_ledger.utils.config import Settings

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"


class SteppingClock:
    """Deterministic clock that moves one second per reading"""

    def __init__(self, start):
        self.current = start

    def __call__(self):
        value = self.current
        self.current += timedelta(seconds=1)
        return value


@pytest.fixture
def settings():
    return Settings(
        database_url=TEST_DATABASE_URL,
        retry_backoff_seconds=0.001,
        _env_file=None,
    )


@pytest.fixture
def clock():
    return SteppingClock(datetime(2026, 3, 10, 8, 0, 0))


@pytest.fixture(scope="function")
def db_engine(settings):
    """Create a test database engine with the ledger schema."""
    engine = get_db_engine(TEST_DATABASE_URL, settings)
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def catalog(db_engine, settings):
    return CatalogManager(db_engine, settings)


@pytest.fixture
def ledger(db_engine, settings, catalog, clock):
    return StockLedger(db_engine, settings, catalog=catalog, clock=clock)


@pytest.fixture
def lots(db_engine, settings, catalog, clock):
    return LotRegistry(db_engine, settings, catalog=catalog, clock=clock)


@pytest.fixture
def boms(db_engine, settings, catalog):
    return BOMManager(db_engine, settings, catalog=catalog)


@pytest.fixture
def inventory(db_engine, settings, ledger):
    return InventoryManager(db_engine, settings, ledger=ledger)


@pytest.fixture
def production(db_engine, settings, catalog, boms, ledger, lots, inventory, clock):
    return ProductionManager(
        db_engine, settings, catalog=catalog, boms=boms, ledger=ledger,
        lots=lots, inventory=inventory, clock=clock,
    )


@pytest.fixture
def expiry(db_engine, settings, lots, ledger):
    return ExpiryMonitor(db_engine, settings, lots=lots, ledger=ledger, today=lambda: date(2026, 3, 10))


@pytest.fixture
def stock_setup(catalog):
    """Warehouses plus raw material, packaging and finished products."""
    main = catalog.create_warehouse("MAIN", "Main Plant")
    cold = catalog.create_warehouse("COLD", "Cold Storage")

    flour = catalog.create_product("RM-FLOUR", "Wheat Flour", "raw_material", "kg", reorder_point=50)
    sugar = catalog.create_product("RM-SUGAR", "Sugar", "raw_material", "kg", reorder_point=10)
    bag = catalog.create_product("PK-BAG", "Cookie Bag", "packaging", "pcs")
    cookies = catalog.create_product(
        "FG-COOKIE", "Butter Cookies", "finished_product", "kg", shelf_life_days=30
    )
    tortillas = catalog.create_product("FG-TORT", "Corn Tortillas", "finished_product", "kg")

    return {
        "main": main,
        "cold": cold,
        "flour": flour,
        "sugar": sugar,
        "bag": bag,
        "cookies": cookies,
        "tortillas": tortillas,
    }


@pytest.fixture
def cookie_bom(boms, stock_setup):
    """Batch of 100 kg cookies: 20 kg flour, 7.5 kg sugar, 40 bags."""
    return boms.create_bom(
        {"product_id": stock_setup["cookies"].id, "name": "Cookies 100kg", "batch_size": Decimal("100")},
        [
            {"product_id": stock_setup["flour"].id, "quantity": Decimal("20")},
            {"product_id": stock_setup["sugar"].id, "quantity": Decimal("7.5")},
            {"product_id": stock_setup["bag"].id, "quantity": Decimal("40"), "unit_of_measure": "pcs"},
        ],
    )
