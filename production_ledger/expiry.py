# production_ledger/expiry.py - Lot expiry classification
import logging
from datetime import date, timedelta
from decimal import Decimal

import pandas as pd
from sqlalchemy import func, select

from .ledger import StockLedger
from .lots import LotRegistry
from .models import ExpiryStatus, LotExpiry
from .schema import inventory_lots, inventory_stock, products, warehouses
from .utils.config import config

logger = logging.getLogger(__name__)


class ExpiryMonitor:
    """Read-only view classifying lots by days to expiry.

    Nothing is stored; every call recomputes from the lot's expiry date and
    the reference date (``today`` callable, defaults to date.today).
    """

    def __init__(self, engine, settings=None, lots=None, ledger=None, today=None):
        self.engine = engine
        self.settings = settings or config
        self.lots = lots or LotRegistry(engine, settings)
        self.ledger = ledger or StockLedger(engine, settings)
        self.today = today or date.today

    def days_to_expiry(self, lot, today=None):
        """Whole days until expiry, negative once expired, None without expiry"""
        if lot.expiry_date is None:
            return None
        return (lot.expiry_date - (today or self.today())).days

    def classify(self, lot, today=None) -> ExpiryStatus:
        days = self.days_to_expiry(lot, today)
        if days is None:
            return ExpiryStatus.UNKNOWN
        if days < 0:
            return ExpiryStatus.EXPIRED
        if days <= self.settings.near_expiry_days:
            return ExpiryStatus.NEAR_EXPIRY
        return ExpiryStatus.VALID

    def get_lot_expiry_status(self, lot_id) -> LotExpiry:
        """Expiry status of one lot with its on-hand across warehouses"""
        lot = self.lots.get_lot(lot_id)
        today = self.today()
        on_hand = sum((entry.quantity for entry in self.ledger.get_stock(lot_id=lot.id)), Decimal("0"))

        return LotExpiry(
            lot=lot,
            days_to_expiry=self.days_to_expiry(lot, today),
            status=self.classify(lot, today),
            on_hand=on_hand,
        )

    def get_expiring_lots(self, within_days=None):
        """Lots already expired or expiring within the window, soonest first"""
        within_days = self.settings.near_expiry_days if within_days is None else within_days
        today = self.today()

        lots = self.lots.list_lots(expiring_within_days=within_days, today=today)
        result = []
        for lot in sorted(lots, key=lambda l: (l.expiry_date, l.id)):
            on_hand = sum((e.quantity for e in self.ledger.get_stock(lot_id=lot.id)), Decimal("0"))
            result.append(LotExpiry(
                lot=lot,
                days_to_expiry=self.days_to_expiry(lot, today),
                status=self.classify(lot, today),
                on_hand=on_hand,
            ))

        if result:
            logger.info(f"{len(result)} lot(s) expired or expiring within {within_days} days")
        return result

    def expiry_report(self, days_ahead=30):
        """Lot stock on hand per warehouse expiring within ``days_ahead`` days"""
        today = self.today()
        horizon = today + timedelta(days=days_ahead)

        query = (
            select(
                products.c.name.label("product_name"),
                inventory_lots.c.id.label("lot_id"),
                inventory_lots.c.lot_number,
                warehouses.c.name.label("warehouse"),
                func.sum(inventory_stock.c.quantity).label("quantity"),
                inventory_lots.c.expiry_date,
            )
            .select_from(inventory_stock)
            .join(inventory_lots, inventory_stock.c.lot_id == inventory_lots.c.id)
            .join(products, inventory_lots.c.product_id == products.c.id)
            .join(warehouses, inventory_stock.c.warehouse_id == warehouses.c.id)
            .where(inventory_lots.c.expiry_date.is_not(None))
            .where(inventory_lots.c.expiry_date <= horizon)
            .where(inventory_stock.c.quantity > 0)
            .group_by(
                products.c.name,
                inventory_lots.c.id,
                inventory_lots.c.lot_number,
                warehouses.c.name,
                inventory_lots.c.expiry_date,
            )
            .order_by(inventory_lots.c.expiry_date, inventory_lots.c.lot_number)
        )

        with self.engine.connect() as conn:
            df = pd.read_sql(query, conn)

        if df.empty:
            return df.assign(days_to_expiry=pd.Series(dtype="int64"),
                             expiry_status=pd.Series(dtype="object"))

        expiry = pd.to_datetime(df["expiry_date"])
        df["days_to_expiry"] = (expiry - pd.Timestamp(today)).dt.days
        df["expiry_status"] = df["days_to_expiry"].apply(self._status_for_days)
        return df

    def _status_for_days(self, days):
        if days < 0:
            return ExpiryStatus.EXPIRED.value
        if days <= self.settings.near_expiry_days:
            return ExpiryStatus.NEAR_EXPIRY.value
        return ExpiryStatus.VALID.value
