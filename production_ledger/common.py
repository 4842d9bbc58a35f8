# production_ledger/common.py - Common utility functions
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from io import BytesIO
from typing import Any, Dict, Optional, Tuple, Union

import pandas as pd

from .exceptions import InvalidQuantity
from .utils.config import config

logger = logging.getLogger(__name__)

# Matches the Numeric(18, 6) storage scale and range
QUANTITY_STEP = Decimal("0.000001")
MAX_QUANTITY = Decimal(10) ** 12


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging at the configured level"""
    logging.basicConfig(
        level=(level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def to_quantity(value: Any, field_name: str = "quantity") -> Decimal:
    """Convert input to a Decimal quantity at storage scale"""
    if value is None or isinstance(value, bool):
        raise InvalidQuantity(f"{field_name} is required")
    try:
        # str() keeps floats like 0.1 from dragging binary noise along
        qty = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidQuantity(f"Invalid {field_name} format: {value!r}")
    if not qty.is_finite():
        raise InvalidQuantity(f"Invalid {field_name}: {value!r}")
    qty = quantize(qty)
    if abs(qty) >= MAX_QUANTITY:
        raise InvalidQuantity(f"{field_name} {value!r} is out of range (must be below {MAX_QUANTITY:,})")
    return qty


def quantize(value: Decimal) -> Decimal:
    try:
        return value.quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidQuantity(f"Quantity {value} is out of range")


def format_number(value: Union[int, float, Decimal, None], decimal_places: int = 2) -> str:
    """Format number with thousand separators"""
    if value is None or pd.isna(value):
        return "0"
    return f"{value:,.{decimal_places}f}"


def generate_order_number(day: date, sequence: int, prefix: str = "OP") -> str:
    """Order number such as OP-20250106-001"""
    return f"{prefix}-{day:%Y%m%d}-{sequence:03d}"


def generate_lot_number(day: date, sku: str, order_id: Optional[int], prefix: str = "LOT",
                        sequence: int = 1) -> str:
    """Lot number unique per product, production date and originating order.

    Lots registered without an order (opening balances, bought-in lots) take
    a per-day manual sequence instead: LOT-20250106-SKU-M001.
    """
    if order_id is None:
        return f"{prefix}-{day:%Y%m%d}-{sku}-M{sequence:03d}"
    return f"{prefix}-{day:%Y%m%d}-{sku}-{order_id:06d}"


def calculate_date_range(period: str = "month", today: Optional[date] = None) -> Tuple[date, date]:
    """Calculate common date ranges"""
    today = today or date.today()

    if period == "today":
        return today, today
    elif period == "week":
        start = today - timedelta(days=today.weekday())
        return start, start + timedelta(days=6)
    elif period == "month":
        start = today.replace(day=1)
        if today.month == 12:
            end = date(today.year + 1, 1, 1) - timedelta(days=1)
        else:
            end = date(today.year, today.month + 1, 1) - timedelta(days=1)
        return start, end
    elif period == "year":
        return date(today.year, 1, 1), date(today.year, 12, 31)
    else:
        return today, today


def day_bounds(start_date: date, end_date: date) -> Tuple[datetime, datetime]:
    """Inclusive date range as [start 00:00, day after end 00:00)"""
    return (
        datetime.combine(start_date, datetime.min.time()),
        datetime.combine(end_date + timedelta(days=1), datetime.min.time()),
    )


def export_to_excel(dataframes_dict: Dict[str, pd.DataFrame], output=None) -> bytes:
    """Export multiple dataframes to an Excel workbook"""
    target = output if output is not None else BytesIO()

    try:
        with pd.ExcelWriter(target, engine="xlsxwriter") as writer:
            for sheet_name, df in dataframes_dict.items():
                # Excel sheet name limit is 31 characters
                safe_sheet_name = sheet_name[:31]
                df.to_excel(writer, sheet_name=safe_sheet_name, index=False)

                worksheet = writer.sheets[safe_sheet_name]
                for i, col in enumerate(df.columns):
                    lengths = df[col].astype(str).str.len()
                    column_width = max(lengths.max() if not df.empty else 0, len(str(col))) + 2
                    worksheet.set_column(i, i, min(column_width, 50))
    except Exception as e:
        logger.error(f"Error exporting to Excel: {e}")
        raise

    return target.getvalue() if isinstance(target, BytesIO) else b""
