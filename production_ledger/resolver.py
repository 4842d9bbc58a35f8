# production_ledger/resolver.py - BOM quantity scaling
from decimal import Decimal, InvalidOperation
from typing import List

from .common import to_quantity
from .exceptions import InvalidBOM
from .models import BOM, MaterialRequirement


def resolve(bom: BOM, target_quantity) -> List[MaterialRequirement]:
    """Scale every BOM line to ``target_quantity`` of finished product.

    required = line quantity * target quantity / batch size, computed in
    Decimal and quantized once per line to the storage scale, so the result
    is exactly what gets written to the ledger. Pure: same inputs, same output.
    """
    try:
        target = Decimal(str(target_quantity))
        batch_size = Decimal(str(bom.batch_size))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidBOM(f"Invalid quantities for BOM {bom.id}")

    if not batch_size.is_finite() or batch_size <= 0:
        raise InvalidBOM(f"BOM {bom.id} has non-positive batch size {bom.batch_size}")
    if not target.is_finite() or target <= 0:
        raise InvalidBOM(f"Target quantity must be positive, got {target_quantity}")

    requirements = []
    for line in bom.lines:
        per_batch = Decimal(str(line.quantity))
        if per_batch <= 0:
            raise InvalidBOM(f"BOM {bom.id} line for product {line.product_id} has non-positive quantity")

        requirements.append(MaterialRequirement(
            material_product_id=line.product_id,
            required_quantity=to_quantity(per_batch * target / batch_size, "required quantity"),
            unit_of_measure=line.unit_of_measure,
        ))

    return requirements
