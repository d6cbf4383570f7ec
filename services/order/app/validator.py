"""
Order Service — 注文バリデータ

副作用のない純粋関数。問題をすべて集めてから ValidationError を送出する。
"""

from decimal import Decimal

from .aggregate import OrderRequest
from .errors import ValidationError

# 永続化する単価の小数桁数 (Numeric(14, 4))
PRICE_SCALE = 4


def validate_order_request(request: OrderRequest) -> None:
    errors: list[str] = []

    if request.customer_id is None or not str(request.customer_id).strip():
        errors.append("customer_id is required")

    if not request.line_items:
        errors.append("at least one line item is required")

    for index, item in enumerate(request.line_items):
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int):
            errors.append(f"line_items[{index}].quantity must be an integer")
        elif item.quantity <= 0:
            errors.append(f"line_items[{index}].quantity must be positive")

        price = item.unit_price
        if not isinstance(price, Decimal) or not price.is_finite():
            errors.append(f"line_items[{index}].unit_price must be a finite decimal")
        elif price < 0:
            errors.append(f"line_items[{index}].unit_price must not be negative")
        elif price.as_tuple().exponent < -PRICE_SCALE:
            errors.append(
                f"line_items[{index}].unit_price has more than {PRICE_SCALE} decimal places"
            )

    if errors:
        raise ValidationError(errors)
