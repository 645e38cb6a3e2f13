"""
Invoice Service: 料金計算エンジン

I/O なしの純粋関数。金額はすべて Decimal で、セント単位に四捨五入
(ROUND_HALF_UP) する。各行は小計に足す前に丸めるので、同じカートは
常に同じ合計になる。
"""

from collections.abc import Iterable, Mapping
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from .config import PricingConfig

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

MANUAL_SHIPPING_KEYS = ("costo", "cost", "shippingFee")


def to_decimal(value: Any, default: Decimal | None = ZERO) -> Decimal | None:
    """数値と数値文字列を解釈する。それ以外は `default`"""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = Decimal(str(value).strip()) if isinstance(value, str) else Decimal(str(value))
    except InvalidOperation:
        return default
    if not number.is_finite():
        return default
    return number


def round_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def line_price(unit_price: Any, discount_pct: Any, quantity: int) -> tuple[Decimal, Decimal]:
    """(値引き後の単価, 行合計) を丸めて返す"""
    base = to_decimal(unit_price)
    pct = to_decimal(discount_pct)
    unit_after = round_money(base * (1 - pct / 100))
    return unit_after, round_money(unit_after * quantity)


def line_total(unit_price: Any, discount_pct: Any, quantity: int) -> Decimal:
    return line_price(unit_price, discount_pct, quantity)[1]


def manual_shipping_cost(source: Mapping[str, Any] | None) -> Decimal | None:
    if not source:
        return None
    for key in MANUAL_SHIPPING_KEYS:
        if source.get(key) is not None:
            cost = to_decimal(source[key], default=None)
            if cost is not None and cost >= 0:
                return round_money(cost)
            return None
    return None


def shipping_cost(
    source: Mapping[str, Any] | None,
    quantities: Iterable[int],
    config: PricingConfig,
) -> Decimal:
    """
    配送情報に 0 以上の手動送料があればそれを使う。なければ基本料金に
    2個目以降の1個ごとの追加料金を足し、上限で頭打ちにする。
    """
    manual = manual_shipping_cost(source)
    if manual is not None:
        return manual
    total_units = sum(quantities)
    incremental = max(0, total_units - 1) * config.per_item_shipping_fee
    return round_money(min(config.max_shipping_fee, config.base_shipping_fee + incremental))


def taxes(subtotal: Decimal, rate: Any) -> Decimal:
    return round_money(to_decimal(subtotal) * to_decimal(rate))


def grand_total(
    subtotal: Decimal,
    tax_amount: Decimal,
    shipping: Decimal,
    discount: Decimal = ZERO,
) -> Decimal:
    return round_money(max(ZERO, subtotal + tax_amount + shipping - discount))


def money(value: Decimal) -> float:
    """丸めた金額の JSON 向け表現"""
    return float(round_money(value))
