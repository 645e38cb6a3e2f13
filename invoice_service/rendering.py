"""
Invoice Service: 請求書ドキュメント

保存済みの注文を HTML の請求書に射影する。旧バージョンのストアフロントが
書いた注文は明細の場所もキー名も異なるため、明細の抽出は順序付きの
形状マッチャーのリストで行い、最初に空でないリストを見つけたものを採用する。
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from jinja2 import Environment, PackageLoader, select_autoescape

from .db import as_datetime
from .pricing import ZERO, round_money, to_decimal

DATE_FORMAT = "%d/%m/%Y, %H:%M:%S"

env = Environment(
    loader=PackageLoader("invoice_service", "templates"),
    autoescape=select_autoescape(["html"]),
    keep_trailing_newline=True,
)
env.filters["money"] = lambda value: f"{to_decimal(value):.2f}"


@dataclass(frozen=True)
class InvoiceLine:
    name: str
    quantity: Any
    unit_price: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    iva: Decimal
    envio: Decimal
    discount: Decimal
    total: Decimal


@dataclass(frozen=True)
class LineShape:
    name: str
    extract: Callable[[dict], Any]
    normalize: Callable[[dict, int], InvoiceLine]


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _summary(order: dict) -> dict:
    return _as_dict(order.get("resumen"))


def _or(entry: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if entry.get(key):
            return entry[key]
    return default


def _coalesce(source: dict, *keys: str) -> Any:
    for key in keys:
        if source.get(key) is not None:
            return source[key]
    return None


def _from_product_entry(entry: dict, idx: int) -> InvoiceLine:
    return InvoiceLine(
        name=_or(entry, "nombre", default=f"Producto {idx + 1}"),
        quantity=_or(entry, "cantidad", "quantity", default=0),
        unit_price=to_decimal(_or(entry, "precio", "unitPrice", default=0)),
        line_total=to_decimal(_or(entry, "subtotal", "lineTotal", default=0)),
    )


def _from_item_entry(entry: dict, idx: int) -> InvoiceLine:
    quantity = _or(entry, "cantidad", "quantity", default=0)
    unit_price = to_decimal(_or(entry, "precio", "unitPrice", default=0))
    line_total = entry.get("lineTotal") or unit_price * to_decimal(quantity)
    return InvoiceLine(
        name=_or(entry, "nombre", "productName", default=f"Producto {idx + 1}"),
        quantity=quantity,
        unit_price=unit_price,
        line_total=to_decimal(line_total),
    )


LINE_SHAPES: tuple[LineShape, ...] = (
    LineShape("summary.productos", lambda order: _summary(order).get("productos"), _from_product_entry),
    LineShape("productos", lambda order: order.get("productos"), _from_product_entry),
    LineShape("items", lambda order: order.get("items"), _from_item_entry),
)


def normalize_lines(order: dict) -> list[InvoiceLine]:
    for shape in LINE_SHAPES:
        entries = shape.extract(order)
        if isinstance(entries, list) and entries:
            return [
                shape.normalize(entry if isinstance(entry, dict) else {}, idx)
                for idx, entry in enumerate(entries)
            ]
    return []


def normalize_totals(order: dict, lines: list[InvoiceLine]) -> InvoiceTotals:
    """保存済みの合計があればそれを、なければ明細から算出する"""
    base = _as_dict(_summary(order).get("totales") or order.get("totales"))

    subtotal = _coalesce(base, "subtotal")
    if subtotal is None:
        subtotal = sum((line.line_total for line in lines), ZERO)
    iva = _coalesce(base, "iva", "taxes", "tax") or 0
    envio = _coalesce(base, "envio", "shipping") or 0
    discount = _coalesce(base, "discount") or 0
    total = _coalesce(base, "total")
    if total is None:
        total = round_money(
            to_decimal(subtotal) + to_decimal(iva) + to_decimal(envio) - to_decimal(discount)
        )
    return InvoiceTotals(
        subtotal=round_money(subtotal),
        iva=round_money(iva),
        envio=round_money(envio),
        discount=max(ZERO, round_money(discount)),
        total=round_money(total),
    )


def _section(order: dict, key: str) -> dict:
    return _as_dict(_summary(order).get(key) or order.get(key))


def invoice_number(order: dict) -> str:
    value = (
        _summary(order).get("invoiceNumber")
        or order.get("numeroFactura")
        or order.get("id")
        or order.get("_id")
        or ""
    )
    return str(value)


def format_date(value: Any, now: datetime | None = None) -> str:
    issued = as_datetime(value) if value else None
    if issued is None:
        issued = now or datetime.now(timezone.utc)
    return issued.strftime(DATE_FORMAT)


def render_invoice(order: dict, store_name: str = "Tatylu, Viveres", now: datetime | None = None) -> str:
    lines = normalize_lines(order)
    cliente = _section(order, "cliente")
    full_name = f"{cliente.get('nombre') or ''} {cliente.get('apellido') or ''}".strip()

    return env.get_template("invoice.html").render(
        store_name=store_name,
        number=invoice_number(order),
        date=format_date(order.get("fecha"), now),
        buyer_name=full_name or "N/D",
        cliente=cliente,
        lines=lines,
        totals=normalize_totals(order, lines),
        entrega=_section(order, "entrega"),
        pago=_section(order, "pago"),
    )
