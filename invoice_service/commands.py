"""
Invoice Service: チェックアウトコマンド (CQRS Write 側)

create_invoice はチェックアウト要求を確定済みの注文に変換する。
DB なしで検証できるものは先に検証し、残りを1つのトランザクションで行う:

  1. 購入者 (登録ユーザー) を読み込む
  2. 要求された商品を1クエリで読み込む
  3. 行ごとに条件付きで在庫を減算し、行の金額を計算
  4. 送料・税・値引き・合計
  5. 注文番号と請求書番号を採番
  6. サマリーのスナップショット付きで注文を保存
  7. 購入者のカートを空にし、注文履歴に追記
  8. コミット

ブロック内の例外はすべてロールバックされるので、在庫・注文・ユーザーは
全部書き込まれるか、何も書き込まれないかのどちらか。
"""

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import PricingConfig
from .db import dumps, loads
from .errors import CheckoutError, InsufficientStock, InvalidInput, NotFound, StorageFailure
from .pricing import ZERO, grand_total, line_price, money, round_money, shipping_cost, taxes
from .sequence import OrderSequence
from .validation import (
    LineRequest,
    normalize_currency,
    normalize_discount,
    normalize_tax_rate,
    payment_info,
    pick_user_fields,
    shipping_info,
    validate_buyer,
    validate_items,
)

logger = logging.getLogger(__name__)

CONFIRMED = "confirmed"

_SELECT_PRODUCTS = text(
    "SELECT id, name, price, discount_pct, stock FROM products WHERE id IN :ids"
).bindparams(bindparam("ids", expanding=True))


@dataclass(frozen=True)
class CheckoutResult:
    order: dict
    invoice: dict

    @property
    def buyer_email(self) -> str:
        return (self.order.get("cliente") or {}).get("email") or ""


def build_invoice_number() -> str:
    """
    INV-<エポックミリ秒>-<ランダム3桁>

    ソート可能で実用上は一意。DB 側の一意制約はない。
    """
    return f"INV-{int(time.time() * 1000)}-{random.randint(0, 999):03d}"


async def create_invoice(
    session: AsyncSession,
    sequence: OrderSequence,
    pricing: PricingConfig,
    *,
    user_id: Any = None,
    user: Any = None,
    products: Any = None,
    shipping: Any = None,
    payment: Any = None,
    discount: Any = None,
    totals: Any = None,
    tax_rate: Any = None,
    currency: Any = None,
    comments: Any = None,
    payment_method: Any = None,
) -> CheckoutResult:
    """
    チェックアウトコマンド

    リクエストの問題は InvalidInput / NotFound / InsufficientStock、
    DB 側の失敗は StorageFailure。いずれの場合も何も永続化されない。
    桁あふれする金額 (taxRate=1e300 など) は InvalidInput になる。
    """
    try:
        lines = validate_items(products)
        buyer_id, inline_buyer = validate_buyer(user_id, user)

        rate = normalize_tax_rate(tax_rate, pricing.default_tax_rate)
        invoice_currency = normalize_currency(currency, pricing.default_currency)

        shipping_source = shipping if isinstance(shipping, dict) else {}
        shipping_fee = shipping_cost(shipping_source, (line.quantity for line in lines), pricing)
        delivery = {**shipping_info(shipping_source, comments), "costo": money(shipping_fee)}
        payment_block = payment_info(payment if isinstance(payment, dict) else {}, payment_method)
        discount_value = normalize_discount(discount, totals)

        async with session.begin():
            result = await _run_checkout(
                session,
                sequence,
                lines=lines,
                buyer_id=buyer_id,
                inline_buyer=inline_buyer,
                rate=rate,
                currency=invoice_currency,
                shipping_fee=shipping_fee,
                delivery=delivery,
                payment_block=payment_block,
                discount_value=discount_value,
            )
    except CheckoutError:
        raise
    except ArithmeticError as exc:
        # decimal.InvalidOperation (quantize の桁あふれ) と OverflowError
        logger.warning("Checkout rejected, amount out of range: %r", exc)
        raise InvalidInput("Amounts out of range") from exc
    except SQLAlchemyError as exc:
        logger.exception("Checkout transaction failed")
        raise StorageFailure("Unable to generate invoice") from exc

    logger.info(
        "Order %s committed (invoice %s, %d lines)",
        result.order["id"],
        result.order["numeroFactura"],
        len(lines),
    )
    return result


async def _run_checkout(
    session: AsyncSession,
    sequence: OrderSequence,
    *,
    lines: list[LineRequest],
    buyer_id: str | None,
    inline_buyer: dict | None,
    rate,
    currency: str,
    shipping_fee,
    delivery: dict,
    payment_block: dict,
    discount_value,
) -> CheckoutResult:
    now = datetime.now(timezone.utc)

    # 1. 購入者
    user_row = None
    if buyer_id:
        user_row = await _load_user(session, buyer_id)
        if user_row is None:
            raise NotFound("User not found")
        buyer = pick_user_fields(user_row)
    else:
        buyer = inline_buyer

    # 2. 商品 (1往復で取得)
    products_by_id = await _load_products(session, [line.product_id for line in lines])
    missing = [line.product_id for line in lines if line.product_id not in products_by_id]
    if missing:
        raise NotFound(f"Products not found: {', '.join(dict.fromkeys(missing))}")

    # 3. 在庫減算と行の金額 (リクエスト順)
    invoice_items: list[dict] = []
    subtotal = ZERO
    for line in lines:
        product = products_by_id[line.product_id]
        await _decrement_stock(session, product, line.quantity, now)

        unit_after, line_amount = line_price(product["price"], product["discount_pct"], line.quantity)
        subtotal = round_money(subtotal + line_amount)
        invoice_items.append({
            "productId": product["id"],
            "nombre": product["name"],
            "quantity": line.quantity,
            "unitPrice": money(unit_after),
            "currency": currency,
            "discountPercentage": float(product["discount_pct"] or 0),
            "lineTotal": money(line_amount),
        })

    # 4. 合計
    tax_amount = taxes(subtotal, rate)
    total = grand_total(subtotal, tax_amount, shipping_fee, discount_value)
    totales = {
        "subtotal": money(subtotal),
        "iva": money(tax_amount),
        "envio": money(shipping_fee),
        "discount": money(discount_value),
        "total": money(total),
    }

    # 5. 採番
    code = str(await sequence.next_order_id(session))
    invoice_number = build_invoice_number()
    order_key = str(uuid4())

    productos = [
        {
            "id": item["productId"],
            "nombre": item["nombre"],
            "cantidad": item["quantity"],
            "precio": item["unitPrice"],
            "subtotal": item["lineTotal"],
            "currency": item["currency"],
        }
        for item in invoice_items
    ]
    resumen = {
        "cliente": buyer,
        "productos": productos,
        "totales": totales,
        "entrega": delivery,
        "pago": payment_block,
        "invoiceNumber": invoice_number,
    }
    stored_items = [
        {
            "productId": item["productId"],
            "cantidad": item["quantity"],
            "unitPrice": item["unitPrice"],
            "lineTotal": item["lineTotal"],
            "currency": item["currency"],
        }
        for item in invoice_items
    ]

    # 6. 注文を保存
    await session.execute(
        text("""
            INSERT INTO orders
                (id, code, user_id, items, summary, status, invoice_number, created_at)
            VALUES
                (:id, :code, :user_id, :items, :summary, :status, :invoice_number, :now)
        """),
        {
            "id": order_key,
            "code": code,
            "user_id": user_row["id"] if user_row else None,
            "items": dumps(stored_items),
            "summary": dumps(resumen),
            "status": CONFIRMED,
            "invoice_number": invoice_number,
            "now": now,
        },
    )

    # 7. 購入者の注文履歴
    if user_row is not None:
        await _record_order_for_user(session, user_row, {
            "orderId": order_key,
            "codigo": code,
            "fecha": now.isoformat(),
            "resumen": resumen,
        })

    order = {
        "_id": order_key,
        "id": code,
        "numeroOrden": code,
        "numeroFactura": invoice_number,
        "fecha": now.isoformat(),
        "estado": CONFIRMED,
        "cliente": buyer,
        "productos": productos,
        "totales": totales,
        "entrega": delivery,
        "pago": payment_block,
    }
    invoice = {
        "invoiceNumber": invoice_number,
        "issuedAt": now.isoformat(),
        "currency": currency,
        "user": buyer,
        "items": invoice_items,
        "totals": {
            "subtotal": totales["subtotal"],
            "taxRate": float(rate),
            "taxes": totales["iva"],
            "shipping": totales["envio"],
            "discount": totales["discount"],
            "total": totales["total"],
        },
        "orderId": order_key,
        "orderCode": code,
    }
    return CheckoutResult(order=order, invoice=invoice)


async def _load_user(session: AsyncSession, user_id: str) -> dict | None:
    result = await session.execute(
        text("""
            SELECT id, first_name, last_name, email, phone, document_id, orders, version
            FROM users WHERE id = :id
        """),
        {"id": user_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return {
        "id": str(row.id),
        "firstName": row.first_name,
        "lastName": row.last_name,
        "email": row.email,
        "phone": row.phone,
        "document": row.document_id,
        "orders": loads(row.orders, []),
        "version": row.version,
    }


async def _load_products(session: AsyncSession, product_ids: list[str]) -> dict[str, dict]:
    result = await session.execute(_SELECT_PRODUCTS, {"ids": list(dict.fromkeys(product_ids))})
    return {
        str(row.id): {
            "id": str(row.id),
            "name": row.name,
            "price": row.price,
            "discount_pct": row.discount_pct,
            "stock": row.stock,
        }
        for row in result.fetchall()
    }


async def _decrement_stock(
    session: AsyncSession,
    product: dict,
    quantity: int,
    now: datetime,
) -> None:
    """
    条件付き減算。WHERE 句は行ロック下で評価されるため、
    同時に2つのチェックアウトが最後の在庫を取り合うことはない。
    """
    result = await session.execute(
        text("""
            UPDATE products
            SET stock = stock - :qty, updated_at = :now
            WHERE id = :id AND stock >= :qty
        """),
        {"qty": quantity, "now": now, "id": product["id"]},
    )
    if result.rowcount != 1:
        raise InsufficientStock(f"Insufficient stock for {product['name'] or product['id']}")


async def _record_order_for_user(session: AsyncSession, user_row: dict, entry: dict) -> None:
    """カートを空にして注文履歴に追記する (バージョン付き保存)"""
    history = list(user_row["orders"]) + [entry]
    result = await session.execute(
        text("""
            UPDATE users
            SET cart = '[]', orders = :orders, version = version + 1
            WHERE id = :id AND version = :version
        """),
        {"orders": dumps(history), "id": user_row["id"], "version": user_row["version"]},
    )
    if result.rowcount != 1:
        raise StorageFailure("User record changed during checkout")
