"""
Invoice Service: リクエスト正規化

形の揺れたチェックアウトのリクエストボディを、トランザクション開始前に
正規の値へ変換する。フィールドの別名は、同じエンドポイントに投稿する
複数のクライアント(ストアフロント、管理画面、旧モバイル版)の名残。
"""

import math
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from .errors import InvalidInput
from .pricing import ZERO, round_money, to_decimal

PRODUCT_REF_KEYS = ("productId", "id", "_id", "codigo")
QUANTITY_KEYS = ("quantity", "cantidad")

# stock は INTEGER 列 (32bit 符号付き)
MAX_QUANTITY = 2**31 - 1


@dataclass(frozen=True)
class LineRequest:
    product_id: str
    quantity: int


def canonical_id(value: Any) -> str | None:
    """
    UUID として解釈できれば保存形式 (小文字・ハイフン区切り) を返す。

    大文字、{...} 囲み、urn:uuid: 付き、ハイフンなしも同じキーになる。
    """
    try:
        return str(UUID(str(value).strip()))
    except ValueError:
        return None


def is_valid_id(value: Any) -> bool:
    return canonical_id(value) is not None


def _first_truthy(source: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = source.get(key)
        if value:
            return value
    return default


def _first_present(source: dict, *keys: str) -> Any:
    for key in keys:
        if source.get(key) is not None:
            return source[key]
    return None


def _to_quantity(value: Any) -> int | None:
    number = to_decimal(value, default=None)
    if number is None:
        return None
    floored = math.floor(number)
    if floored < 1 or floored > MAX_QUANTITY:
        return None
    return floored


def validate_items(raw_items: Any) -> list[LineRequest]:
    """
    商品リストを先頭から検証し、最初の不正な要素で失敗する。

    同じ商品の重複指定は別々の行として扱い、行ごとに在庫を確認・減算する。
    """
    if not isinstance(raw_items, list) or not raw_items:
        raise InvalidInput("products array is required")

    lines: list[LineRequest] = []
    for entry in raw_items:
        entry = entry if isinstance(entry, dict) else {}
        raw_id = _first_truthy(entry, *PRODUCT_REF_KEYS)
        product_id = str(raw_id).strip() if raw_id else ""
        if not product_id:
            raise InvalidInput("Each item must include productId")
        key = canonical_id(product_id)
        if key is None:
            raise InvalidInput(f"Invalid productId format: {product_id}")

        quantity = _to_quantity(_first_present(entry, *QUANTITY_KEYS))
        if quantity is None:
            raise InvalidInput(f"Invalid quantity for product {product_id}")
        lines.append(LineRequest(product_id=key, quantity=quantity))
    return lines


def pick_user_fields(source: dict | None) -> dict | None:
    """注文サマリーに保存する購入者スナップショット"""
    if not source:
        return None
    return {
        "id": str(source["id"]) if source.get("id") else None,
        "nombre": _first_truthy(source, "nombre", "firstName", "name", default=""),
        "apellido": _first_truthy(source, "apellido", "lastName", default=""),
        "email": source.get("email") or "",
        "telefono": _first_truthy(source, "telefono", "phone", default=""),
        "cedula": _first_truthy(source, "cedula", "document", default=""),
    }


def validate_buyer(user_id: Any, user: Any) -> tuple[str | None, dict | None]:
    """
    登録ユーザーの参照か、インラインの購入者情報のどちらかが必須。

    登録ユーザーなら (user_id, None)、インラインなら (None, snapshot) を返す。
    登録ユーザー本体はトランザクション内で読み込む。
    """
    if user_id:
        key = canonical_id(user_id)
        if key is None:
            raise InvalidInput(f"Invalid userId format: {user_id}")
        return key, None
    if (
        isinstance(user, dict)
        and user.get("email")
        and _first_truthy(user, "nombre", "firstName", "name")
    ):
        return None, pick_user_fields(user)
    raise InvalidInput("Provide userId or user object with nombre and email")


def shipping_info(source: dict, comments: Any = None) -> dict:
    """配送情報 (costo なし、呼び出し側で付与する)"""
    return {
        "direccion": _first_truthy(source, "direccion", "address", default=""),
        "referencias": _first_truthy(source, "referencias", "reference", default=""),
        "contacto": _first_truthy(source, "contacto", "contact", default=""),
        "instrucciones": _first_truthy(source, "instrucciones", "instructions")
        or comments
        or "",
        "fechaEstimada": source.get("fechaEstimada") or None,
        "location": _first_truthy(source, "location", "latLong"),
    }


def payment_info(source: dict, fallback_method: Any = None) -> dict:
    method = _first_truthy(source, "metodo", "method") or fallback_method or "no-especificado"
    return {
        "metodo": method,
        "metodoPagoNombre": _first_truthy(source, "metodoPagoNombre", "methodName") or method,
        "referencia": _first_truthy(source, "referencia", "reference", default=""),
        "estado": source.get("estado") or "pagado",
    }


def normalize_discount(discount: Any, totals: Any = None):
    if discount is None and isinstance(totals, dict):
        discount = totals.get("discount")
    return max(ZERO, round_money(to_decimal(discount)))


def normalize_tax_rate(value: Any, default):
    # 数値型のみ有効。文字列の "0.2" は無視
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if not math.isfinite(value):
        return default
    return to_decimal(value)


def normalize_currency(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip().upper()
    return default
