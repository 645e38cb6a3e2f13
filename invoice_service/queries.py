"""
Invoice Service: 注文クエリ (CQRS Read 側)

注文は表示用コード ("31") か内部キー (UUID) のどちらでも引ける。
返すのはレンダラーが期待する形の保存済みドキュメント。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import as_datetime, loads
from .validation import canonical_id


def is_order_identifier(identifier: str) -> bool:
    return identifier.isdigit() or canonical_id(identifier) is not None


async def get_order(session: AsyncSession, identifier: str) -> dict | None:
    if identifier.isdigit():
        column, key = "code", identifier
    else:
        column, key = "id", canonical_id(identifier)
        if key is None:
            return None
    result = await session.execute(
        text(f"SELECT * FROM orders WHERE {column} = :identifier"),
        {"identifier": key},
    )
    row = result.fetchone()
    if not row:
        return None
    created_at = as_datetime(row.created_at)
    return {
        "_id": str(row.id),
        "id": row.code,
        "userId": row.user_id,
        "items": loads(row.items, []),
        "resumen": loads(row.summary, {}),
        "estado": row.status,
        "numeroFactura": row.invoice_number,
        "fecha": created_at.isoformat() if created_at else None,
    }
