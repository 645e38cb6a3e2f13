"""
Invoice Service: 注文番号の採番

注文コードは名前付きカウンター行1つから払い出す。インクリメント、
行の遅延作成、下限値への引き上げを1つの upsert 文で行うので、
2つの呼び出しが同じ値を読むことはない。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

DEFAULT_NAME = "order-id"
DEFAULT_SEED = 29
DEFAULT_FLOOR = 30

_ALLOCATE = text("""
    INSERT INTO order_sequences (name, value)
    VALUES (:name, :initial)
    ON CONFLICT (name) DO UPDATE SET value = CASE
        WHEN order_sequences.value + 1 < CAST(:floor AS INTEGER) THEN CAST(:floor AS INTEGER)
        ELSE order_sequences.value + 1
    END
    RETURNING value
""")


class OrderSequence:
    """
    表示用注文番号の単調増加カウンター

    新しいカウンターは `seed` から始まり、最初の払い出しは seed + 1。
    `floor` 未満の値 (旧データ、小さい seed) はちょうど `floor` に引き上げる。
    欠番は許容する: ロールバックしたチェックアウトは番号を返すが、
    クラッシュしたものは返さないことがある。
    """

    def __init__(
        self,
        name: str = DEFAULT_NAME,
        seed: int = DEFAULT_SEED,
        floor: int = DEFAULT_FLOOR,
    ) -> None:
        self.name = name
        self.seed = seed
        self.floor = floor

    async def next_order_id(self, session: AsyncSession) -> int:
        result = await session.execute(
            _ALLOCATE,
            {
                "name": self.name,
                "initial": max(self.seed + 1, self.floor),
                "floor": self.floor,
            },
        )
        return int(result.scalar_one())
