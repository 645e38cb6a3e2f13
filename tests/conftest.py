from uuid import uuid4

import pytest
from sqlalchemy import event, text

from invoice_service.db import dumps, init_schema, loads, make_engine, make_session_factory


@pytest.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'invoices.db'}")

    # pysqlite は最初の書き込みまで BEGIN を遅らせる。先に書き込みロックを取り、
    # 同時トランザクションを行ロックと同じように順番待ちさせる
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def async_session(engine):
    return make_session_factory(engine)


class Store:
    """サービスのコードを通さずにデータを投入・確認するヘルパー"""

    def __init__(self, async_session):
        self.async_session = async_session

    async def add_product(self, name="Arroz", price=10.0, stock=10, discount_pct=0) -> str:
        product_id = str(uuid4())
        async with self.async_session() as session:
            await session.execute(
                text("""
                    INSERT INTO products (id, name, price, discount_pct, stock)
                    VALUES (:id, :name, :price, :discount_pct, :stock)
                """),
                {"id": product_id, "name": name, "price": price,
                 "discount_pct": discount_pct, "stock": stock},
            )
            await session.commit()
        return product_id

    async def add_user(self, first_name="Ana", email=None, cart=None, orders=None) -> str:
        user_id = str(uuid4())
        async with self.async_session() as session:
            await session.execute(
                text("""
                    INSERT INTO users (id, first_name, last_name, email, phone, cart, orders)
                    VALUES (:id, :first_name, 'Pérez', :email, '0999999999', :cart, :orders)
                """),
                {
                    "id": user_id,
                    "first_name": first_name,
                    "email": email or f"{user_id[:8]}@example.com",
                    "cart": dumps(cart or []),
                    "orders": dumps(orders or []),
                },
            )
            await session.commit()
        return user_id

    async def stock(self, product_id: str) -> int:
        async with self.async_session() as session:
            result = await session.execute(
                text("SELECT stock FROM products WHERE id = :id"), {"id": product_id}
            )
            return result.scalar_one()

    async def user(self, user_id: str) -> dict:
        async with self.async_session() as session:
            result = await session.execute(
                text("SELECT cart, orders, version FROM users WHERE id = :id"), {"id": user_id}
            )
            row = result.fetchone()
            return {"cart": loads(row.cart), "orders": loads(row.orders), "version": row.version}

    async def order_count(self) -> int:
        async with self.async_session() as session:
            result = await session.execute(text("SELECT COUNT(*) FROM orders"))
            return result.scalar_one()

    async def sequence_value(self, name="order-id"):
        async with self.async_session() as session:
            result = await session.execute(
                text("SELECT value FROM order_sequences WHERE name = :name"), {"name": name}
            )
            return result.scalar_one_or_none()

    async def execute(self, sql: str, params: dict | None = None) -> None:
        async with self.async_session() as session:
            await session.execute(text(sql), params or {})
            await session.commit()


@pytest.fixture
def store(async_session):
    return Store(async_session)
