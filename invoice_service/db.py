"""
Invoice Service: ストレージ設定

DB へのアクセスは AsyncSession 上の生 SQL (sqlalchemy.text) で行う。
ドキュメント (カート、注文履歴、明細、サマリー) は JSON 文字列として
テキスト列に保存するので、同じスキーマが PostgreSQL と SQLite で動く。
"""

import json
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS products (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        price NUMERIC(12, 2) NOT NULL DEFAULT 0,
        discount_pct NUMERIC(5, 2) NOT NULL DEFAULT 0,
        stock INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        first_name TEXT NOT NULL,
        last_name TEXT,
        email TEXT NOT NULL UNIQUE,
        phone TEXT,
        document_id TEXT,
        cart TEXT NOT NULL DEFAULT '[]',
        orders TEXT NOT NULL DEFAULT '[]',
        version INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_sequences (
        name TEXT PRIMARY KEY,
        value INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        user_id TEXT,
        items TEXT NOT NULL DEFAULT '[]',
        summary TEXT NOT NULL DEFAULT '{}',
        status TEXT NOT NULL DEFAULT 'pending',
        invoice_number TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
)


def make_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """テーブルがなければ作成する。起動のたびに実行してよい"""
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


def dumps(value) -> str:
    return json.dumps(value, default=str)


def loads(value, default=None):
    """JSON 列をデコード。ドライバによって str かデコード済みの値が返る"""
    if value is None:
        return default
    return json.loads(value) if isinstance(value, str) else value


def as_datetime(value) -> datetime | None:
    """SQLite はタイムスタンプを文字列で、PostgreSQL は datetime で返す"""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
