"""
Invoice Service: 設定

値はすべて環境変数から読む。料金計算エンジンは定数を素の入力として
受け取るので、料金関連は専用の dataclass にまとめている。
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class PricingConfig:
    base_shipping_fee: Decimal = Decimal("3.50")
    per_item_shipping_fee: Decimal = Decimal("0.50")
    max_shipping_fee: Decimal = Decimal("20.00")
    default_tax_rate: Decimal = Decimal("0.15")
    default_currency: str = "USD"

    @classmethod
    def from_env(cls) -> "PricingConfig":
        return cls(
            base_shipping_fee=Decimal(os.environ.get("BASE_SHIPPING_FEE", "3.5")),
            per_item_shipping_fee=Decimal(os.environ.get("PER_ITEM_SHIPPING_FEE", "0.5")),
            max_shipping_fee=Decimal(os.environ.get("MAX_SHIPPING_FEE", "20")),
            default_tax_rate=Decimal(os.environ.get("DEFAULT_TAX_RATE", "0.15")),
            default_currency=os.environ.get("DEFAULT_CURRENCY", "USD").strip().upper(),
        )


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str | None = "redis://localhost:6379"
    app_base_url: str = "http://localhost:4000"
    log_level: str = "INFO"
    store_name: str = "Tatylu, Viveres"
    mail_api_url: str | None = None
    mail_api_key: str | None = None
    mail_from: str = "facturas@tatylu.ec"
    pricing: PricingConfig = field(default_factory=PricingConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        port = os.environ.get("PORT", "4000")
        return cls(
            database_url=os.environ.get(
                "DATABASE_URL", "postgresql+asyncpg://localhost/invoices"
            ),
            # REDIS_URL="" でイベント発行を無効化
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379") or None,
            app_base_url=os.environ.get("APP_BASE_URL", f"http://localhost:{port}"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            store_name=os.environ.get("STORE_NAME", "Tatylu, Viveres"),
            mail_api_url=os.environ.get("MAIL_API_URL") or None,
            mail_api_key=os.environ.get("MAIL_API_KEY") or None,
            mail_from=os.environ.get("MAIL_FROM", "facturas@tatylu.ec"),
            pricing=PricingConfig.from_env(),
        )
