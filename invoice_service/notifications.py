"""
Invoice Service: 購入者への通知

チェックアウトのトランザクションがコミットされた後に動く。notify() は
タスクを予約して即座に返るので、HTTP レスポンスがメール API や Redis を
待つことはない。タスクの失敗はログに残すだけで、確定済みの注文はそのまま。

メールに加えて、下流の購読者向けに InvoiceIssued イベントを
Redis の `order_events` チャネルに発行する。
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis

from .mailer import MailTransport
from .rendering import env

logger = logging.getLogger(__name__)

SUBJECT = "Factura disponible - Tatylu"
CHANNEL = "order_events"


class NotificationDispatcher:
    def __init__(
        self,
        transport: MailTransport,
        base_url: str,
        redis: aioredis.Redis | None = None,
        subject: str = SUBJECT,
    ):
        self.transport = transport
        self.base_url = base_url.rstrip("/")
        self.redis = redis
        self.subject = subject
        self._tasks: set[asyncio.Task] = set()

    def notify(self, order: dict, email: str) -> asyncio.Task:
        """通知を予約し、完了を待たずに返す"""
        task = asyncio.create_task(
            self._deliver(order, email), name=f"notify-order-{order.get('id')}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """実行中の通知を待つ (シャットダウン時、テスト用)"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def invoice_link(self, order: dict) -> str:
        return f"{self.base_url}/invoices/{order.get('id')}"

    def build_email(self, order: dict, email: str) -> str:
        cliente = order.get("cliente") or {}
        return env.get_template("invoice_email.html").render(
            name=cliente.get("nombre") or email,
            number=order.get("numeroFactura") or "",
            link=self.invoice_link(order),
        )

    async def _deliver(self, order: dict, email: str) -> None:
        if email:
            await self._send_invoice_mail(order, email)
        if self.redis is not None:
            await self._publish(order)

    async def _send_invoice_mail(self, order: dict, email: str) -> None:
        try:
            result = await self.transport.send_mail(
                to=email, subject=self.subject, html=self.build_email(order, email)
            )
            if not result.ok:
                logger.error("Invoice email failed for order %s: %s", order.get("id"), result.error)
        except Exception:
            logger.exception("Error sending invoice email for order %s", order.get("id"))

    async def _publish(self, order: dict) -> None:
        try:
            await self.redis.publish(CHANNEL, json.dumps({
                "event_type": "InvoiceIssued",
                "data": {
                    "order_id": order.get("_id"),
                    "order_code": order.get("id"),
                    "invoice_number": order.get("numeroFactura"),
                    "total": (order.get("totales") or {}).get("total"),
                    "timestamp": order.get("fecha"),
                },
            }, default=str))
        except Exception:
            logger.exception("Failed to publish InvoiceIssued for order %s", order.get("id"))
