"""
Invoice Service: メール送信

SMTP は直接話さず、HTTP のメール API に POST する。
MAIL_API_URL が未設定ならログに書くだけ (ローカル開発とテスト用)。
"""

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MailResult:
    ok: bool
    error: str | None = None


class MailTransport(Protocol):
    async def send_mail(self, to: str, subject: str, html: str) -> MailResult:
        ...


class HttpMailTransport:
    def __init__(
        self,
        api_url: str,
        sender: str,
        api_key: str | None = None,
        timeout: float = 10.0,
    ):
        self.api_url = api_url
        self.sender = sender
        self.api_key = api_key
        self.timeout = timeout

    async def send_mail(self, to: str, subject: str, html: str) -> MailResult:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                resp = await client.post(
                    self.api_url,
                    json={"from": self.sender, "to": [to], "subject": subject, "html": html},
                    headers=headers,
                )
                resp.raise_for_status()
            except httpx.HTTPStatusError as e:
                return MailResult(ok=False, error=f"{e.response.status_code}: {e.response.text}")
            except httpx.HTTPError as e:
                return MailResult(ok=False, error=str(e))
        return MailResult(ok=True)


class LogMailTransport:
    async def send_mail(self, to: str, subject: str, html: str) -> MailResult:
        logger.info("Mail to %s: %s", to, subject)
        return MailResult(ok=True)
