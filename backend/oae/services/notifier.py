import logging
from abc import ABC, abstractmethod
from typing import Optional
import httpx

from oae.chains.http import send
from oae.core.errors import AdapterRejected, AdapterUnavailable

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


def format_deposit(payload: dict) -> str:
    label = f" ({payload['label']})" if payload.get("label") else ""
    return (
        f"<b>Deposit confirmed</b>\n"
        f"{payload['amount']} {payload['chain']} to <code>{payload['address']}</code>{label}\n"
        f"tx <code>{payload['txid']}:{payload['vout']}</code>\n"
        f"confirmations: {payload['confirmations']}"
    )


class NotificationSink(ABC):
    """Where confirmed-deposit notices go. ``recipients`` are owning principals."""

    @abstractmethod
    async def send(self, payload: dict, recipients: list[str]) -> None:
        ...

    async def aclose(self) -> None:
        pass


class LogSink(NotificationSink):
    async def send(self, payload: dict, recipients: list[str]) -> None:
        logger.info(
            f"Deposit confirmed: {payload['amount']} {payload['chain']} "
            f"{payload['txid']}:{payload['vout']} -> {payload['address']} owners={recipients}"
        )


class TelegramSink(NotificationSink):
    """Telegram Bot API sink: the admin chat always, owners when they are Telegram users."""

    def __init__(self, bot_token: str, admin_chat_id: str, client: Optional[httpx.AsyncClient] = None):
        self.url = f"{TELEGRAM_API}/bot{bot_token}/sendMessage"
        self.admin_chat_id = admin_chat_id
        self.client = client or httpx.AsyncClient(timeout=10.0)

    async def _send(self, chat_id: str, text: str) -> None:
        resp = await send(
            self.client, "telegram", "POST", self.url,
            json={"chat_id": chat_id, "text": text, "parse_mode": "HTML"},
        )
        if resp.status_code == 404:
            raise AdapterRejected("telegram: bad bot token")
        data = resp.json()
        if not data.get("ok"):
            raise AdapterUnavailable(f"telegram: {data.get('description', 'not ok')}")

    async def send(self, payload: dict, recipients: list[str]) -> None:
        text = format_deposit(payload)
        if self.admin_chat_id:
            await self._send(self.admin_chat_id, text)
        for chat_id in recipients:
            if not str(chat_id).lstrip("-").isdigit() or str(chat_id) == str(self.admin_chat_id):
                continue
            try:
                await self._send(str(chat_id), text)
            except (AdapterRejected, AdapterUnavailable) as e:
                # owners are best effort; the admin chat is the delivery of record
                logger.warning(f"Telegram notice to {chat_id} failed: {e.message}")

    async def aclose(self) -> None:
        await self.client.aclose()
