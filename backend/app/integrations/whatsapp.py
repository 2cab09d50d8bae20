"""Customer notifications over WhatsApp (Evolution API)."""

import re
from typing import Protocol

import httpx
import structlog

from app.core.config import Settings, get_settings
from app.core.exceptions import NotificationError
from app.db.models.order import Order

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def notify_customer(self, order: Order, event: str) -> bool:
        """Send ``event`` for ``order``.

        Returns False when there is nobody or nothing to notify.
        Raises NotificationError when delivery failed and should be retried.
        """
        ...


_MESSAGES = {
    "payment_approved": (
        "🎉 *Pagamento confirmado!*\n\n"
        "Pedido: #{short_id}\n"
        "Total: R$ {total:.2f}\n\n"
        "_Obrigado pela preferência!_"
    ),
}


def normalize_phone(phone: str) -> str:
    """Digits only, with the Brazilian country code."""
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("55") and len(digits) in (12, 13):
        return digits
    return f"55{digits}"


class WhatsAppNotifier:
    """Sends text messages through an Evolution API instance."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ):
        self.settings = settings or get_settings()
        self._transport = transport
        self._timeout = timeout

    @property
    def is_configured(self) -> bool:
        s = self.settings
        return bool(s.whatsapp_api_url and s.whatsapp_api_key and s.whatsapp_instance)

    async def notify_customer(self, order: Order, event: str) -> bool:
        if not self.is_configured:
            logger.info("whatsapp_not_configured_skipping", order_id=order.id, notification=event)
            return False
        if not order.customer_phone:
            logger.info("customer_phone_missing_skipping", order_id=order.id, notification=event)
            return False

        template = _MESSAGES.get(event)
        if template is None:
            logger.warning("notification_template_unknown", notification=event)
            return False

        text = template.format(short_id=order.id[:8].upper(), total=order.grand_total or 0.0)
        url = f"{self.settings.whatsapp_api_url.rstrip('/')}/message/sendText/{self.settings.whatsapp_instance}"

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    headers={"apikey": self.settings.whatsapp_api_key},
                    json={"number": normalize_phone(order.customer_phone), "text": text},
                )
        except httpx.HTTPError as exc:
            raise NotificationError(f"WhatsApp request failed: {exc}") from exc

        if response.status_code >= 400:
            raise NotificationError(f"WhatsApp API returned {response.status_code}: {response.text[:200]}")

        logger.info("customer_notified", order_id=order.id, notification=event)
        return True
