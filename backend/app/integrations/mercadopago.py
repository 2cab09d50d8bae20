"""Mercado Pago REST client: the single source of truth for payment status.

Only the read side used by reconciliation lives here. Every call has a
bounded timeout; a timeout is a transient failure, never a negative answer.
"""

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import Settings, get_settings
from app.core.exceptions import PaymentNotFoundError, ProcessorAPIError, ProcessorTimeoutError
from app.payments.schemas import ProcessorPayment

logger = structlog.get_logger(__name__)


class MercadoPagoClient:
    """Client for the Mercado Pago payments API."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            settings: Settings override (defaults to get_settings())
            transport: httpx transport override, used by tests
        """
        self.settings = settings or get_settings()
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.mercadopago_access_token}",
            "Accept": "application/json",
        }

    async def fetch_payment(self, payment_id: str) -> ProcessorPayment:
        """Fetch the authoritative payment object.

        Args:
            payment_id: Processor-assigned payment id

        Returns:
            ProcessorPayment snapshot

        Raises:
            ProcessorTimeoutError: no answer within the configured timeout
            PaymentNotFoundError: processor answered 404
            ProcessorAPIError: connection failure, 5xx or unexpected response
        """
        if not self.settings.mercadopago_access_token:
            raise ProcessorAPIError("Mercado Pago access token is not configured")
        return await self._fetch_payment(payment_id)

    @retry(
        retry=retry_if_exception_type(ProcessorAPIError)
        & retry_if_not_exception_type((ProcessorTimeoutError, PaymentNotFoundError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "mercadopago_request_retrying",
            attempt=rs.attempt_number,
            sleep_seconds=rs.next_action.sleep,
        ),
    )
    async def _fetch_payment(self, payment_id: str) -> ProcessorPayment:
        try:
            async with httpx.AsyncClient(
                base_url=self.settings.mercadopago_api_url,
                timeout=self.settings.mercadopago_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.get(f"/v1/payments/{payment_id}", headers=self._headers())
        except httpx.TimeoutException as exc:
            logger.warning("mercadopago_timeout", payment_id=payment_id)
            raise ProcessorTimeoutError(f"Timed out fetching payment {payment_id}") from exc
        except httpx.HTTPError as exc:
            raise ProcessorAPIError(f"Failed to reach Mercado Pago: {exc}") from exc

        if response.status_code == 404:
            raise PaymentNotFoundError(payment_id)
        if response.status_code >= 400:
            raise ProcessorAPIError(
                f"Mercado Pago returned {response.status_code} for payment {payment_id}"
            )

        try:
            payload = response.json()
            return ProcessorPayment.from_api(payload)
        except (ValueError, KeyError) as exc:
            raise ProcessorAPIError(f"Unexpected payment payload for {payment_id}") from exc
