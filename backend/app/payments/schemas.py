"""Payment domain enums and webhook payload variants.

Inbound notifications are validated once at the HTTP boundary into one of
the variants below (discriminated by ``type``); business logic never pokes
at the raw dict.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.core.exceptions import InvalidWebhookPayloadError


class PaymentStatus(str, Enum):
    """Local mirror of the processor's payment states."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    AUTHORIZED = "AUTHORIZED"
    IN_PROCESS = "IN_PROCESS"
    IN_MEDIATION = "IN_MEDIATION"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    CHARGED_BACK = "CHARGED_BACK"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"


class FinalizationState(str, Enum):
    PENDING = "pending"
    DONE = "done"


# Mercado Pago status strings -> PaymentStatus
PROCESSOR_STATUS_MAP: dict[str, PaymentStatus] = {
    "pending": PaymentStatus.PENDING,
    "approved": PaymentStatus.APPROVED,
    "authorized": PaymentStatus.AUTHORIZED,
    "in_process": PaymentStatus.IN_PROCESS,
    "in_mediation": PaymentStatus.IN_MEDIATION,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.REFUNDED,
    "charged_back": PaymentStatus.CHARGED_BACK,
}


def map_processor_status(raw: str | None) -> PaymentStatus:
    """Map a processor status string to PaymentStatus (unknown -> PENDING)."""
    if not raw:
        return PaymentStatus.PENDING
    return PROCESSOR_STATUS_MAP.get(raw.lower(), PaymentStatus.PENDING)


# ── Webhook payload variants ────────────────────────────────────────


class NotificationData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        # Mercado Pago sends numeric ids in some notification versions
        if isinstance(value, bool) or value is None:
            raise ValueError("data.id is required")
        text = str(value).strip()
        if not text:
            raise ValueError("data.id is required")
        return text


class _NotificationBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | int | None = None
    action: str | None = None
    data: NotificationData
    live_mode: bool = False
    date_created: datetime | None = None
    user_id: str | int | None = None
    api_version: str | None = None

    @property
    def resource_id(self) -> str:
        return self.data.id


class PaymentNotification(_NotificationBase):
    type: Literal["payment"]
    kind: Literal["payment"] = "payment"


class MerchantOrderNotification(_NotificationBase):
    type: Literal["merchant_order"]
    kind: Literal["merchant_order"] = "merchant_order"


class UnrecognizedNotification(_NotificationBase):
    """Any other notification type: stored and acknowledged, never acted on."""

    type: str = Field(min_length=1)
    kind: Literal["unrecognized"] = "unrecognized"


WebhookNotification = PaymentNotification | MerchantOrderNotification | UnrecognizedNotification

_VARIANTS: dict[str, type[_NotificationBase]] = {
    "payment": PaymentNotification,
    "merchant_order": MerchantOrderNotification,
}


def parse_notification(body: Any) -> WebhookNotification:
    """Validate a decoded webhook body into its typed variant.

    Raises:
        InvalidWebhookPayloadError: body is not an object, or lacks type / data.id
    """
    if not isinstance(body, dict):
        raise InvalidWebhookPayloadError("Webhook body must be a JSON object")

    event_type = body.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise InvalidWebhookPayloadError("Webhook body is missing 'type'")

    variant = _VARIANTS.get(event_type, UnrecognizedNotification)
    try:
        return variant.model_validate(body)
    except ValidationError as exc:
        raise InvalidWebhookPayloadError(f"Invalid webhook structure: {exc.errors()[0]['msg']}") from exc


# ── Processor payment snapshot ──────────────────────────────────────


class ProcessorPayment(BaseModel):
    """Authoritative payment object as fetched from the processor API."""

    id: str
    status: PaymentStatus
    status_detail: str | None = None
    transaction_amount: float | None = None
    net_received_amount: float | None = None
    payment_method_id: str | None = None
    payment_type_id: str | None = None
    external_reference: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "ProcessorPayment":
        details = payload.get("transaction_details") or {}
        return cls(
            id=str(payload["id"]),
            status=map_processor_status(payload.get("status")),
            status_detail=payload.get("status_detail"),
            transaction_amount=payload.get("transaction_amount"),
            net_received_amount=details.get("net_received_amount"),
            payment_method_id=payload.get("payment_method_id"),
            payment_type_id=payload.get("payment_type_id"),
            external_reference=payload.get("external_reference"),
            metadata=payload.get("metadata") or {},
            raw=payload,
        )


# ── Processing outcomes ─────────────────────────────────────────────


@dataclass
class ProcessingResult:
    """Outcome of one processing attempt for a stored webhook event."""

    applied: bool
    order_id: str | None = None
    error: str | None = None
    retryable: bool = False
    previous_status: PaymentStatus | None = None
    new_status: PaymentStatus | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class FinalizationResult:
    order_id: str
    already_finalized: bool = False
    completed_steps: list[str] = field(default_factory=list)
    failed_steps: dict[str, str] = field(default_factory=dict)
    done: bool = False
