class ReconcilerError(Exception):
    """Base exception for the payment reconciliation backend."""

    pass


class WebhookVerificationError(ReconcilerError):
    """Raised when an inbound webhook fails signature, freshness or IP checks."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Webhook rejected: {reason}")


class InvalidWebhookPayloadError(ReconcilerError):
    """Raised when a webhook body is not a structurally valid notification."""

    pass


class ProcessorAPIError(ReconcilerError):
    """Raised when the payment processor API cannot be reached or fails.

    Always transient from the reconciler's point of view.
    """

    pass


class ProcessorTimeoutError(ProcessorAPIError):
    """Raised when the payment processor API does not answer in time."""

    pass


class PaymentNotFoundError(ProcessorAPIError):
    """Raised when the processor does not know the payment id (yet)."""

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment '{payment_id}' not found at processor")


class OrderNotResolvedError(ReconcilerError):
    """Raised when no local order can be matched to a processor payment."""

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"No order found for payment '{payment_id}'")


class OrderNotFoundError(ReconcilerError):
    """Raised when an order id does not exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order '{order_id}' not found")


class FinalizationNotAllowedError(ReconcilerError):
    """Raised when finalization is requested for an order without an approved payment."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order '{order_id}' has no approved payment")


class NotificationError(ReconcilerError):
    """Raised when a customer notification could not be delivered."""

    pass
