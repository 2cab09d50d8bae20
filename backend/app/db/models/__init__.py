"""Re-export all models so Base.metadata sees them."""

from app.db.models.financial_summary import FinancialSummary
from app.db.models.order import Order, OrderFile, OrderItem, Product
from app.db.models.payment import Payment
from app.db.models.webhook_event import WebhookEvent

__all__ = [
    "FinancialSummary",
    "Order",
    "OrderFile",
    "OrderItem",
    "Payment",
    "Product",
    "WebhookEvent",
]
