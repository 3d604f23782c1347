from partsmarket.models.user import User
from partsmarket.models.customer import Customer, Address
from partsmarket.models.payee import Vendor, Driver
from partsmarket.models.catalog import Part, Promotion
from partsmarket.models.order import Order, OrderItem
from partsmarket.models.delivery import Delivery
from partsmarket.models.transaction import Transaction, Refund
from partsmarket.models.payout_request import PayoutRequest
from partsmarket.models.audit_log import AuditLog
from partsmarket.models.platform_event import PlatformEvent
from partsmarket.models.webhook_event import WebhookEvent
from partsmarket.models.notification import Notification
from partsmarket.models.snapshots import BankSnapshot, RequestedEarnings, TransactionMetadata

__all__ = [
    "User",
    "Customer",
    "Address",
    "Vendor",
    "Driver",
    "Part",
    "Promotion",
    "Order",
    "OrderItem",
    "Delivery",
    "Transaction",
    "Refund",
    "PayoutRequest",
    "AuditLog",
    "PlatformEvent",
    "WebhookEvent",
    "Notification",
    "BankSnapshot",
    "RequestedEarnings",
    "TransactionMetadata",
]
