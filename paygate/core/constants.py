import enum


class GatewayName(str, enum.Enum):
    gcash = "gcash"
    maya = "maya"
    stripe = "stripe"
    paypal = "paypal"


class PaymentMethod(str, enum.Enum):
    """Method recorded on a payment attempt (gateways plus offline cash)"""

    gcash = "gcash"
    maya = "maya"
    stripe = "stripe"
    paypal = "paypal"
    cash = "cash"


class PaymentStatus(str, enum.Enum):
    """Standardized status vocabulary shared by every gateway"""

    pending = "pending"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"
    refunded = "refunded"


class WebhookEventType(str, enum.Enum):
    payment_completed = "payment.completed"
    payment_failed = "payment.failed"
    payment_cancelled = "payment.cancelled"
    refund_completed = "refund.completed"
    unknown = "unknown"


class OrderPaymentStatus(str, enum.Enum):
    pending = "pending"
    paid = "paid"


class ReconcileOutcome(str, enum.Enum):
    """Result of applying an event to the payment record store"""

    applied = "applied"  # status changed
    no_op = "no_op"  # record found, transition not allowed or already applied
    ignored = "ignored"  # unknown event type
    not_found = "not_found"  # no record for the transaction id


# Terminal states; only completed -> refunded may still move
TERMINAL_STATUSES = frozenset(
    {
        PaymentStatus.completed,
        PaymentStatus.failed,
        PaymentStatus.cancelled,
        PaymentStatus.refunded,
    }
)

# target status -> statuses it may be reached from
ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.completed: frozenset({PaymentStatus.pending}),
    PaymentStatus.failed: frozenset({PaymentStatus.pending}),
    PaymentStatus.cancelled: frozenset({PaymentStatus.pending}),
    PaymentStatus.refunded: frozenset({PaymentStatus.completed}),
}

EVENT_TARGET_STATUS: dict[WebhookEventType, PaymentStatus] = {
    WebhookEventType.payment_completed: PaymentStatus.completed,
    WebhookEventType.payment_failed: PaymentStatus.failed,
    WebhookEventType.payment_cancelled: PaymentStatus.cancelled,
    WebhookEventType.refund_completed: PaymentStatus.refunded,
}

DEFAULT_GATEWAY = GatewayName.gcash
