"""
Order Lifecycle

Provides the order aggregate and the workflow engine that moves orders
through payment, approval and shipment:
pending_payment → pending_approval → approved → shipped → delivered,
with rejected reachable from pending_approval.
"""

from .models import (
    Actor,
    CartItem,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentProof,
    PlaceOrderRequest,
    RejectOrderRequest,
    Role,
    ShipmentDetails,
    SubmitPaymentProofRequest,
    TransitionResponse,
)
from .workflow import (
    OrderAction,
    OrderNotFoundError,
    OrderValidationError,
    OrderWorkflow,
    TRANSITIONS,
    UnauthorizedActionError,
    WorkflowError,
)
from .image_host import ImageHostClient

__all__ = [
    "Actor",
    "CartItem",
    "Order",
    "OrderStatus",
    "PaymentMethod",
    "PaymentProof",
    "PlaceOrderRequest",
    "RejectOrderRequest",
    "Role",
    "ShipmentDetails",
    "SubmitPaymentProofRequest",
    "TransitionResponse",
    "OrderAction",
    "OrderNotFoundError",
    "OrderValidationError",
    "OrderWorkflow",
    "TRANSITIONS",
    "UnauthorizedActionError",
    "WorkflowError",
    "ImageHostClient",
]
