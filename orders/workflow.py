import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Optional

from common.config import Settings, get_settings
from docstore import (
    ConflictError, DocumentStoreError, InMemoryDocumentStore, UpstreamUnavailableError, WriteBatch,
)
from ledger import InsufficientFundsError, LedgerEntry, LedgerService
from notifications import NotificationService, NotificationType

from . import messages
from .image_host import ImageHostClient
from .models import (
    Actor,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentProof,
    PlaceOrderRequest,
    RejectOrderRequest,
    Role,
    SubmitPaymentProofRequest,
    TransitionResponse,
)

logger = logging.getLogger(__name__)

ORDERS = "orders"


class WorkflowError(Exception):
    pass


class OrderNotFoundError(WorkflowError):
    pass


class OrderValidationError(WorkflowError):
    pass


class UnauthorizedActionError(WorkflowError):
    pass


class OrderAction(str, Enum):
    PLACE = "place"
    SUBMIT_PROOF = "submit_proof"
    APPROVE = "approve"
    REJECT = "reject"
    SHIP = "ship"
    DELAY = "delay"
    DELIVER = "deliver"


_BUYERS = frozenset({Role.CUSTOMER, Role.PAYMENTS_STAFF, Role.SHIPMENT_STAFF, Role.ORDERS_STAFF, Role.ADMIN})


@dataclass(frozen=True)
class Transition:
    action: OrderAction
    source: Optional[OrderStatus]
    target: OrderStatus
    roles: frozenset
    owner_only: bool = False

    def allows(self, actor: Actor, order: Optional[Order] = None) -> bool:
        if actor.role not in self.roles:
            return False
        if self.owner_only and order is not None:
            return order.user_id == actor.user_id
        return True


TRANSITIONS: dict[OrderAction, Transition] = {
    OrderAction.PLACE: Transition(
        OrderAction.PLACE, None, OrderStatus.PENDING_PAYMENT, _BUYERS, owner_only=True),
    OrderAction.SUBMIT_PROOF: Transition(
        OrderAction.SUBMIT_PROOF, OrderStatus.PENDING_PAYMENT, OrderStatus.PENDING_APPROVAL,
        _BUYERS, owner_only=True),
    OrderAction.APPROVE: Transition(
        OrderAction.APPROVE, OrderStatus.PENDING_APPROVAL, OrderStatus.APPROVED,
        frozenset({Role.PAYMENTS_STAFF, Role.ADMIN})),
    OrderAction.REJECT: Transition(
        OrderAction.REJECT, OrderStatus.PENDING_APPROVAL, OrderStatus.REJECTED,
        frozenset({Role.PAYMENTS_STAFF, Role.ORDERS_STAFF, Role.ADMIN})),
    OrderAction.SHIP: Transition(
        OrderAction.SHIP, OrderStatus.APPROVED, OrderStatus.SHIPPED,
        frozenset({Role.SHIPMENT_STAFF, Role.ADMIN})),
    # Sends a paid order back to payment approval; kept as observed in the storefront.
    OrderAction.DELAY: Transition(
        OrderAction.DELAY, OrderStatus.APPROVED, OrderStatus.PENDING_APPROVAL,
        frozenset({Role.SHIPMENT_STAFF, Role.ADMIN})),
    OrderAction.DELIVER: Transition(
        OrderAction.DELIVER, OrderStatus.SHIPPED, OrderStatus.DELIVERED,
        frozenset({Role.SHIPMENT_STAFF, Role.ADMIN, Role.SYSTEM})),
}


class OrderWorkflow:
    """
    Order lifecycle commands.

    Each command re-reads the order, checks the actor and the expected
    source status, then writes the new status together with its ledger
    and profile changes in one version-checked batch. Notifications go
    out only after that batch has committed.
    """

    def __init__(self, store: Optional[InMemoryDocumentStore] = None,
                 ledger: Optional[LedgerService] = None,
                 notifier: Optional[NotificationService] = None,
                 image_host: Optional[ImageHostClient] = None,
                 settings: Optional[Settings] = None):
        if store is None:
            store = ledger.store if ledger else InMemoryDocumentStore()
        self.store = store
        self.ledger = ledger or LedgerService(store)
        self.notifier = notifier or NotificationService(store)
        self.image_host = image_host
        self.settings = settings or get_settings()

    def place_order(self, actor: Actor, request: PlaceOrderRequest) -> Order:
        transition = TRANSITIONS[OrderAction.PLACE]
        if not transition.allows(actor):
            raise UnauthorizedActionError(f"{actor.role.value} cannot place orders")
        if not request.items:
            raise OrderValidationError("Cannot place an order with an empty cart")

        profile = self.ledger.get_profile(actor.user_id)
        total = sum((item.line_total for item in request.items), Decimal("0"))

        if request.payment_method == PaymentMethod.CASHBACK and profile.cashback_balance < total:
            needed = total - profile.cashback_balance
            raise InsufficientFundsError(
                f"Insufficient cashback balance. You need "
                f"{messages.format_price(needed, self.settings.CURRENCY_SYMBOL)} more; "
                f"switch to mixed payment to pay the rest by transfer"
            )

        now = datetime.now(timezone.utc)
        data = self.store.create(ORDERS, {
            "user_id": actor.user_id,
            "user_email": request.user_email or profile.email,
            "items": [item.model_dump() for item in request.items],
            "total_amount": total,
            "status": transition.target,
            "payment_method": request.payment_method,
            "shipment_details": request.shipment_details.model_dump(),
            "payment_proof": None,
            "rejection_reason": None,
            "cashback_debited": Decimal("0"),
            "created_at": now,
            "updated_at": now,
        })
        order = Order(**data)
        logger.info("Order %s placed by %s for %s (%s)",
                    order.reference, actor.user_id, total, order.payment_method.value)
        return order

    def submit_payment_proof(self, actor: Actor, order_id: str, request: SubmitPaymentProofRequest,
                             receipt: Optional[bytes] = None,
                             receipt_filename: str = "receipt.jpg") -> TransitionResponse:
        order, transition = self._begin(actor, order_id, OrderAction.SUBMIT_PROOF)
        sender_name = (request.sender_name or "").strip()
        if not sender_name:
            raise OrderValidationError("Sender name is required")

        batch = self.store.batch()
        entry = self._debit_cashback(order, batch)

        uploaded_url = None
        if receipt is not None:
            uploaded_url = self._upload_receipt(order, receipt, receipt_filename)
        proof = PaymentProof(sender_name=sender_name, image_url=uploaded_url or request.image_url,
                             timestamp=datetime.now(timezone.utc))
        self._stage_status(batch, order, transition, {
            "payment_proof": proof.model_dump(),
            "cashback_debited": entry.amount if entry else Decimal("0"),
        })
        try:
            self._commit(batch, order, transition)
        except DocumentStoreError:
            if uploaded_url:
                logger.warning("Receipt %s for order %s is hosted but not attached to the order",
                               uploaded_url, order.reference)
            raise

        return TransitionResponse(
            order=self._load(order.id),
            ledger_entry=self.ledger.get_entry(entry.id) if entry else None,
            message="Payment proof submitted; awaiting verification"
        )

    def approve_payment(self, actor: Actor, order_id: str) -> TransitionResponse:
        order, transition = self._begin(actor, order_id, OrderAction.APPROVE)
        if order.payment_proof is None or not order.payment_proof.sender_name:
            raise OrderValidationError(f"Order #{order.reference} has no payment proof to verify")

        batch = self.store.batch()
        self.ledger.record_completed_order(order.user_id, order.total_amount, batch)
        self._stage_status(batch, order, transition)
        self._commit(batch, order, transition)

        order = self._load(order.id)
        notification = self.notifier.notify(
            order.user_id, messages.payment_approved(order), NotificationType.SUCCESS)
        return TransitionResponse(order=order, notification=notification,
                                  message="Payment verified and approved")

    def reject_order(self, actor: Actor, order_id: str, request: RejectOrderRequest) -> TransitionResponse:
        order, transition = self._begin(actor, order_id, OrderAction.REJECT)
        reason = (request.reason or "").strip()
        if not reason:
            raise OrderValidationError("A rejection reason is required")

        batch = self.store.batch()
        entry = None
        if order.cashback_debited > 0:
            entry = self.ledger.credit(
                order.user_id, order.cashback_debited,
                f"Refund for rejected order #{order.reference}",
                order_id=order.id, batch=batch,
                metadata={"reason": reason, "performed_by": actor.user_id},
            )
        self._stage_status(batch, order, transition, {"rejection_reason": reason})
        self._commit(batch, order, transition)

        order = self._load(order.id)
        notification = self.notifier.notify(
            order.user_id,
            messages.order_rejected(order, reason, order.cashback_debited, self.settings),
            NotificationType.ERROR,
        )
        if entry is not None:
            entry = self.ledger.get_entry(entry.id)
        return TransitionResponse(order=order, ledger_entry=entry, notification=notification,
                                  message="Order rejected" + (" and refunded" if entry else ""))

    def ship_order(self, actor: Actor, order_id: str) -> TransitionResponse:
        order = self._apply_simple(actor, order_id, OrderAction.SHIP)
        notification = self.notifier.notify(
            order.user_id, messages.order_shipped(order, self.settings), NotificationType.SUCCESS)
        return TransitionResponse(order=order, notification=notification, message="Shipment approved")

    def delay_shipment(self, actor: Actor, order_id: str) -> TransitionResponse:
        order = self._apply_simple(actor, order_id, OrderAction.DELAY)
        notification = self.notifier.notify(
            order.user_id, messages.shipment_delayed(self.settings), NotificationType.WARNING)
        return TransitionResponse(order=order, notification=notification,
                                  message="Shipment marked as delayed")

    def mark_delivered(self, actor: Actor, order_id: str) -> TransitionResponse:
        order = self._apply_simple(actor, order_id, OrderAction.DELIVER)
        return TransitionResponse(order=order, message="Order delivered")

    def get_order(self, actor: Actor, order_id: str) -> Order:
        order = self._load(order_id)
        if actor.role == Role.CUSTOMER and order.user_id != actor.user_id:
            raise UnauthorizedActionError("Customers can only view their own orders")
        return order

    def list_orders(self, user_id: Optional[str] = None,
                    statuses: Optional[Iterable[OrderStatus]] = None) -> list[Order]:
        filters = {}
        if user_id is not None:
            filters["user_id"] = user_id
        if statuses is not None:
            filters["status"] = tuple(statuses)
        return [Order(**o) for o in
                self.store.query(ORDERS, filters, order_by="created_at", descending=True)]

    def payments_queue(self) -> list[Order]:
        orders = self.list_orders()
        orders.sort(key=lambda o: o.status != OrderStatus.PENDING_APPROVAL)
        return orders

    def shipment_queue(self) -> list[Order]:
        orders = self.list_orders(statuses=(OrderStatus.APPROVED, OrderStatus.SHIPPED))
        orders.sort(key=lambda o: o.status != OrderStatus.APPROVED)
        return orders

    def watch_orders(self, callback: Callable[[list[Order]], None],
                     user_id: Optional[str] = None) -> Callable[[], None]:
        return self.store.subscribe(
            ORDERS,
            lambda docs: callback([Order(**o) for o in docs]),
            filters={"user_id": user_id} if user_id is not None else None,
            order_by="created_at",
            descending=True,
        )

    def _load(self, order_id: str) -> Order:
        data = self.store.get(ORDERS, order_id)
        if not data:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return Order(**data)

    def _begin(self, actor: Actor, order_id: str, action: OrderAction) -> tuple[Order, Transition]:
        transition = TRANSITIONS[action]
        order = self._load(order_id)
        if not transition.allows(actor, order):
            raise UnauthorizedActionError(
                f"{actor.role.value} {actor.user_id} may not {action.value} order #{order.reference}"
            )
        if order.status != transition.source:
            raise ConflictError(
                f"Order #{order.reference} is {order.status.value}, expected {transition.source.value}"
            )
        return order, transition

    def _apply_simple(self, actor: Actor, order_id: str, action: OrderAction) -> Order:
        order, transition = self._begin(actor, order_id, action)
        batch = self.store.batch()
        self._stage_status(batch, order, transition)
        self._commit(batch, order, transition)
        return self._load(order.id)

    def _debit_cashback(self, order: Order, batch: WriteBatch) -> Optional[LedgerEntry]:
        if not order.payment_method.uses_cashback:
            return None
        description = f"Order #{order.reference}"
        if order.payment_method == PaymentMethod.CASHBACK:
            if order.total_amount <= 0:
                return None
            return self.ledger.debit(order.user_id, order.total_amount, description,
                                     order_id=order.id, batch=batch)
        return self.ledger.debit_available(order.user_id, order.total_amount, description,
                                           order_id=order.id, batch=batch)

    def _upload_receipt(self, order: Order, receipt: bytes, filename: str) -> Optional[str]:
        if self.image_host is None or not self.image_host.is_available:
            logger.warning("No image host configured; order %s proof saved without receipt", order.reference)
            return None
        try:
            return self.image_host.upload(receipt, filename)
        except UpstreamUnavailableError as e:
            logger.warning("Receipt upload for order %s failed, continuing without it: %s",
                           order.reference, e)
            return None

    def _stage_status(self, batch: WriteBatch, order: Order, transition: Transition,
                      fields: Optional[dict] = None) -> None:
        update = {"status": transition.target, "updated_at": datetime.now(timezone.utc)}
        update.update(fields or {})
        batch.update(ORDERS, order.id, update, expected_version=order.version)

    def _commit(self, batch: WriteBatch, order: Order, transition: Transition) -> None:
        try:
            batch.commit()
        except ConflictError as e:
            logger.warning("Conflicting write while applying %s to order %s; nothing was written: %s",
                           transition.action.value, order.reference, e)
            raise
        logger.info("Order %s: %s -> %s", order.reference,
                    transition.source.value, transition.target.value)
