from contextlib import contextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

from common import configure_logging, get_settings
from common.config import Settings
from docstore import ConflictError, DocumentStoreError, InMemoryDocumentStore, UpstreamUnavailableError
from ledger import (
    InsufficientFundsError, LedgerHistoryResponse, LedgerService, LedgerServiceError,
    UserBalance, UserNotFoundError, UserProfile, UserRole,
)
from ledger.models import ReconcileBalanceRequest, RegisterUserRequest
from notifications import (
    Notification, NotificationAccessError, NotificationListResponse,
    NotificationNotFoundError, NotificationService,
)
from orders import (
    Actor, ImageHostClient, Order, OrderNotFoundError, OrderValidationError,
    OrderWorkflow, PlaceOrderRequest, RejectOrderRequest, Role, SubmitPaymentProofRequest,
    TransitionResponse, UnauthorizedActionError,
)

settings = get_settings()
configure_logging(settings.LOG_LEVEL)

app = FastAPI(
    title=settings.APP_NAME,
    description="Order approval, cashback ledger and customer notifications for the storefront",
    version=settings.APP_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class Services:
    def __init__(self, settings: Settings, store: Optional[InMemoryDocumentStore] = None):
        self.store = store or InMemoryDocumentStore()
        self.ledger = LedgerService(self.store)
        self.notifier = NotificationService(self.store)
        self.workflow = OrderWorkflow(
            self.store, self.ledger, self.notifier,
            image_host=ImageHostClient(
                api_key=settings.IMGBB_API_KEY or None,
                upload_url=settings.IMGBB_UPLOAD_URL,
                timeout=settings.IMAGE_UPLOAD_TIMEOUT,
            ),
            settings=settings,
        )


services = Services(settings)


def get_services() -> Services:
    return services


def get_actor(x_user_id: Optional[str] = Header(None), x_user_role: Optional[str] = Header(None)) -> Actor:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    # The identity provider only knows "user" and "admin".
    if x_user_role in (None, "", "user"):
        return Actor(user_id=x_user_id, role=Role.CUSTOMER)
    try:
        return Actor(user_id=x_user_id, role=Role(x_user_role))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown role {x_user_role}")


def require_self_or_staff(actor: Actor, user_id: str) -> None:
    if actor.user_id != user_id and not actor.role.is_staff:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to view this account")


def require_staff(actor: Actor) -> None:
    if not actor.role.is_staff:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Staff only")


@contextmanager
def http_errors():
    try:
        yield
    except (OrderNotFoundError, UserNotFoundError, NotificationNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (UnauthorizedActionError, NotificationAccessError) as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except OrderValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except InsufficientFundsError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (UpstreamUnavailableError, DocumentStoreError) as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                            detail=f"Service temporarily unavailable, please retry: {e}")


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "storefront-settlement"}


@app.post("/users", response_model=UserProfile, status_code=status.HTTP_201_CREATED, tags=["Users"])
def register_user(request: RegisterUserRequest, actor: Actor = Depends(get_actor),
                  svc: Services = Depends(get_services)) -> UserProfile:
    require_self_or_staff(actor, request.user_id)
    if request.role != UserRole.USER and actor.role != Role.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only admins can create admin accounts")
    with http_errors():
        return svc.ledger.register_user(request.user_id, request.email, request.full_name, request.role)


@app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Ledger"])
def get_user_balance(user_id: str, actor: Actor = Depends(get_actor),
                     svc: Services = Depends(get_services)) -> UserBalance:
    require_self_or_staff(actor, user_id)
    with http_errors():
        return svc.ledger.get_balance(user_id)


@app.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Ledger"])
def get_user_ledger(user_id: str, limit: int = 50, offset: int = 0, actor: Actor = Depends(get_actor),
                    svc: Services = Depends(get_services)) -> LedgerHistoryResponse:
    require_self_or_staff(actor, user_id)
    with http_errors():
        return svc.ledger.get_ledger_history(user_id, limit, offset)


@app.post("/users/{user_id}/reconcile", response_model=UserBalance, tags=["Ledger"])
def reconcile_balance(user_id: str, request: ReconcileBalanceRequest, actor: Actor = Depends(get_actor),
                      svc: Services = Depends(get_services)) -> UserBalance:
    if actor.role != Role.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only admins can reconcile balances")
    with http_errors():
        svc.ledger.reconcile(user_id, request.target_balance, actor.user_id, request.reason)
        return svc.ledger.get_balance(user_id)


@app.get("/users/{user_id}/notifications", response_model=NotificationListResponse, tags=["Notifications"])
def get_notifications(user_id: str, unread_only: bool = False, actor: Actor = Depends(get_actor),
                      svc: Services = Depends(get_services)) -> NotificationListResponse:
    require_self_or_staff(actor, user_id)
    return NotificationListResponse(
        user_id=user_id,
        notifications=svc.notifier.list_for_user(user_id, unread_only),
        unread_count=svc.notifier.unread_count(user_id),
    )


@app.post("/notifications/{notification_id}/read", response_model=Notification, tags=["Notifications"])
def acknowledge_notification(notification_id: str, actor: Actor = Depends(get_actor),
                             svc: Services = Depends(get_services)) -> Notification:
    with http_errors():
        return svc.notifier.acknowledge(notification_id, actor.user_id)


@app.post("/orders", response_model=Order, status_code=status.HTTP_201_CREATED, tags=["Orders"])
def place_order(request: PlaceOrderRequest, actor: Actor = Depends(get_actor),
                svc: Services = Depends(get_services)) -> Order:
    with http_errors():
        return svc.workflow.place_order(actor, request)


@app.get("/orders", response_model=list[Order], tags=["Orders"])
def list_orders(actor: Actor = Depends(get_actor), svc: Services = Depends(get_services)) -> list[Order]:
    user_id = None if actor.role.is_staff else actor.user_id
    return svc.workflow.list_orders(user_id=user_id)


@app.get("/orders/{order_id}", response_model=Order, tags=["Orders"])
def get_order(order_id: str, actor: Actor = Depends(get_actor), svc: Services = Depends(get_services)) -> Order:
    with http_errors():
        return svc.workflow.get_order(actor, order_id)


@app.post("/orders/{order_id}/payment-proof", response_model=TransitionResponse, tags=["Orders"])
def submit_payment_proof(order_id: str, request: SubmitPaymentProofRequest, actor: Actor = Depends(get_actor),
                         svc: Services = Depends(get_services)) -> TransitionResponse:
    with http_errors():
        return svc.workflow.submit_payment_proof(actor, order_id, request)


@app.post("/orders/{order_id}/payment-proof/upload", response_model=TransitionResponse, tags=["Orders"])
def upload_payment_proof(order_id: str, sender_name: str = Form(...), receipt: Optional[UploadFile] = File(None),
                         actor: Actor = Depends(get_actor),
                         svc: Services = Depends(get_services)) -> TransitionResponse:
    content = receipt.file.read() if receipt is not None else None
    filename = receipt.filename if receipt is not None and receipt.filename else "receipt.jpg"
    with http_errors():
        return svc.workflow.submit_payment_proof(
            actor, order_id, SubmitPaymentProofRequest(sender_name=sender_name),
            receipt=content, receipt_filename=filename,
        )


@app.post("/orders/{order_id}/approve", response_model=TransitionResponse, tags=["Admin"])
def approve_payment(order_id: str, actor: Actor = Depends(get_actor),
                    svc: Services = Depends(get_services)) -> TransitionResponse:
    with http_errors():
        return svc.workflow.approve_payment(actor, order_id)


@app.post("/orders/{order_id}/reject", response_model=TransitionResponse, tags=["Admin"])
def reject_order(order_id: str, request: RejectOrderRequest, actor: Actor = Depends(get_actor),
                 svc: Services = Depends(get_services)) -> TransitionResponse:
    with http_errors():
        return svc.workflow.reject_order(actor, order_id, request)


@app.post("/orders/{order_id}/ship", response_model=TransitionResponse, tags=["Admin"])
def ship_order(order_id: str, actor: Actor = Depends(get_actor),
               svc: Services = Depends(get_services)) -> TransitionResponse:
    with http_errors():
        return svc.workflow.ship_order(actor, order_id)


@app.post("/orders/{order_id}/delay", response_model=TransitionResponse, tags=["Admin"])
def delay_shipment(order_id: str, actor: Actor = Depends(get_actor),
                   svc: Services = Depends(get_services)) -> TransitionResponse:
    with http_errors():
        return svc.workflow.delay_shipment(actor, order_id)


@app.post("/orders/{order_id}/deliver", response_model=TransitionResponse, tags=["Admin"])
def mark_delivered(order_id: str, actor: Actor = Depends(get_actor),
                   svc: Services = Depends(get_services)) -> TransitionResponse:
    with http_errors():
        return svc.workflow.mark_delivered(actor, order_id)


@app.get("/admin/payments", response_model=list[Order], tags=["Admin"])
def payments_queue(actor: Actor = Depends(get_actor), svc: Services = Depends(get_services)) -> list[Order]:
    require_staff(actor)
    return svc.workflow.payments_queue()


@app.get("/admin/shipments", response_model=list[Order], tags=["Admin"])
def shipment_queue(actor: Actor = Depends(get_actor), svc: Services = Depends(get_services)) -> list[Order]:
    require_staff(actor)
    return svc.workflow.shipment_queue()


handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
