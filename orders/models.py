from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator

from ledger.models import LedgerEntry
from notifications.models import Notification

NIGERIAN_STATES = [
    "Abia", "Adamawa", "Akwa Ibom", "Anambra", "Bauchi", "Bayelsa", "Benue", "Borno",
    "Cross River", "Delta", "Ebonyi", "Edo", "Ekiti", "Enugu", "FCT", "Gombe", "Imo",
    "Jigawa", "Kaduna", "Kano", "Katsina", "Kebbi", "Kogi", "Kwara", "Lagos", "Nasarawa",
    "Niger", "Ogun", "Ondo", "Osun", "Oyo", "Plateau", "Rivers", "Sokoto", "Taraba",
    "Yobe", "Zamfara",
]


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


class PaymentMethod(str, Enum):
    CASHBACK = "cashback"
    DIRECT = "direct"
    MIXED = "mixed"

    @property
    def uses_cashback(self) -> bool:
        return self in (PaymentMethod.CASHBACK, PaymentMethod.MIXED)


class Role(str, Enum):
    CUSTOMER = "customer"
    PAYMENTS_STAFF = "payments_staff"
    SHIPMENT_STAFF = "shipment_staff"
    ORDERS_STAFF = "orders_staff"
    ADMIN = "admin"
    SYSTEM = "system"

    @property
    def is_staff(self) -> bool:
        return self not in (Role.CUSTOMER, Role.SYSTEM)


class Actor(BaseModel):
    user_id: str
    role: Role = Role.CUSTOMER


class CartItem(BaseModel):
    product_id: str
    name: str
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: str = ""

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


class ShipmentDetails(BaseModel):
    email: EmailStr
    alt_email: Optional[EmailStr] = None
    phone: str
    alt_phone: Optional[str] = None
    state: str
    address: str

    @field_validator("phone", "address")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @field_validator("state")
    @classmethod
    def deliverable_state(cls, v: str) -> str:
        if v not in NIGERIAN_STATES:
            raise ValueError(f"we do not deliver to {v!r}")
        return v


class PaymentProof(BaseModel):
    sender_name: str
    image_url: Optional[str] = None
    timestamp: datetime


class Order(BaseModel):
    id: str
    user_id: str
    user_email: str
    items: list[CartItem]
    total_amount: Decimal = Field(..., ge=0)
    status: OrderStatus
    payment_method: PaymentMethod
    shipment_details: ShipmentDetails
    payment_proof: Optional[PaymentProof] = None
    rejection_reason: Optional[str] = None
    cashback_debited: Decimal = Decimal("0")
    created_at: datetime
    updated_at: Optional[datetime] = None
    version: int = 1

    model_config = ConfigDict(from_attributes=True)

    @property
    def reference(self) -> str:
        return self.id[-6:].upper()


class PlaceOrderRequest(BaseModel):
    items: list[CartItem]
    payment_method: PaymentMethod = PaymentMethod.DIRECT
    shipment_details: ShipmentDetails
    user_email: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "items": [{"product_id": "p-001", "name": "Rice 50kg", "price": 5000, "quantity": 1}],
            "payment_method": "cashback",
            "shipment_details": {
                "email": "ada@example.com",
                "phone": "08030000000",
                "state": "Lagos",
                "address": "12 Admiralty Way, Lekki"
            }
        }
    })


class SubmitPaymentProofRequest(BaseModel):
    sender_name: str = Field(..., description="Name on the bank transfer")
    image_url: Optional[str] = Field(default=None, description="Receipt already hosted elsewhere")


class RejectOrderRequest(BaseModel):
    reason: str = Field(default="", description="Shown to the customer")


class TransitionResponse(BaseModel):
    order: Order
    ledger_entry: Optional[LedgerEntry] = None
    notification: Optional[Notification] = None
    message: str
