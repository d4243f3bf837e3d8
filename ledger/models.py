from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class EntryType(str, Enum):
    PURCHASE = "purchase"
    CASHBACK_CREDIT = "cashback_credit"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"

    @property
    def is_debit(self) -> bool:
        return self in (EntryType.PURCHASE, EntryType.ADJUSTMENT)


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class UserProfile(BaseModel):
    id: str
    email: str
    full_name: str = ""
    role: UserRole = UserRole.USER
    cashback_balance: Decimal = Decimal("0")
    total_orders: int = 0
    total_spending: Decimal = Decimal("0")
    date_joined: datetime
    version: int = 1

    model_config = ConfigDict(from_attributes=True)


class LedgerEntry(BaseModel):
    id: str
    user_id: str
    type: EntryType
    amount: Decimal = Field(..., ge=0)
    balance_after: Decimal
    description: str
    order_id: Optional[str] = None
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)

    @property
    def signed_amount(self) -> Decimal:
        return -self.amount if self.type.is_debit else self.amount


class RegisterUserRequest(BaseModel):
    user_id: str
    email: str
    full_name: str = ""
    role: UserRole = UserRole.USER


class ReconcileBalanceRequest(BaseModel):
    target_balance: Decimal = Field(..., description="Balance the account should hold afterwards")
    reason: str = Field(..., description="Why the balance is being corrected")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "target_balance": 2500.00,
            "reason": "Promotional cashback missed at checkout"
        }
    })


class UserBalance(BaseModel):
    user_id: str
    current_balance: Decimal
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal
