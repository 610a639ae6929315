from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import BudgetPeriod, TransactionSource, TransactionType, UserRole


class UserIn(BaseModel):
    username: str = Field(..., min_length=3, max_length=80)
    role: UserRole = UserRole.user


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    role: UserRole
    is_active: bool


class TransactionIn(BaseModel):
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=500)
    date: Optional[datetime] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: TransactionType
    amount_cents: int
    category: str
    description: str
    date: datetime
    source: TransactionSource
    budget_category_id: Optional[int]
    created_at: datetime
    updated_at: datetime


class BudgetAlertIn(BaseModel):
    threshold: int = Field(..., gt=0, le=1000)


class BudgetAlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    threshold: int
    is_triggered: bool
    triggered_at: Optional[datetime]


class BudgetCategoryIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., gt=0)
    alerts: list[BudgetAlertIn] = Field(default_factory=list)


class BudgetCategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category: str
    amount_cents: int
    spent_cents: int
    alerts: list[BudgetAlertOut]


class BudgetThresholdsIn(BaseModel):
    warning: int = Field(default=80, gt=0, le=1000)
    critical: int = Field(default=90, gt=0, le=1000)


class BudgetIn(BaseModel):
    period: BudgetPeriod
    total_budget_cents: int = Field(..., gt=0)
    categories: list[BudgetCategoryIn] = Field(..., min_length=1)
    start_date: date
    end_date: date
    is_active: bool = True
    thresholds: Optional[BudgetThresholdsIn] = None
    version: Optional[int] = None


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    period: BudgetPeriod
    start_date: date
    end_date: date
    total_budget_cents: int
    is_active: bool
    warning_threshold: int
    critical_threshold: int
    version: int
    categories: list[BudgetCategoryOut]
    created_at: datetime
    updated_at: datetime


class ActivationCodeIn(BaseModel):
    user_id: int
    duration_days: Optional[int] = Field(default=None, gt=0, le=3650)
    max_phone_numbers: int = Field(default=1, ge=1, le=20)


class ActivationCodeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    user_id: int
    expires_at: datetime
    max_phone_numbers: int
    is_active: bool


class ActivationRequest(BaseModel):
    username: str = Field(..., min_length=1)
    activation_code: str = Field(..., min_length=1)
    phone_number: str = Field(..., pattern=r"^\+?[1-9]\d{1,14}$")


class PhoneDeactivateIn(BaseModel):
    user_id: int
    phone_number: str = Field(..., min_length=1)


class ActivationExtendIn(BaseModel):
    user_id: int
    phone_number: str = Field(..., min_length=1)
    duration_days: int = Field(..., gt=0, le=3650)


class ChatEntity(BaseModel):
    entity: str
    value: str


class ChatMessageIn(BaseModel):
    sender: str = Field(..., min_length=1)
    body: str = ""
    intent: Optional[str] = None
    entities: list[ChatEntity] = Field(default_factory=list)
