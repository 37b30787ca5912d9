"""Request and response bodies for the HTTP API."""

import datetime as dt
from decimal import Decimal
from typing import Annotated, Any, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

TransactionType = Literal["income", "expense"]
GoalStatus = Literal["active", "completed", "cancelled"]

PositiveAmount = Annotated[Decimal, Field(gt=0, max_digits=15, decimal_places=2)]
USERNAME_PATTERN = r"^[A-Za-z0-9_]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

T = TypeVar("T")


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total: int
    limit: int
    has_next_page: bool
    has_previous_page: bool


class PageResponse(BaseModel, Generic[T]):
    data: List[T]
    pagination: Pagination


class ReportResponse(BaseModel):
    success: bool = True
    data: Any
    message: str


# --- Users ---

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    username: str = Field(..., min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    username: Optional[str] = Field(None, min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: Optional[str] = Field(None, max_length=255, pattern=EMAIL_PATTERN)
    password: Optional[str] = Field(None, min_length=6)


class UserResponse(ORMModel):
    id: int
    name: str
    username: str
    email: str
    created_at: Optional[dt.datetime] = None


# --- Categories ---

class CategoryPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class CategoryResponse(ORMModel):
    id: int
    name: str


# --- Transactions ---

class TransactionCreate(BaseModel):
    user_id: Optional[int] = Field(None, ge=1)
    category_id: int = Field(..., ge=1)
    amount: PositiveAmount
    type: TransactionType
    date: dt.date
    note: Optional[str] = Field(None, max_length=500)


class TransactionUpdate(BaseModel):
    user_id: Optional[int] = Field(None, ge=1)
    category_id: Optional[int] = Field(None, ge=1)
    amount: Optional[PositiveAmount] = None
    type: Optional[TransactionType] = None
    date: Optional[dt.date] = None
    note: Optional[str] = Field(None, max_length=500)


class TransactionResponse(ORMModel):
    id: int
    user_id: int
    category_id: int
    amount: float
    type: TransactionType
    date: dt.date
    note: Optional[str] = None


# --- Goals ---

class GoalCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    goal_amount: PositiveAmount
    saved_amount: Optional[Decimal] = Field(None, ge=0, max_digits=15, decimal_places=2)
    description: Optional[str] = Field(None, max_length=500)
    status: GoalStatus = "active"
    start_date: Optional[dt.date] = None
    end_date: dt.date


class GoalUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    goal_amount: Optional[PositiveAmount] = None
    description: Optional[str] = Field(None, max_length=500)
    status: Optional[GoalStatus] = None
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None


class GoalResponse(ORMModel):
    id: int
    name: str
    description: Optional[str] = None
    goal_amount: float
    saved_amount: float
    status: GoalStatus
    start_date: dt.date
    end_date: dt.date


# --- Contributions ---

class ContributionCreate(BaseModel):
    amount: PositiveAmount
    date: Optional[dt.date] = None


class ContributionUpdate(BaseModel):
    goal_id: Optional[int] = Field(None, ge=1)
    amount: Optional[PositiveAmount] = None
    date: Optional[dt.date] = None


class ContributionResponse(ORMModel):
    id: int
    goal_id: int
    amount: float
    date: dt.date


class RecalculateResponse(BaseModel):
    goal_id: int
    saved_amount: float
