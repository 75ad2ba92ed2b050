import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
BCRYPT_MAX_BYTES = 72
# bounds of the INTEGER and NUMERIC(14, 2) columns
MAX_ID = 2**31 - 1
MAX_AMOUNT = 10**12 - 0.01


def _check_email(value: str) -> str:
    if not EMAIL_PATTERN.match(value):
        raise ValueError("invalid email format")
    return value


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValueError(f"password must be at most {BCRYPT_MAX_BYTES} bytes")
    return value


def _round_amount(value: float | None) -> float | None:
    return None if value is None else round(value, 2)


def _parse_date(value: Any) -> Any:
    if isinstance(value, str):
        raw = value.strip()
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed_day = date.fromisoformat(raw)
            except ValueError:
                raise ValueError("date must be an ISO 8601 date or datetime") from None
            parsed = datetime(parsed_day.year, parsed_day.month, parsed_day.day)
        value = parsed
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return value


class TransactionType(str, Enum):
    income = "Income"
    expense = "Expense"


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    ok: bool


class RegisterRequest(BaseModel):
    email: str
    fullName: str = Field(min_length=1, max_length=200)
    password: str = Field(min_length=6)
    confirmPassword: str = Field(min_length=6)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return _check_password_bytes(value)

    @model_validator(mode="after")
    def validate_confirmation(self) -> "RegisterRequest":
        if self.password != self.confirmPassword:
            raise ValueError("Passwords don't match")
        return self


class LoginRequest(BaseModel):
    email: str
    password: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


class UserPasswordChange(BaseModel):
    currentPassword: str = Field(min_length=1)
    newPassword: str = Field(min_length=6)

    @field_validator("newPassword")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return _check_password_bytes(value)


class UserResponse(BaseModel):
    id: int
    email: str
    fullName: str
    createdAt: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    token: str


class MessageResponse(BaseModel):
    message: str


class BankAccountCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    accountNumber: str = Field(min_length=1, max_length=64)


class BankAccountResponse(BaseModel):
    id: int
    name: str
    accountNumber: str
    userId: int
    createdAt: datetime


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)


class SubcategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    categoryId: int = Field(ge=1, le=MAX_ID)


class SubcategoryResponse(BaseModel):
    id: int
    name: str
    categoryId: int


class CategoryResponse(BaseModel):
    id: int
    name: str
    subcategories: list[SubcategoryResponse] = Field(default_factory=list)


class CategoryRef(BaseModel):
    id: int
    name: str


class TransactionCreate(BaseModel):
    account: str = Field(min_length=1, max_length=120)
    date: datetime
    name: str = Field(min_length=1, max_length=200)
    debit: float = Field(ge=0, le=MAX_AMOUNT, allow_inf_nan=False)
    credit: float = Field(ge=0, le=MAX_AMOUNT, allow_inf_nan=False)
    categoryId: Optional[int] = Field(default=None, ge=1, le=MAX_ID)
    subcategoryId: Optional[int] = Field(default=None, ge=1, le=MAX_ID)
    type: TransactionType
    location: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90, allow_inf_nan=False)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180, allow_inf_nan=False)

    @field_validator("date", mode="before")
    @classmethod
    def validate_date(cls, value: Any) -> Any:
        return _parse_date(value)

    @field_validator("debit", "credit")
    @classmethod
    def round_amount(cls, value: Optional[float]) -> Optional[float]:
        return _round_amount(value)


class TransactionUpdate(BaseModel):
    account: Optional[str] = Field(default=None, min_length=1, max_length=120)
    date: Optional[datetime] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    debit: Optional[float] = Field(default=None, ge=0, le=MAX_AMOUNT, allow_inf_nan=False)
    credit: Optional[float] = Field(default=None, ge=0, le=MAX_AMOUNT, allow_inf_nan=False)
    categoryId: Optional[int] = Field(default=None, ge=1, le=MAX_ID)
    subcategoryId: Optional[int] = Field(default=None, ge=1, le=MAX_ID)
    type: Optional[TransactionType] = None
    location: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90, allow_inf_nan=False)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180, allow_inf_nan=False)

    @field_validator("date", mode="before")
    @classmethod
    def validate_date(cls, value: Any) -> Any:
        return _parse_date(value)

    @field_validator("debit", "credit")
    @classmethod
    def round_amount(cls, value: Optional[float]) -> Optional[float]:
        return _round_amount(value)

    @model_validator(mode="after")
    def validate_required_not_null(self) -> "TransactionUpdate":
        for field in ("account", "date", "name", "debit", "credit", "type"):
            if field in self.model_fields_set and getattr(self, field) is None:
                raise ValueError(f"{field} cannot be null")
        return self


class TransactionResponse(BaseModel):
    id: int
    account: str
    date: datetime
    name: str
    debit: float
    credit: float
    total: float
    categoryId: Optional[int] = None
    subcategoryId: Optional[int] = None
    category: Optional[CategoryRef] = None
    subcategory: Optional[SubcategoryResponse] = None
    type: TransactionType
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    userId: int
    createdAt: datetime
    updatedAt: datetime


class LedgerSummaryResponse(BaseModel):
    runningTotal: float
    totalIncome: float
    totalExpenses: float
    count: int


class BulkDeleteResponse(BaseModel):
    deleted: int


class LocationResponse(BaseModel):
    latitude: float
    longitude: float
    address: str
    mapsLink: str
