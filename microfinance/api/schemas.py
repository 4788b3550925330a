"""
Pydantic schemas for API requests

Bodies are snake_case; the mobile and web clients send camelCase, so every
field also accepts its camelCase alias.
"""

from decimal import Decimal
from datetime import date, datetime
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..currency import decimal_from_value
from ..loans import LoanStatus
from ..users import UserRole


class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _to_decimal(value: Any) -> Any:
    if value is None:
        return value
    return decimal_from_value(value)


# Auth schemas
class RegisterRequest(RequestModel):
    email: str
    username: str
    password: str
    name: str
    phone: Optional[str] = None
    assigned_area: Optional[str] = None
    role: UserRole = UserRole.COLLECTOR


class LoginRequest(RequestModel):
    username: str
    password: str


# Borrower schemas
class CreateBorrowerRequest(RequestModel):
    name: str
    address: str
    village: str
    phone: Optional[str] = None
    gps_lat: Optional[float] = None
    gps_lng: Optional[float] = None
    photo_url: Optional[str] = None
    id_proof_url: Optional[str] = None
    household_head: Optional[str] = None
    photo_data: Optional[str] = Field(None, description="Base64 image, uploaded to the asset store")
    id_proof_data: Optional[str] = Field(None, description="Base64 image, uploaded to the asset store")


class UpdateBorrowerRequest(RequestModel):
    name: Optional[str] = None
    address: Optional[str] = None
    village: Optional[str] = None
    phone: Optional[str] = None
    gps_lat: Optional[float] = None
    gps_lng: Optional[float] = None
    photo_url: Optional[str] = None
    id_proof_url: Optional[str] = None
    household_head: Optional[str] = None
    is_active: Optional[bool] = None
    photo_data: Optional[str] = None
    id_proof_data: Optional[str] = None


# Loan schemas
class CreateLoanRequest(RequestModel):
    borrower_id: str
    principal_amount: Decimal = Field(..., description="Decimal amount; strings preferred")
    disbursed_amount: Decimal
    term_weeks: int
    start_date: date

    @field_validator('principal_amount', 'disbursed_amount', mode='before')
    @classmethod
    def parse_amounts(cls, value):
        return _to_decimal(value)


class UpdateLoanRequest(RequestModel):
    principal_amount: Optional[Decimal] = None
    disbursed_amount: Optional[Decimal] = None
    status: Optional[LoanStatus] = None

    @field_validator('principal_amount', 'disbursed_amount', mode='before')
    @classmethod
    def parse_amounts(cls, value):
        return _to_decimal(value)


# Collection schemas
class CreateCollectionRequest(RequestModel):
    installment_id: str
    amount: Decimal
    collector_id: Optional[str] = Field(None, description="Defaults to the authenticated user")
    payment_date: Optional[datetime] = None
    gps_lat: Optional[float] = None
    gps_lng: Optional[float] = None
    notes: Optional[str] = None

    @field_validator('amount', mode='before')
    @classmethod
    def parse_amount(cls, value):
        return _to_decimal(value)


class UpdateCollectionRequest(RequestModel):
    amount: Optional[Decimal] = None
    payment_date: Optional[datetime] = None
    gps_lat: Optional[float] = None
    gps_lng: Optional[float] = None
    notes: Optional[str] = None

    @field_validator('amount', mode='before')
    @classmethod
    def parse_amount(cls, value):
        return _to_decimal(value)


# Collector schemas
class CreateCollectorRequest(RequestModel):
    email: str
    username: str
    password: str
    name: str
    phone: Optional[str] = None
    assigned_area: Optional[str] = None
    role: UserRole = UserRole.COLLECTOR


class UpdateCollectorRequest(RequestModel):
    email: Optional[str] = None
    username: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    assigned_area: Optional[str] = None
    is_active: Optional[bool] = None
    password: Optional[str] = None


# Backup schemas
class DailyBackupRequest(RequestModel):
    day: Optional[date] = Field(None, alias="date")
