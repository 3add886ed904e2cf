from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from .errors import LedgerError
from .interest import InterestKind
from .models import CycleStatus, LoanStatus, MemberStatus, TransactionType


def _normalize_optional_code(value: Optional[str], field_name: str) -> Optional[str]:
    if value is None:
        return value
    trimmed = value.strip()
    if not trimmed:
        return None
    if not all(ch.isalnum() or ch == "-" for ch in trimmed):
        raise ValueError(f"{field_name} must contain only letters, digits, or hyphen")
    return trimmed.upper()


def _parse_interest_kind(value):
    if value is None or isinstance(value, InterestKind):
        return value
    try:
        return InterestKind.parse(value)
    except LedgerError as exc:
        raise ValueError(str(exc)) from exc


def _parse_datetime(value, field_name: str):
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"{field_name} must be ISO 8601 date/datetime") from exc
    raise ValueError(f"Unsupported {field_name} value")


class MemberCreate(BaseModel):
    member_code: Optional[str] = None
    name: str
    national_id: Optional[str] = None
    phone: Optional[str] = None
    joined_date: Optional[date] = None

    @field_validator("member_code")
    @classmethod
    def validate_member_code(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_optional_code(value, "member_code")

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name is required")
        return value.strip()


class MemberRead(BaseModel):
    id: int
    member_code: str
    name: str
    national_id: Optional[str] = None
    phone: Optional[str] = None
    status: MemberStatus
    total_shares: int
    total_savings: float
    social_contributions: float
    birthday_contributions: float
    joined_date: date
    last_payment_date: Optional[datetime] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class MemberUpdate(BaseModel):
    name: Optional[str] = None
    national_id: Optional[str] = None
    phone: Optional[str] = None
    status: Optional[MemberStatus] = None
    joined_date: Optional[date] = None


class TransactionCreate(BaseModel):
    member_id: Optional[int] = None
    type: TransactionType
    amount: float = Field(gt=0)
    description: str = ""
    date: Optional[datetime] = None

    @field_validator("date", mode="before")
    @classmethod
    def normalize_date(cls, value):
        return _parse_datetime(value, "date")


class WelfareUsageCreate(BaseModel):
    amount: float = Field(gt=0)
    description: str = ""
    member_id: Optional[int] = None


class TransactionRead(BaseModel):
    id: int
    member_id: Optional[int] = None
    type: TransactionType
    amount: float
    date: datetime
    description: str
    reference_type: Optional[str] = None
    reference_id: Optional[int] = None
    cycle_id: Optional[int] = None
    model_config = ConfigDict(from_attributes=True)


class LoanCreate(BaseModel):
    member_id: int
    amount: float = Field(gt=0)
    period_days: Optional[int] = Field(default=None, ge=1)
    interest_rate: Optional[float] = Field(default=None, ge=0)
    interest_type: Optional[InterestKind] = None

    @field_validator("interest_type", mode="before")
    @classmethod
    def normalize_interest_type(cls, value):
        return _parse_interest_kind(value)


class LoanRecord(BaseModel):
    """Every stored column of a loan row, as written to a backup."""

    id: int
    member_id: int
    loan_code: str
    principal_amount: float
    disbursed_amount: float = 0.0
    interest_rate: float
    interest_type: InterestKind
    interest_amount: float
    total_repayment: float
    amount_paid: float = 0.0
    total_paid: float = 0.0
    penalty_total: float = 0.0
    status: LoanStatus
    period_days: int = 30
    request_date: datetime
    approval_date: Optional[datetime] = None
    due_date: datetime
    last_payment_date: Optional[datetime] = None
    paid_date: Optional[datetime] = None
    rollover_count: int = 0
    model_config = ConfigDict(from_attributes=True)

    @field_validator("interest_type", mode="before")
    @classmethod
    def normalize_interest_type(cls, value):
        return _parse_interest_kind(value)

    @model_validator(mode="after")
    def ensure_paid_within_total(self) -> "LoanRecord":
        if self.amount_paid - self.total_repayment > 0.005:
            raise ValueError("amount_paid cannot exceed total_repayment")
        return self


class LoanRead(LoanRecord):
    member_code: str
    member_name: str
    outstanding_balance: float
    is_overdue: bool = False


class PaymentCreate(BaseModel):
    amount: float = Field(gt=0)


class PenaltyCreate(BaseModel):
    amount: Optional[float] = Field(default=None, gt=0)


class PaymentRead(BaseModel):
    loan: LoanRead
    applied_amount: float
    excess_amount: float


class EligibilityRead(BaseModel):
    eligible: bool
    max_amount: float
    reason: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class InterestRequest(BaseModel):
    principal: float = Field(ge=0)
    rate: float = Field(ge=0)
    interest_type: InterestKind = InterestKind.LINEAR
    periods: Optional[int] = Field(default=None, ge=0)
    period_days: Optional[int] = Field(default=None, ge=0)
    start_date: Optional[date] = None

    @field_validator("interest_type", mode="before")
    @classmethod
    def normalize_interest_type(cls, value):
        return _parse_interest_kind(value)


class ScheduleRowRead(BaseModel):
    period: int
    date: date
    principal: float
    interest: float
    payment: float
    balance: float
    model_config = ConfigDict(from_attributes=True)


class InterestResponse(BaseModel):
    principal: float
    rate: float
    type: InterestKind
    periods: int
    interest: float
    total: float
    schedule: List[ScheduleRowRead] = []


class CycleCreate(BaseModel):
    name: str
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def ensure_range(self) -> "CycleCreate":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class CycleRead(BaseModel):
    id: int
    name: str
    start_date: date
    end_date: date
    status: CycleStatus
    share_value: float
    total_shares: int
    total_savings: float
    total_interest_earned: float
    social_interest_earned: float = 0.0
    total_fines: float
    total_loans_issued: float
    dividend_per_share: Optional[float] = None
    dividend_outcome: Optional[str] = None
    dividends_distributed: bool = False
    created_at: datetime
    closed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class CycleRecord(CycleRead):
    share_snapshot_json: Optional[str] = None


class ShareoutRowRead(BaseModel):
    member_id: int
    member_code: str
    name: str
    shares: int
    savings: float
    dividend: float
    payout: float
    model_config = ConfigDict(from_attributes=True)


class ShareoutRead(BaseModel):
    cycle_id: int
    cycle_name: str
    is_final: bool
    dividend_per_share: float
    dividend_outcome: str
    rows: List[ShareoutRowRead]
    total_dividends: float
    total_payout: float
    model_config = ConfigDict(from_attributes=True)


class SettingsUpdate(BaseModel):
    share_price: float = 100.0
    social_contribution_amount: float = 50.0
    birthday_contribution_amount: float = 20.0
    default_interest_rate: float = 10.0
    default_interest_type: InterestKind = InterestKind.LINEAR
    max_loan_multiplier: float = 3.0
    loan_term_days: int = 30
    late_penalty_rate: float = 10.0
    absentee_fine_percentage: float = 5.0
    currency: str = "K"
    bank_name: str = "Village Savings Bank"
    model_config = ConfigDict(from_attributes=True, extra="forbid")

    @field_validator("default_interest_type", mode="before")
    @classmethod
    def normalize_interest_type(cls, value):
        return _parse_interest_kind(value)

    @field_validator("share_price", "max_loan_multiplier")
    @classmethod
    def validate_positive(cls, value: float, info: ValidationInfo) -> float:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @field_validator(
        "social_contribution_amount",
        "birthday_contribution_amount",
        "default_interest_rate",
        "late_penalty_rate",
    )
    @classmethod
    def validate_non_negative(cls, value: float, info: ValidationInfo) -> float:
        if value < 0:
            raise ValueError(f"{info.field_name} must be non-negative")
        return value

    @field_validator("absentee_fine_percentage")
    @classmethod
    def validate_percentage(cls, value: float) -> float:
        if not 0 <= value <= 100:
            raise ValueError("absentee_fine_percentage must be between 0 and 100")
        return value

    @field_validator("loan_term_days")
    @classmethod
    def validate_term(cls, value: int) -> int:
        if value < 1:
            raise ValueError("loan_term_days must be at least 1")
        return value

    @field_validator("currency", "bank_name")
    @classmethod
    def validate_text(cls, value: str, info: ValidationInfo) -> str:
        if not value.strip():
            raise ValueError(f"{info.field_name} cannot be empty")
        return value.strip()


class SettingsRead(SettingsUpdate):
    updated_at: Optional[datetime] = None


class PotSummaryRead(BaseModel):
    savings_pot: float
    social_pot: float
    birthday_pot: float
    loans_pot: float
    total_funds: float
    available_to_loan: float
    overdrawn_amount: float
    model_config = ConfigDict(from_attributes=True)


class SocialPotSummaryRead(BaseModel):
    total_contributions: float
    total_used_for_welfare: float
    total_loaned_out: float
    total_interest_earned: float
    available_for_loans: float
    available_for_distribution: float
    model_config = ConfigDict(from_attributes=True)


class DashboardRead(BaseModel):
    total_members: int
    active_members: int
    total_savings: float
    total_loans: int
    active_loans: int
    pending_loans: int
    overdue_loans: int
    outstanding_balance: float
    cash_on_hand: float
    total_interest_earned: float
    monthly_growth: float
    model_config = ConfigDict(from_attributes=True)


class BackupPayload(BaseModel):
    version: int = 1
    exported_at: Optional[datetime] = None
    settings: Optional[SettingsUpdate] = None
    members: List[MemberRead] = []
    transactions: List[TransactionRead] = []
    loans: List[LoanRecord] = []
    social_loans: List[LoanRecord] = []
    cycles: List[CycleRecord] = []


class ImportResult(BaseModel):
    imported: bool
    detail: Optional[str] = None
