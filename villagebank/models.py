from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from .interest import InterestKind
from .timezone_utils import now_local, today_local


class MemberStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    LEFT = "left"


class TransactionType(str, Enum):
    SHARE_PURCHASE = "share_purchase"
    SOCIAL_CONTRIBUTION = "social_contribution"
    BIRTHDAY_CONTRIBUTION = "birthday_contribution"
    LOAN_DISBURSEMENT = "loan_disbursement"
    LOAN_REPAYMENT = "loan_repayment"
    FINE = "fine"
    DIVIDEND = "dividend"
    WITHDRAWAL = "withdrawal"
    WELFARE_USAGE = "welfare_usage"
    SOCIAL_LOAN_DISBURSEMENT = "social_loan_disbursement"
    SOCIAL_LOAN_REPAYMENT = "social_loan_repayment"
    LOAN_ROLLOVER = "loan_rollover"
    LOAN_DEFAULT = "loan_default"
    SOCIAL_DIVIDEND = "social_dividend"


class LoanStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    PAID = "paid"
    DEFAULTED = "defaulted"


class CycleStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class Member(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    member_code: str = Field(default="", index=True, unique=True)
    name: str
    national_id: Optional[str] = None
    phone: Optional[str] = None
    status: MemberStatus = Field(default=MemberStatus.ACTIVE, index=True)
    total_shares: int = Field(default=0)
    total_savings: float = Field(default=0.0)
    social_contributions: float = Field(default=0.0)
    birthday_contributions: float = Field(default=0.0)
    joined_date: date = Field(default_factory=today_local)
    last_payment_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=now_local)


class Transaction(SQLModel, table=True):
    __tablename__ = "ledger_transaction"

    id: Optional[int] = Field(default=None, primary_key=True)
    member_id: Optional[int] = Field(default=None, foreign_key="member.id", index=True)
    type: TransactionType = Field(index=True)
    amount: float
    date: datetime = Field(default_factory=now_local, index=True)
    description: str = Field(default="")
    reference_type: Optional[str] = Field(default=None, index=True)
    reference_id: Optional[int] = Field(default=None, index=True)
    cycle_id: Optional[int] = Field(default=None, foreign_key="cycle.id")


class LoanBase(SQLModel):
    member_id: int = Field(foreign_key="member.id", index=True)
    loan_code: str = Field(default="", index=True, unique=True)
    principal_amount: float
    disbursed_amount: float = 0.0
    interest_rate: float = 0.0
    interest_type: InterestKind = Field(default=InterestKind.LINEAR)
    interest_amount: float = 0.0
    total_repayment: float = 0.0
    amount_paid: float = 0.0
    total_paid: float = 0.0
    penalty_total: float = 0.0
    status: LoanStatus = Field(default=LoanStatus.PENDING, index=True)
    period_days: int = 30
    request_date: datetime = Field(default_factory=now_local)
    approval_date: Optional[datetime] = None
    due_date: datetime
    last_payment_date: Optional[datetime] = None
    paid_date: Optional[datetime] = None
    rollover_count: int = 0


class Loan(LoanBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)


class SocialLoan(LoanBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)


class Cycle(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    start_date: date
    end_date: date
    status: CycleStatus = Field(default=CycleStatus.ACTIVE, index=True)
    share_value: float = 0.0
    total_shares: int = 0
    total_savings: float = 0.0
    total_interest_earned: float = 0.0
    social_interest_earned: float = 0.0
    total_fines: float = 0.0
    total_loans_issued: float = 0.0
    dividend_per_share: Optional[float] = None
    dividend_outcome: Optional[str] = None
    dividends_distributed: bool = False
    # shareholders frozen at close, as a JSON list of rows
    share_snapshot_json: Optional[str] = None
    created_at: datetime = Field(default_factory=now_local)
    closed_at: Optional[datetime] = None


class LedgerSettings(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    share_price: float = 100.0
    social_contribution_amount: float = 50.0
    birthday_contribution_amount: float = 20.0
    default_interest_rate: float = 10.0
    default_interest_type: InterestKind = Field(default=InterestKind.LINEAR)
    max_loan_multiplier: float = 3.0
    loan_term_days: int = 30
    late_penalty_rate: float = 10.0
    absentee_fine_percentage: float = 5.0
    currency: str = "K"
    bank_name: str = "Village Savings Bank"
    updated_at: datetime = Field(default_factory=now_local)
