"""Loan lifecycle for the main loan book and the social loan book.

Both books share one state machine::

    pending --approve--> active --payment--> paid
                           |--penalise--> active
                           |--rollover--> active   (overdue only)
                           |--default---> defaulted (overdue only)

A :class:`LoanBook` names the table, the transaction types and the pot a
book draws on; every operation takes the book it acts on.
"""
from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Type, Union

from sqlmodel import Session, select

from . import crud, pots
from .errors import IneligibilityError, NotFoundError, ValidationError
from .interest import InterestKind, calculate_interest, periods_for_days
from .models import (
    LoanBase,
    Loan,
    LoanStatus,
    Member,
    MemberStatus,
    SocialLoan,
    TransactionType,
)
from .schemas import LoanRead
from .timezone_utils import ensure_local_datetime, now_local

logger = logging.getLogger(__name__)

OPEN_STATUSES = (LoanStatus.PENDING, LoanStatus.ACTIVE)


@dataclass(frozen=True)
class LoanBook:
    name: str
    model: Type[LoanBase]
    code_prefix: str
    reference_type: str
    disbursement_type: TransactionType
    repayment_type: TransactionType


MAIN = LoanBook(
    name="loan",
    model=Loan,
    code_prefix="LN",
    reference_type="loan",
    disbursement_type=TransactionType.LOAN_DISBURSEMENT,
    repayment_type=TransactionType.LOAN_REPAYMENT,
)
SOCIAL = LoanBook(
    name="social loan",
    model=SocialLoan,
    code_prefix="SL",
    reference_type="social_loan",
    disbursement_type=TransactionType.SOCIAL_LOAN_DISBURSEMENT,
    repayment_type=TransactionType.SOCIAL_LOAN_REPAYMENT,
)


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    max_amount: float
    reason: Optional[str] = None


@dataclass(frozen=True)
class PaymentOutcome:
    loan: LoanBase
    applied_amount: float
    excess_amount: float


def _id_suffix(national_id: Optional[str]) -> str:
    digits = "".join(ch for ch in (national_id or "") if ch.isdigit())
    if not digits:
        return "".join(secrets.choice(string.digits) for _ in range(4))
    if len(digits) >= 4:
        return digits[-4:]
    return digits.zfill(4)


def _generate_loan_code(session: Session, book: LoanBook, member: Member) -> str:
    suffix = _id_suffix(member.national_id)
    timestamp = now_local().strftime("%Y%m%d%H%M%S")
    while True:
        random_part = "".join(secrets.choice(string.digits) for _ in range(2))
        code = f"{book.code_prefix}-{suffix}-{timestamp}{random_part}"
        existing = session.exec(select(book.model).where(book.model.loan_code == code)).first()
        if not existing:
            return code


def _resolve_now(now: Optional[datetime]) -> datetime:
    return ensure_local_datetime(now) or now_local()


def is_overdue(loan: LoanBase, now: Optional[datetime] = None) -> bool:
    if loan.status != LoanStatus.ACTIVE:
        return False
    return ensure_local_datetime(loan.due_date) < _resolve_now(now)


def to_loan_read(session: Session, loan: LoanBase, *, now: Optional[datetime] = None) -> LoanRead:
    member = session.get(Member, loan.member_id)
    return LoanRead(
        id=loan.id,
        loan_code=loan.loan_code,
        member_id=loan.member_id,
        member_code=getattr(member, "member_code", ""),
        member_name=getattr(member, "name", ""),
        principal_amount=loan.principal_amount,
        disbursed_amount=loan.disbursed_amount,
        interest_rate=loan.interest_rate,
        interest_type=loan.interest_type,
        interest_amount=loan.interest_amount,
        total_repayment=loan.total_repayment,
        amount_paid=loan.amount_paid,
        total_paid=loan.total_paid,
        penalty_total=loan.penalty_total,
        outstanding_balance=crud._round_amount(pots.outstanding_balance(loan)),
        status=loan.status,
        period_days=loan.period_days,
        request_date=ensure_local_datetime(loan.request_date),
        approval_date=ensure_local_datetime(loan.approval_date),
        due_date=ensure_local_datetime(loan.due_date),
        last_payment_date=ensure_local_datetime(loan.last_payment_date),
        paid_date=ensure_local_datetime(loan.paid_date),
        rollover_count=loan.rollover_count,
        is_overdue=is_overdue(loan, now),
    )


def list_loans(
    session: Session,
    *,
    book: LoanBook = MAIN,
    status: Optional[LoanStatus] = None,
    member_id: Optional[int] = None,
) -> List[LoanBase]:
    model = book.model
    stmt = select(model)
    if status is not None:
        stmt = stmt.where(model.status == status)
    if member_id is not None:
        stmt = stmt.where(model.member_id == member_id)
    return list(session.exec(stmt.order_by(model.request_date.desc(), model.id.desc())).all())


def get_loan(session: Session, loan_id: int, *, book: LoanBook = MAIN) -> LoanBase:
    loan = session.get(book.model, loan_id)
    if not loan:
        raise NotFoundError(f"{book.name.capitalize()} {loan_id} not found")
    return loan


def list_overdue_loans(
    session: Session,
    *,
    book: LoanBook = MAIN,
    now: Optional[datetime] = None,
) -> List[LoanBase]:
    current = _resolve_now(now)
    return [loan for loan in list_loans(session, book=book, status=LoanStatus.ACTIVE) if is_overdue(loan, current)]


def _member_outstanding(session: Session, book: LoanBook, member_id: int) -> float:
    model = book.model
    open_loans = session.exec(
        select(model).where(model.member_id == member_id, model.status.in_(OPEN_STATUSES))
    ).all()
    return sum(pots.outstanding_balance(loan) for loan in open_loans)


def _check(session: Session, book: LoanBook, member_id: Optional[int], amount: Optional[float]) -> EligibilityResult:
    if member_id is None:
        return EligibilityResult(False, 0.0, "No member selected")
    member = session.get(Member, member_id)
    if member is None:
        return EligibilityResult(False, 0.0, "Member not found")
    if member.status != MemberStatus.ACTIVE:
        return EligibilityResult(False, 0.0, "Member is not active")

    if book is SOCIAL:
        open_loan = session.exec(
            select(SocialLoan.id).where(SocialLoan.member_id == member_id, SocialLoan.status.in_(OPEN_STATUSES))
        ).first()
        if open_loan is not None:
            return EligibilityResult(False, 0.0, "Member already has an open social loan")
        max_amount = crud.get_social_pot_summary(session).available_for_loans
    else:
        settings = crud.get_settings(session)
        ceiling = member.total_savings * settings.max_loan_multiplier
        max_amount = crud._round_amount(max(ceiling - _member_outstanding(session, book, member_id), 0.0))

    if amount is not None:
        if amount <= 0:
            return EligibilityResult(False, max_amount, "Loan amount must be positive")
        if amount - max_amount > 1e-9:
            return EligibilityResult(
                False, max_amount, f"Amount exceeds the maximum eligible amount of {max_amount:.2f}"
            )
    return EligibilityResult(True, max_amount)


def check_eligibility(
    session: Session,
    member_id: Optional[int],
    amount: Optional[float] = None,
    *,
    book: LoanBook = MAIN,
) -> EligibilityResult:
    return _check(session, book, member_id, amount)


def create_loan(
    session: Session,
    member_id: int,
    amount: float,
    period_days: Optional[int] = None,
    rate: Optional[float] = None,
    kind: Union[str, InterestKind, None] = None,
    *,
    book: LoanBook = MAIN,
    now: Optional[datetime] = None,
) -> LoanBase:
    principal = crud._require_positive(amount, "loan amount")
    requested_at = _resolve_now(now)
    with crud.atomic(session):
        member = crud.get_member(session, member_id)
        settings = crud.get_settings(session)
        term = settings.loan_term_days if period_days is None else int(period_days)
        if term < 1:
            raise ValidationError("period_days must be at least 1")
        chosen_rate = settings.default_interest_rate if rate is None else rate
        chosen_kind = InterestKind.parse(kind if kind is not None else settings.default_interest_type)

        verdict = _check(session, book, member_id, principal)
        if not verdict.eligible:
            raise IneligibilityError(verdict.reason or "Member is not eligible")

        calc = calculate_interest(principal, chosen_rate, chosen_kind, periods_for_days(term))
        loan = book.model(
            member_id=member_id,
            loan_code=_generate_loan_code(session, book, member),
            principal_amount=principal,
            interest_rate=chosen_rate,
            interest_type=chosen_kind,
            interest_amount=calc.interest,
            total_repayment=calc.total,
            status=LoanStatus.PENDING,
            period_days=term,
            request_date=requested_at,
            due_date=requested_at + timedelta(days=term),
        )
        session.add(loan)
        session.flush()
    session.refresh(loan)
    logger.info("%s %s requested for %.2f by %s", book.name, loan.loan_code, principal, member.member_code)
    return loan


def _conservation_guard(session: Session, book: LoanBook) -> None:
    if book is MAIN:
        crud.check_fund_conservation(session)


def _require_status(loan: LoanBase, book: LoanBook, expected: LoanStatus) -> None:
    if loan.status != expected:
        raise IneligibilityError(
            f"{book.name.capitalize()} {loan.loan_code} is {loan.status.value}, expected {expected.value}"
        )


def _require_overdue(loan: LoanBase, book: LoanBook, now: datetime) -> None:
    _require_status(loan, book, LoanStatus.ACTIVE)
    if not is_overdue(loan, now):
        raise IneligibilityError(f"{book.name.capitalize()} {loan.loan_code} is not overdue")


def approve_loan(
    session: Session,
    loan_id: int,
    *,
    book: LoanBook = MAIN,
    now: Optional[datetime] = None,
) -> LoanBase:
    approved_at = _resolve_now(now)
    with crud.atomic(session):
        loan = get_loan(session, loan_id, book=book)
        _require_status(loan, book, LoanStatus.PENDING)
        if book is SOCIAL:
            available = crud.get_social_pot_summary(session).available_for_loans
        else:
            available = crud.get_pot_summary(session).available_to_loan
        if loan.principal_amount - available > 1e-9:
            raise IneligibilityError(
                f"Insufficient funds: {available:.2f} available, {loan.principal_amount:.2f} requested"
            )
        loan.status = LoanStatus.ACTIVE
        loan.approval_date = approved_at
        loan.disbursed_amount = loan.principal_amount
        session.add(loan)
        crud.record_transaction(
            session,
            tx_type=book.disbursement_type,
            amount=loan.principal_amount,
            member_id=loan.member_id,
            description=f"{book.name.capitalize()} {loan.loan_code} disbursed",
            reference_type=book.reference_type,
            reference_id=loan.id,
            when=approved_at,
        )
        _conservation_guard(session, book)
    session.refresh(loan)
    logger.info("%s %s approved, %.2f disbursed", book.name, loan.loan_code, loan.disbursed_amount)
    return loan


def make_payment(
    session: Session,
    loan_id: int,
    amount: float,
    *,
    book: LoanBook = MAIN,
    now: Optional[datetime] = None,
) -> PaymentOutcome:
    """Apply a repayment, clamped to the outstanding balance."""
    offered = crud._require_positive(amount, "payment amount")
    paid_at = _resolve_now(now)
    with crud.atomic(session):
        loan = get_loan(session, loan_id, book=book)
        _require_status(loan, book, LoanStatus.ACTIVE)
        applied = crud._round_amount(min(offered, pots.outstanding_balance(loan)))
        loan.amount_paid = crud._round_amount(loan.amount_paid + applied)
        loan.total_paid = crud._round_amount(loan.total_paid + applied)
        loan.last_payment_date = paid_at
        if loan.amount_paid >= loan.total_repayment - 1e-9:
            loan.amount_paid = loan.total_repayment
            loan.status = LoanStatus.PAID
            loan.paid_date = paid_at
        session.add(loan)
        crud.record_transaction(
            session,
            tx_type=book.repayment_type,
            amount=applied,
            member_id=loan.member_id,
            description=f"Repayment on {book.name} {loan.loan_code}",
            reference_type=book.reference_type,
            reference_id=loan.id,
            when=paid_at,
        )
        _conservation_guard(session, book)
    session.refresh(loan)
    if loan.status == LoanStatus.PAID:
        logger.info("%s %s settled", book.name, loan.loan_code)
    return PaymentOutcome(
        loan=loan,
        applied_amount=applied,
        excess_amount=crud._round_amount(offered - applied),
    )


def penalise(
    session: Session,
    loan_id: int,
    amount: Optional[float] = None,
    *,
    book: LoanBook = MAIN,
    now: Optional[datetime] = None,
) -> LoanBase:
    charged_at = _resolve_now(now)
    with crud.atomic(session):
        loan = get_loan(session, loan_id, book=book)
        _require_status(loan, book, LoanStatus.ACTIVE)
        if amount is None:
            rate = crud.get_settings(session).late_penalty_rate
            penalty = crud._round_amount(pots.outstanding_balance(loan) * rate / 100)
        else:
            penalty = amount
        penalty = crud._require_positive(penalty, "penalty amount")
        loan.total_repayment = crud._round_amount(loan.total_repayment + penalty)
        loan.penalty_total = crud._round_amount(loan.penalty_total + penalty)
        session.add(loan)
        crud.record_transaction(
            session,
            tx_type=TransactionType.FINE,
            amount=penalty,
            member_id=loan.member_id,
            description=f"Late penalty on {book.name} {loan.loan_code}",
            reference_type=book.reference_type,
            reference_id=loan.id,
            when=charged_at,
        )
        _conservation_guard(session, book)
    session.refresh(loan)
    logger.info("%s %s penalised %.2f", book.name, loan.loan_code, penalty)
    return loan


def rollover_loan(
    session: Session,
    loan_id: int,
    *,
    book: LoanBook = MAIN,
    now: Optional[datetime] = None,
) -> LoanBase:
    """Recapitalise an overdue loan's outstanding balance into a new term."""
    rolled_at = _resolve_now(now)
    with crud.atomic(session):
        loan = get_loan(session, loan_id, book=book)
        _require_overdue(loan, book, rolled_at)
        term = crud.get_settings(session).loan_term_days
        outstanding = crud._round_amount(pots.outstanding_balance(loan))
        calc = calculate_interest(outstanding, loan.interest_rate, loan.interest_type, periods_for_days(term))
        loan.principal_amount = outstanding
        loan.interest_amount = calc.interest
        loan.total_repayment = calc.total
        loan.amount_paid = 0.0
        loan.period_days = term
        loan.due_date = rolled_at + timedelta(days=term)
        loan.rollover_count += 1
        session.add(loan)
        crud.record_transaction(
            session,
            tx_type=TransactionType.LOAN_ROLLOVER,
            amount=outstanding,
            member_id=loan.member_id,
            description=f"{book.name.capitalize()} {loan.loan_code} rolled over (#{loan.rollover_count})",
            reference_type=book.reference_type,
            reference_id=loan.id,
            when=rolled_at,
        )
        _conservation_guard(session, book)
    session.refresh(loan)
    logger.info("%s %s rolled over, new principal %.2f", book.name, loan.loan_code, outstanding)
    return loan


def default_loan(
    session: Session,
    loan_id: int,
    *,
    book: LoanBook = MAIN,
    now: Optional[datetime] = None,
) -> LoanBase:
    defaulted_at = _resolve_now(now)
    with crud.atomic(session):
        loan = get_loan(session, loan_id, book=book)
        _require_overdue(loan, book, defaulted_at)
        written_off = crud._round_amount(pots.outstanding_balance(loan))
        loan.status = LoanStatus.DEFAULTED
        session.add(loan)
        crud.record_transaction(
            session,
            tx_type=TransactionType.LOAN_DEFAULT,
            amount=written_off,
            member_id=loan.member_id,
            description=f"{book.name.capitalize()} {loan.loan_code} written off",
            reference_type=book.reference_type,
            reference_id=loan.id,
            when=defaulted_at,
        )
        _conservation_guard(session, book)
    session.refresh(loan)
    logger.warning("%s %s defaulted with %.2f outstanding", book.name, loan.loan_code, written_off)
    return loan


# Social book


def list_social_loans(session: Session, **filters) -> List[LoanBase]:
    return list_loans(session, book=SOCIAL, **filters)


def get_social_loan(session: Session, loan_id: int) -> LoanBase:
    return get_loan(session, loan_id, book=SOCIAL)


def check_social_eligibility(
    session: Session, member_id: Optional[int], amount: Optional[float] = None
) -> EligibilityResult:
    return check_eligibility(session, member_id, amount, book=SOCIAL)


def create_social_loan(session: Session, member_id: int, amount: float, *args, **kwargs) -> LoanBase:
    return create_loan(session, member_id, amount, *args, book=SOCIAL, **kwargs)


def approve_social_loan(session: Session, loan_id: int, **kwargs) -> LoanBase:
    return approve_loan(session, loan_id, book=SOCIAL, **kwargs)


def make_social_payment(session: Session, loan_id: int, amount: float, **kwargs) -> PaymentOutcome:
    return make_payment(session, loan_id, amount, book=SOCIAL, **kwargs)


def social_penalise(session: Session, loan_id: int, amount: Optional[float] = None, **kwargs) -> LoanBase:
    return penalise(session, loan_id, amount, book=SOCIAL, **kwargs)


def social_rollover_loan(session: Session, loan_id: int, **kwargs) -> LoanBase:
    return rollover_loan(session, loan_id, book=SOCIAL, **kwargs)


def social_default_loan(session: Session, loan_id: int, **kwargs) -> LoanBase:
    return default_loan(session, loan_id, book=SOCIAL, **kwargs)


def list_social_overdue_loans(session: Session, **kwargs) -> List[LoanBase]:
    return list_overdue_loans(session, book=SOCIAL, **kwargs)
