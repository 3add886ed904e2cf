from __future__ import annotations

import json
import logging
import math
import secrets
import string
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlmodel import Session, select

from . import pots
from .errors import ConsistencyError, IneligibilityError, NotFoundError, ValidationError
from .models import (
    Cycle,
    CycleStatus,
    LedgerSettings,
    Loan,
    LoanStatus,
    Member,
    MemberStatus,
    SocialLoan,
    Transaction,
    TransactionType,
)
from .schemas import SettingsUpdate
from .timezone_utils import ensure_local_datetime, now_local

logger = logging.getLogger(__name__)

LEDGER_WRITE_LOCK = threading.RLock()
_ATOMIC_DEPTH_KEY = "ledger_atomic_depth"

MEMBER_EDITABLE_FIELDS = ("name", "national_id", "phone", "status", "joined_date")

# Loan-driven entries are posted by the lending module only.
DIRECT_TRANSACTION_TYPES = frozenset(
    {
        TransactionType.SHARE_PURCHASE,
        TransactionType.SOCIAL_CONTRIBUTION,
        TransactionType.BIRTHDAY_CONTRIBUTION,
        TransactionType.FINE,
        TransactionType.DIVIDEND,
        TransactionType.WITHDRAWAL,
        TransactionType.WELFARE_USAGE,
    }
)
INCOME_TRANSACTION_TYPES = (
    TransactionType.SHARE_PURCHASE,
    TransactionType.SOCIAL_CONTRIBUTION,
    TransactionType.LOAN_REPAYMENT,
)


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Serialise a ledger mutation and commit it as one unit.

    Nested calls join the outermost block, which owns the commit. Any
    exception rolls the whole unit back.
    """
    with LEDGER_WRITE_LOCK:
        depth = session.info.get(_ATOMIC_DEPTH_KEY, 0)
        session.info[_ATOMIC_DEPTH_KEY] = depth + 1
        try:
            yield session
            if depth == 0:
                session.commit()
        except Exception:
            if depth == 0:
                session.rollback()
            raise
        finally:
            session.info[_ATOMIC_DEPTH_KEY] = depth


def _round_amount(value: Optional[float]) -> float:
    try:
        number = float(value or 0.0)
    except (TypeError, ValueError):
        number = 0.0
    return round(number, 2)


def _require_positive(amount: Optional[float], label: str = "amount") -> float:
    if amount is None or not math.isfinite(amount) or amount <= 0:
        raise ValidationError(f"{label} must be a positive number")
    return _round_amount(amount)


def _generate_member_code(session: Session) -> str:
    charset = string.ascii_uppercase + string.digits
    while True:
        code = "MBR-" + "".join(secrets.choice(charset) for _ in range(6))
        existing = session.exec(select(Member).where(Member.member_code == code)).first()
        if not existing:
            return code


@dataclass
class LedgerRows:
    members: List[Member]
    transactions: List[Transaction]
    loans: List[Loan]
    social_loans: List[SocialLoan]


def load_ledger_rows(session: Session) -> LedgerRows:
    return LedgerRows(
        members=list(session.exec(select(Member)).all()),
        transactions=list(session.exec(select(Transaction)).all()),
        loans=list(session.exec(select(Loan)).all()),
        social_loans=list(session.exec(select(SocialLoan)).all()),
    )


# Settings


def get_settings(session: Session) -> LedgerSettings:
    row = session.exec(select(LedgerSettings).order_by(LedgerSettings.id).limit(1)).first()
    if row is None:
        return LedgerSettings()
    return row


def update_settings(session: Session, patch: Dict[str, Any]) -> LedgerSettings:
    unknown = set(patch) - set(SettingsUpdate.model_fields)
    if unknown:
        raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
    with atomic(session):
        current = get_settings(session)
        merged = SettingsUpdate.model_validate(current, from_attributes=True).model_dump()
        merged.update({key: value for key, value in patch.items() if value is not None})
        try:
            validated = SettingsUpdate.model_validate(merged)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid settings: {exc.errors()[0]['msg']}") from exc
        if not math.isclose(validated.share_price, current.share_price):
            holders = session.exec(select(Member).where(Member.total_shares > 0)).first()
            if holders is not None:
                raise ValidationError("share_price cannot change while members hold shares")
        for key, value in validated.model_dump().items():
            setattr(current, key, value)
        current.updated_at = now_local()
        session.add(current)
        session.flush()
    session.refresh(current)
    logger.info("Settings replaced")
    return current


# Members


def list_members(session: Session, status: Optional[MemberStatus] = None) -> List[Member]:
    stmt = select(Member)
    if status is not None:
        stmt = stmt.where(Member.status == status)
    return list(session.exec(stmt.order_by(Member.created_at, Member.id)).all())


def get_member(session: Session, member_id: int) -> Member:
    member = session.get(Member, member_id)
    if not member:
        raise NotFoundError(f"Member {member_id} not found")
    return member


def get_member_by_code(session: Session, member_code: str) -> Member:
    normalized = (member_code or "").strip().upper()
    if not normalized:
        raise ValidationError("member_code is required")
    member = session.exec(select(Member).where(Member.member_code == normalized)).first()
    if not member:
        raise NotFoundError(f"Member {normalized} not found")
    return member


def add_member(session: Session, data: Member) -> Member:
    if not (data.name or "").strip():
        raise ValidationError("name is required")
    with atomic(session):
        desired_code = (data.member_code or "").strip().upper()
        if desired_code:
            existing = session.exec(select(Member).where(Member.member_code == desired_code)).first()
            if existing:
                raise ValidationError("member_code already exists")
            data.member_code = desired_code
        else:
            data.member_code = _generate_member_code(session)
        data.name = data.name.strip()
        data.total_shares = 0
        data.total_savings = 0.0
        data.social_contributions = 0.0
        data.birthday_contributions = 0.0
        session.add(data)
        session.flush()
    session.refresh(data)
    logger.info("Member %s registered", data.member_code)
    return data


def update_member(session: Session, member_id: int, payload: Dict[str, Any]) -> Member:
    unknown = set(payload) - set(MEMBER_EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Fields cannot be edited directly: {', '.join(sorted(unknown))}")
    with atomic(session):
        member = get_member(session, member_id)
        for key, value in payload.items():
            if key == "name" and not (value or "").strip():
                raise ValidationError("name cannot be empty")
            setattr(member, key, value)
        session.add(member)
        session.flush()
    session.refresh(member)
    return member


def _member_is_referenced(session: Session, member_id: int) -> bool:
    for model in (Transaction, Loan, SocialLoan):
        if session.exec(select(model.id).where(model.member_id == member_id).limit(1)).first():
            return True
    return False


def delete_member(session: Session, member_id: int) -> bool:
    """Remove a member, or mark them as left when history points at them."""
    with atomic(session):
        member = get_member(session, member_id)
        if _member_is_referenced(session, member_id):
            member.status = MemberStatus.LEFT
            session.add(member)
            logger.info("Member %s has history; marked as left", member.member_code)
        else:
            session.delete(member)
            logger.info("Member %s removed", member.member_code)
    return True


# Transactions


def list_transactions(session: Session, member_id: Optional[int] = None) -> List[Transaction]:
    stmt = select(Transaction)
    if member_id is not None:
        stmt = stmt.where(Transaction.member_id == member_id)
    return list(session.exec(stmt.order_by(Transaction.date.desc(), Transaction.id.desc())).all())


def record_transaction(
    session: Session,
    *,
    tx_type: TransactionType,
    amount: float,
    member_id: Optional[int],
    description: str = "",
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    when: Optional[datetime] = None,
) -> Transaction:
    active_cycle = get_active_cycle(session)
    entry = Transaction(
        member_id=member_id,
        type=tx_type,
        amount=_require_positive(amount),
        date=ensure_local_datetime(when) or now_local(),
        description=description,
        reference_type=reference_type,
        reference_id=reference_id,
        cycle_id=active_cycle.id if active_cycle else None,
    )
    session.add(entry)
    session.flush()
    return entry


def _shares_for_amount(amount: float, share_price: float) -> int:
    shares = amount / share_price
    if abs(shares - round(shares)) > 1e-6:
        raise ValidationError(f"amount must be a multiple of the share price {share_price:.2f}")
    return int(round(shares))


def _apply_member_effect(
    member: Member,
    tx_type: TransactionType,
    amount: float,
    settings: LedgerSettings,
    when: datetime,
) -> None:
    if member.status == MemberStatus.LEFT and tx_type not in (
        TransactionType.WITHDRAWAL,
        TransactionType.DIVIDEND,
        TransactionType.FINE,
    ):
        raise IneligibilityError(f"Member {member.member_code} has left the group")
    if tx_type == TransactionType.SHARE_PURCHASE:
        shares = _shares_for_amount(amount, settings.share_price)
        member.total_shares += shares
        member.total_savings = _round_amount(member.total_shares * settings.share_price)
        member.last_payment_date = when
    elif tx_type == TransactionType.WITHDRAWAL:
        shares = _shares_for_amount(amount, settings.share_price)
        if shares > member.total_shares:
            raise ValidationError("withdrawal exceeds the member's savings")
        member.total_shares -= shares
        member.total_savings = _round_amount(member.total_shares * settings.share_price)
    elif tx_type == TransactionType.SOCIAL_CONTRIBUTION:
        member.social_contributions = _round_amount(member.social_contributions + amount)
        member.last_payment_date = when
    elif tx_type == TransactionType.BIRTHDAY_CONTRIBUTION:
        member.birthday_contributions = _round_amount(member.birthday_contributions + amount)
        member.last_payment_date = when


def add_transaction(
    session: Session,
    *,
    tx_type: TransactionType,
    amount: float,
    member_id: Optional[int] = None,
    description: str = "",
    when: Optional[datetime] = None,
) -> Transaction:
    """Post a member-level entry and apply its effect on the member's balances."""
    if tx_type not in DIRECT_TRANSACTION_TYPES:
        raise ValidationError(f"{tx_type.value} entries are created by loan operations")
    amount = _require_positive(amount)
    if member_id is None and tx_type != TransactionType.WELFARE_USAGE:
        raise ValidationError("member_id is required")
    posted_at = ensure_local_datetime(when) or now_local()
    with atomic(session):
        if tx_type == TransactionType.WELFARE_USAGE:
            summary = get_social_pot_summary(session)
            if amount - summary.available_for_loans > 1e-9:
                raise IneligibilityError(
                    f"Only {summary.available_for_loans:.2f} is available in the social pot"
                )
        elif tx_type in (TransactionType.WITHDRAWAL, TransactionType.DIVIDEND):
            available = get_pot_summary(session).available_to_loan
            if amount - available > 1e-9:
                raise IneligibilityError(f"Only {available:.2f} is in the loan pot; the rest is lent out")
        if member_id is not None:
            member = get_member(session, member_id)
            _apply_member_effect(member, tx_type, amount, get_settings(session), posted_at)
            session.add(member)
        entry = record_transaction(
            session,
            tx_type=tx_type,
            amount=amount,
            member_id=member_id,
            description=description,
            when=posted_at,
        )
    session.refresh(entry)
    return entry


def record_welfare_usage(
    session: Session,
    amount: float,
    description: str = "",
    member_id: Optional[int] = None,
) -> Transaction:
    return add_transaction(
        session,
        tx_type=TransactionType.WELFARE_USAGE,
        amount=amount,
        member_id=member_id,
        description=description or "Welfare/Emergency usage",
    )


# Reports


@dataclass(frozen=True)
class DashboardStats:
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


def get_pot_summary(session: Session) -> pots.PotSummary:
    rows = load_ledger_rows(session)
    return pots.compute_pot_summary(rows.members, rows.transactions, rows.loans)


def get_social_pot_summary(session: Session) -> pots.SocialPotSummary:
    rows = load_ledger_rows(session)
    return pots.compute_social_pot_summary(rows.members, rows.transactions, rows.social_loans)


def check_fund_conservation(session: Session, *, strict: Optional[bool] = None) -> pots.ConservationCheck:
    session.flush()
    rows = load_ledger_rows(session)
    return pots.assert_fund_conservation(rows.members, rows.transactions, rows.loans, strict=strict)


def get_dashboard_stats(session: Session, *, now: Optional[datetime] = None) -> DashboardStats:
    now = ensure_local_datetime(now) or now_local()
    rows = load_ledger_rows(session)
    active_loans = [loan for loan in rows.loans if loan.status == LoanStatus.ACTIVE]
    overdue = [loan for loan in active_loans if ensure_local_datetime(loan.due_date) < now]
    month_ago = now - timedelta(days=30)
    monthly_income = sum(
        tx.amount
        for tx in rows.transactions
        if tx.type in INCOME_TRANSACTION_TYPES and ensure_local_datetime(tx.date) > month_ago
    )
    return DashboardStats(
        total_members=len(rows.members),
        active_members=sum(1 for member in rows.members if member.status == MemberStatus.ACTIVE),
        total_savings=pots.savings_pot(rows.members),
        total_loans=len(rows.loans),
        active_loans=len(active_loans),
        pending_loans=sum(1 for loan in rows.loans if loan.status == LoanStatus.PENDING),
        overdue_loans=len(overdue),
        outstanding_balance=pots.loans_pot(rows.loans),
        cash_on_hand=pots.available_to_loan(rows.members, rows.transactions),
        total_interest_earned=_round_amount(
            sum(pots.interest_collected(loan) for loan in rows.loans)
        ),
        monthly_growth=_round_amount(monthly_income),
    )


# Cycles


@dataclass(frozen=True)
class ShareoutRow:
    member_id: int
    member_code: str
    name: str
    shares: int
    savings: float
    dividend: float
    payout: float


@dataclass
class ShareoutReport:
    cycle_id: int
    cycle_name: str
    is_final: bool
    dividend_per_share: float
    dividend_outcome: str
    rows: List[ShareoutRow] = field(default_factory=list)

    @property
    def total_dividends(self) -> float:
        return _round_amount(sum(row.dividend for row in self.rows))

    @property
    def total_payout(self) -> float:
        return _round_amount(sum(row.payout for row in self.rows))


@dataclass(frozen=True)
class CycleTotals:
    total_shares: int
    total_savings: float
    total_interest_earned: float
    social_interest_earned: float
    total_fines: float
    total_loans_issued: float
    dividend_per_share: float
    dividend_outcome: str


def list_cycles(session: Session) -> List[Cycle]:
    return list(session.exec(select(Cycle).order_by(Cycle.start_date.desc(), Cycle.id.desc())).all())


def get_cycle(session: Session, cycle_id: int) -> Cycle:
    cycle = session.get(Cycle, cycle_id)
    if not cycle:
        raise NotFoundError(f"Cycle {cycle_id} not found")
    return cycle


def get_active_cycle(session: Session) -> Optional[Cycle]:
    return session.exec(select(Cycle).where(Cycle.status == CycleStatus.ACTIVE)).first()


def create_cycle(session: Session, name: str, start_date: date, end_date: date) -> Cycle:
    name = (name or "").strip()
    if not name:
        raise ValidationError("cycle name is required")
    if end_date <= start_date:
        raise ValidationError("end_date must be after start_date")
    with atomic(session):
        active = get_active_cycle(session)
        if active is not None:
            raise IneligibilityError(f"Cycle '{active.name}' is still active; close it first")
        cycle = Cycle(
            name=name,
            start_date=start_date,
            end_date=end_date,
            share_value=get_settings(session).share_price,
        )
        session.add(cycle)
        session.flush()
    session.refresh(cycle)
    logger.info("Cycle %s opened", cycle.name)
    return cycle


def _settled_within(loan, since: datetime, until: datetime) -> bool:
    paid_at = ensure_local_datetime(loan.paid_date)
    return loan.status == LoanStatus.PAID and paid_at is not None and since <= paid_at <= until


def _cycle_totals(session: Session, cycle: Cycle, until: datetime) -> CycleTotals:
    rows = load_ledger_rows(session)
    since = ensure_local_datetime(cycle.start_date)
    main_interest = sum(
        pots.interest_collected(loan) for loan in rows.loans if _settled_within(loan, since, until)
    )
    social_interest = sum(
        pots.interest_collected(loan) for loan in rows.social_loans if _settled_within(loan, since, until)
    )
    interest = main_interest + social_interest
    fines = sum(
        tx.amount
        for tx in rows.transactions
        if tx.type == TransactionType.FINE and since <= ensure_local_datetime(tx.date) <= until
    )
    issued = sum(
        loan.disbursed_amount
        for loan in rows.loans
        if loan.approval_date is not None and since <= ensure_local_datetime(loan.approval_date) <= until
    )
    total_shares = sum(member.total_shares for member in rows.members)
    if total_shares > 0:
        # rounded down to the cent; total dividends stay within the profit
        per_share = math.floor(round(interest * 100 / total_shares, 6)) / 100
        outcome = "computed"
    else:
        per_share = 0.0
        outcome = "no_shares"
    return CycleTotals(
        total_shares=total_shares,
        total_savings=pots.savings_pot(rows.members),
        total_interest_earned=_round_amount(interest),
        social_interest_earned=_round_amount(social_interest),
        total_fines=_round_amount(fines),
        total_loans_issued=_round_amount(issued),
        dividend_per_share=per_share,
        dividend_outcome=outcome,
    )


def _snapshot_holders(members: Sequence[Member]) -> List[Dict[str, Any]]:
    return [
        {
            "member_id": member.id,
            "member_code": member.member_code,
            "name": member.name,
            "shares": member.total_shares,
            "savings": member.total_savings,
        }
        for member in members
        if member.total_shares > 0
    ]


def load_share_snapshot(cycle: Cycle) -> List[Dict[str, Any]]:
    if not cycle.share_snapshot_json:
        return []
    try:
        value = json.loads(cycle.share_snapshot_json)
    except json.JSONDecodeError as exc:
        raise ConsistencyError(f"Cycle '{cycle.name}' has an unreadable share snapshot") from exc
    if not isinstance(value, list):
        raise ConsistencyError(f"Cycle '{cycle.name}' has an unreadable share snapshot")
    return value


def close_cycle(session: Session, cycle_id: int, *, now: Optional[datetime] = None) -> Cycle:
    closed_at = ensure_local_datetime(now) or now_local()
    with atomic(session):
        cycle = get_cycle(session, cycle_id)
        if cycle.status != CycleStatus.ACTIVE:
            raise IneligibilityError(f"Cycle '{cycle.name}' is already closed")
        totals = _cycle_totals(session, cycle, closed_at)
        cycle.total_shares = totals.total_shares
        cycle.total_savings = totals.total_savings
        cycle.total_interest_earned = totals.total_interest_earned
        cycle.social_interest_earned = totals.social_interest_earned
        cycle.total_fines = totals.total_fines
        cycle.total_loans_issued = totals.total_loans_issued
        cycle.dividend_per_share = totals.dividend_per_share
        cycle.dividend_outcome = totals.dividend_outcome
        cycle.share_snapshot_json = json.dumps(_snapshot_holders(list_members(session)), ensure_ascii=False)
        cycle.status = CycleStatus.CLOSED
        cycle.closed_at = closed_at
        session.add(cycle)
        session.flush()
    session.refresh(cycle)
    logger.info(
        "Cycle %s closed: %s shares, dividend per share %.2f (%s)",
        cycle.name,
        cycle.total_shares,
        cycle.dividend_per_share or 0.0,
        cycle.dividend_outcome,
    )
    return cycle


def get_shareout(session: Session, cycle_id: int, *, now: Optional[datetime] = None) -> ShareoutReport:
    """Dividend and payout per shareholder.

    A closed cycle reads the holders frozen at close; an active cycle is a
    preview over the current members.
    """
    cycle = get_cycle(session, cycle_id)
    if cycle.status == CycleStatus.CLOSED:
        per_share = cycle.dividend_per_share or 0.0
        outcome = cycle.dividend_outcome or "computed"
        holders = load_share_snapshot(cycle)
    else:
        totals = _cycle_totals(session, cycle, ensure_local_datetime(now) or now_local())
        per_share = totals.dividend_per_share
        outcome = totals.dividend_outcome
        holders = _snapshot_holders(list_members(session))
    report = ShareoutReport(
        cycle_id=cycle.id,
        cycle_name=cycle.name,
        is_final=cycle.status == CycleStatus.CLOSED,
        dividend_per_share=per_share,
        dividend_outcome=outcome,
    )
    for holder in holders:
        dividend = _round_amount(holder["shares"] * per_share)
        report.rows.append(
            ShareoutRow(
                member_id=holder["member_id"],
                member_code=holder["member_code"],
                name=holder["name"],
                shares=holder["shares"],
                savings=holder["savings"],
                dividend=dividend,
                payout=_round_amount(holder["savings"] + dividend),
            )
        )
    return report


def _split_dividend(dividend: float, social_fraction: float) -> Tuple[float, float]:
    social_part = _round_amount(dividend * social_fraction)
    return _round_amount(dividend - social_part), social_part


def distribute_dividends(session: Session, cycle_id: int) -> List[Transaction]:
    """Post the dividends of a closed cycle, once.

    Each holder's dividend is split between the loan pot and the social pot
    in proportion to the interest each book earned; every part is paid out
    of the pot it came from.
    """
    with atomic(session):
        cycle = get_cycle(session, cycle_id)
        if cycle.status != CycleStatus.CLOSED:
            raise IneligibilityError("Dividends can only be paid for a closed cycle")
        if cycle.dividends_distributed:
            raise IneligibilityError(f"Dividends for '{cycle.name}' were already paid")
        if cycle.dividend_outcome == "no_shares":
            raise IneligibilityError(f"No shares were held in '{cycle.name}'; there is nothing to distribute")
        report = get_shareout(session, cycle_id)
        if cycle.total_shares > 0 and not report.rows:
            raise ConsistencyError(f"Cycle '{cycle.name}' has no share snapshot")
        if report.total_dividends - cycle.total_interest_earned > pots.CONSERVATION_TOLERANCE:
            raise ConsistencyError(
                f"Dividends {report.total_dividends:.2f} exceed the profit {cycle.total_interest_earned:.2f}"
            )

        social_fraction = 0.0
        if cycle.total_interest_earned > 0:
            social_fraction = cycle.social_interest_earned / cycle.total_interest_earned
        parts = [(row, *_split_dividend(row.dividend, social_fraction)) for row in report.rows]
        main_total = sum(main for _, main, _ in parts)
        social_total = sum(social for _, _, social in parts)
        available = get_pot_summary(session).available_to_loan
        if main_total - available > 1e-9:
            raise IneligibilityError(
                f"Only {available:.2f} is in the loan pot; {main_total:.2f} is needed for dividends"
            )
        social_available = get_social_pot_summary(session).available_for_loans
        if social_total - social_available > 1e-9:
            raise IneligibilityError(
                f"Only {social_available:.2f} is in the social pot; {social_total:.2f} is needed for dividends"
            )

        entries = []
        for row, main_part, social_part in parts:
            for tx_type, amount in (
                (TransactionType.DIVIDEND, main_part),
                (TransactionType.SOCIAL_DIVIDEND, social_part),
            ):
                if amount <= 0:
                    continue
                entries.append(
                    record_transaction(
                        session,
                        tx_type=tx_type,
                        amount=amount,
                        member_id=row.member_id,
                        description=f"Dividend for {cycle.name}: {row.shares} shares x {report.dividend_per_share:.2f}",
                        reference_type="cycle",
                        reference_id=cycle.id,
                    )
                )
        cycle.dividends_distributed = True
        session.add(cycle)
        check_fund_conservation(session)
    logger.info("Paid %d dividend entries for cycle %s", len(entries), cycle.name)
    return entries


def list_rows_for_export(session: Session) -> Dict[str, Sequence[Any]]:
    rows = load_ledger_rows(session)
    return {
        "members": rows.members,
        "transactions": rows.transactions,
        "loans": rows.loans,
        "social_loans": rows.social_loans,
        "cycles": list_cycles(session),
    }
