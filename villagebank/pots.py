"""Pot accounting.

Every figure here is recomputed from the member, transaction and loan rows on
each call. Nothing is cached, so there is no counter to drift out of step
with the transaction log.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Iterable, Sequence

from .errors import ConsistencyError
from .models import LoanBase, LoanStatus, Member, MemberStatus, Transaction, TransactionType

logger = logging.getLogger(__name__)

STRICT_INVARIANTS = os.getenv("LEDGER_STRICT_INVARIANTS", "true").lower() == "true"
CONSERVATION_TOLERANCE = 0.005

APPROVED_STATUSES = (LoanStatus.ACTIVE, LoanStatus.PAID, LoanStatus.DEFAULTED)


@dataclass(frozen=True)
class PotSummary:
    savings_pot: float
    social_pot: float
    birthday_pot: float
    loans_pot: float
    total_funds: float
    available_to_loan: float
    overdrawn_amount: float


@dataclass(frozen=True)
class SocialPotSummary:
    total_contributions: float
    total_used_for_welfare: float
    total_loaned_out: float
    total_interest_earned: float
    available_for_loans: float
    available_for_distribution: float


@dataclass(frozen=True)
class ConservationCheck:
    cash_side: float
    book_side: float

    @property
    def difference(self) -> float:
        return round(self.cash_side - self.book_side, 2)

    @property
    def holds(self) -> bool:
        return abs(self.cash_side - self.book_side) <= CONSERVATION_TOLERANCE


def _round(value: float) -> float:
    return round(value + 0.0, 2)


def sum_transactions(transactions: Iterable[Transaction], tx_type: TransactionType) -> float:
    return sum(tx.amount for tx in transactions if tx.type == tx_type)


def outstanding_balance(loan: LoanBase) -> float:
    return max(loan.total_repayment - loan.amount_paid, 0.0)


def interest_collected(loan: LoanBase) -> float:
    """Interest actually received on a settled loan, including any recapitalised by rollovers."""
    if loan.status != LoanStatus.PAID:
        return 0.0
    return max(loan.total_paid - loan.disbursed_amount - loan.penalty_total, 0.0)


def savings_pot(members: Iterable[Member]) -> float:
    return _round(sum(member.total_savings for member in members))


def lendable_savings(members: Iterable[Member]) -> float:
    return sum(member.total_savings for member in members if member.status == MemberStatus.ACTIVE)


def birthday_pot(members: Iterable[Member]) -> float:
    return _round(sum(member.birthday_contributions for member in members))


def social_cash_pot(members: Iterable[Member], transactions: Sequence[Transaction]) -> float:
    contributions = sum(member.social_contributions for member in members)
    return (
        contributions
        - sum_transactions(transactions, TransactionType.WELFARE_USAGE)
        - sum_transactions(transactions, TransactionType.SOCIAL_LOAN_DISBURSEMENT)
        + sum_transactions(transactions, TransactionType.SOCIAL_LOAN_REPAYMENT)
        - sum_transactions(transactions, TransactionType.SOCIAL_DIVIDEND)
    )


def loans_pot(loans: Iterable[LoanBase]) -> float:
    return _round(sum(outstanding_balance(loan) for loan in loans if loan.status == LoanStatus.ACTIVE))


def raw_available_to_loan(members: Sequence[Member], transactions: Sequence[Transaction]) -> float:
    return (
        lendable_savings(members)
        + sum_transactions(transactions, TransactionType.LOAN_REPAYMENT)
        - sum_transactions(transactions, TransactionType.LOAN_DISBURSEMENT)
        - sum_transactions(transactions, TransactionType.DIVIDEND)
    )


def available_to_loan(members: Sequence[Member], transactions: Sequence[Transaction]) -> float:
    raw = raw_available_to_loan(members, transactions)
    if raw < 0:
        logger.warning("Loan pot is overdrawn by %.2f", -raw)
        return 0.0
    return _round(raw)


def compute_pot_summary(
    members: Sequence[Member],
    transactions: Sequence[Transaction],
    loans: Sequence[LoanBase],
) -> PotSummary:
    savings = savings_pot(members)
    social = _round(max(social_cash_pot(members, transactions), 0.0))
    birthday = birthday_pot(members)
    raw_available = raw_available_to_loan(members, transactions)
    if raw_available < 0:
        logger.warning("Loan pot is overdrawn by %.2f", -raw_available)
    return PotSummary(
        savings_pot=savings,
        social_pot=social,
        birthday_pot=birthday,
        loans_pot=loans_pot(loans),
        total_funds=_round(savings + social + birthday),
        available_to_loan=_round(max(raw_available, 0.0)),
        overdrawn_amount=_round(max(-raw_available, 0.0)),
    )


def compute_social_pot_summary(
    members: Sequence[Member],
    transactions: Sequence[Transaction],
    social_loans: Sequence[LoanBase],
) -> SocialPotSummary:
    contributions = sum(member.social_contributions for member in members)
    welfare = sum_transactions(transactions, TransactionType.WELFARE_USAGE)
    loaned_out = sum(outstanding_balance(loan) for loan in social_loans if loan.status == LoanStatus.ACTIVE)
    interest_earned = sum(
        loan.interest_amount
        for loan in social_loans
        if loan.status in (LoanStatus.ACTIVE, LoanStatus.PAID)
    )
    cash = social_cash_pot(members, transactions)
    distributed = sum_transactions(transactions, TransactionType.SOCIAL_DIVIDEND)
    return SocialPotSummary(
        total_contributions=_round(contributions),
        total_used_for_welfare=_round(welfare),
        total_loaned_out=_round(loaned_out),
        total_interest_earned=_round(interest_earned),
        available_for_loans=_round(max(cash, 0.0)),
        available_for_distribution=_round(max(interest_earned - distributed, 0.0)),
    )


def fund_conservation(
    members: Sequence[Member],
    transactions: Sequence[Transaction],
    loans: Sequence[LoanBase],
) -> ConservationCheck:
    """Compare the loan pot as seen by the transaction log with the loan book.

    The cash side adds the disbursed principal back onto the pot derived from
    transactions; the book side adds lifetime repayments recorded on the loan
    rows onto the lendable savings, less the dividends paid out of that pot.
    Both must agree to the cent.
    """
    disbursed = sum(loan.disbursed_amount for loan in loans if loan.status in APPROVED_STATUSES)
    repaid = sum(loan.total_paid for loan in loans)
    cash_side = raw_available_to_loan(members, transactions) + disbursed
    paid_out = sum_transactions(transactions, TransactionType.DIVIDEND)
    book_side = lendable_savings(members) + repaid - paid_out
    return ConservationCheck(cash_side=_round(cash_side), book_side=_round(book_side))


def assert_fund_conservation(
    members: Sequence[Member],
    transactions: Sequence[Transaction],
    loans: Sequence[LoanBase],
    *,
    strict: bool | None = None,
) -> ConservationCheck:
    check = fund_conservation(members, transactions, loans)
    if check.holds:
        return check
    message = (
        f"Fund conservation violated: cash side {check.cash_side:.2f} "
        f"!= book side {check.book_side:.2f}"
    )
    if STRICT_INVARIANTS if strict is None else strict:
        raise ConsistencyError(message)
    logger.error(message)
    return check
