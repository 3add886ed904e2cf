import logging

import pytest

from villagebank import pots
from villagebank.errors import ConsistencyError
from villagebank.models import (
    Loan,
    LoanStatus,
    Member,
    MemberStatus,
    SocialLoan,
    Transaction,
    TransactionType,
)
from villagebank.timezone_utils import now_local


def _members():
    return [
        Member(id=1, name="Active", total_shares=10, total_savings=1000.0, birthday_contributions=20.0,
               social_contributions=50.0),
        Member(id=2, name="Suspended", status=MemberStatus.SUSPENDED, total_shares=5, total_savings=500.0,
               social_contributions=50.0),
    ]


def _loan(**overrides):
    values = dict(
        id=1,
        member_id=1,
        loan_code="LN-0001",
        principal_amount=500.0,
        disbursed_amount=500.0,
        interest_amount=50.0,
        total_repayment=550.0,
        amount_paid=50.0,
        total_paid=50.0,
        status=LoanStatus.ACTIVE,
        due_date=now_local(),
    )
    values.update(overrides)
    return Loan(**values)


def _transactions():
    return [
        Transaction(type=TransactionType.LOAN_DISBURSEMENT, amount=500.0, member_id=1),
        Transaction(type=TransactionType.LOAN_REPAYMENT, amount=50.0, member_id=1),
        Transaction(type=TransactionType.WELFARE_USAGE, amount=30.0),
    ]


def test_pot_summary():
    summary = pots.compute_pot_summary(_members(), _transactions(), [_loan()])
    assert summary.savings_pot == 1500
    assert summary.birthday_pot == 20
    assert summary.social_pot == 70
    assert summary.total_funds == 1590
    assert summary.loans_pot == 500
    # suspended members' savings are not lendable
    assert summary.available_to_loan == 550
    assert summary.overdrawn_amount == 0


def test_overdrawn_pot_is_floored_and_logged(caplog):
    transactions = [Transaction(type=TransactionType.LOAN_DISBURSEMENT, amount=1200.0, member_id=1)]
    with caplog.at_level(logging.WARNING, logger="villagebank.pots"):
        summary = pots.compute_pot_summary(_members(), transactions, [])
    assert summary.available_to_loan == 0
    assert summary.overdrawn_amount == 200
    assert "overdrawn" in caplog.text


def test_social_pot_summary():
    social_loans = [
        SocialLoan(
            id=1,
            member_id=1,
            loan_code="SL-0001",
            principal_amount=40.0,
            disbursed_amount=40.0,
            interest_amount=4.0,
            total_repayment=44.0,
            amount_paid=10.0,
            total_paid=10.0,
            status=LoanStatus.ACTIVE,
            due_date=now_local(),
        )
    ]
    transactions = [
        Transaction(type=TransactionType.WELFARE_USAGE, amount=30.0),
        Transaction(type=TransactionType.SOCIAL_LOAN_DISBURSEMENT, amount=40.0, member_id=1),
        Transaction(type=TransactionType.SOCIAL_LOAN_REPAYMENT, amount=10.0, member_id=1),
    ]
    summary = pots.compute_social_pot_summary(_members(), transactions, social_loans)
    assert summary.total_contributions == 100
    assert summary.total_used_for_welfare == 30
    assert summary.total_loaned_out == 34
    assert summary.total_interest_earned == 4
    assert summary.available_for_loans == 40
    assert summary.available_for_distribution == 4


def test_conservation_holds_for_consistent_ledger():
    check = pots.fund_conservation(_members(), _transactions(), [_loan()])
    assert check.holds
    assert check.cash_side == check.book_side == 1050


def test_conservation_failure_raises_in_strict_mode():
    drifted = [_loan(total_paid=80.0)]
    with pytest.raises(ConsistencyError):
        pots.assert_fund_conservation(_members(), _transactions(), drifted, strict=True)


def test_conservation_failure_is_logged_when_lenient(caplog):
    drifted = [_loan(total_paid=80.0)]
    with caplog.at_level(logging.ERROR, logger="villagebank.pots"):
        check = pots.assert_fund_conservation(_members(), _transactions(), drifted, strict=False)
    assert not check.holds
    assert check.difference == -30
    assert "Fund conservation violated" in caplog.text
