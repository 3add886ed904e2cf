from datetime import timedelta

import pytest

from villagebank import crud, lending
from villagebank.errors import IneligibilityError, ValidationError
from villagebank.models import CycleStatus, TransactionType
from villagebank.scripts.audit_consistency import run_audit
from villagebank.timezone_utils import ensure_local_datetime, today_local

from .conftest import add_member


def _open_cycle(session, name="Cycle 2024"):
    today = today_local()
    return crud.create_cycle(session, name, today - timedelta(days=10), today + timedelta(days=300))


def test_only_one_cycle_can_be_active(session):
    first = _open_cycle(session)
    assert crud.get_active_cycle(session).id == first.id
    with pytest.raises(IneligibilityError):
        _open_cycle(session, "Cycle 2025")
    assert [cycle.id for cycle in crud.list_cycles(session)] == [first.id]


def test_cycle_dates_are_validated(session):
    today = today_local()
    with pytest.raises(ValidationError):
        crud.create_cycle(session, "Backwards", today, today - timedelta(days=1))
    with pytest.raises(ValidationError):
        crud.create_cycle(session, "  ", today, today + timedelta(days=1))


def test_transactions_are_stamped_with_active_cycle(session):
    cycle = _open_cycle(session)
    member = add_member(session, shares=2)
    entries = crud.list_transactions(session, member.id)
    assert [entry.cycle_id for entry in entries] == [cycle.id]


def test_close_without_shares_yields_zero_dividend(session):
    cycle = _open_cycle(session)
    closed = crud.close_cycle(session, cycle.id)
    assert closed.status == CycleStatus.CLOSED
    assert closed.dividend_per_share == 0
    assert closed.dividend_outcome == "no_shares"
    assert closed.closed_at is not None
    assert crud.get_active_cycle(session) is None

    with pytest.raises(IneligibilityError):
        crud.close_cycle(session, cycle.id)
    with pytest.raises(IneligibilityError):
        crud.distribute_dividends(session, cycle.id)


def test_close_freezes_totals_and_dividend(session):
    cycle = _open_cycle(session)
    member = add_member(session, shares=10)
    loan = lending.approve_loan(session, lending.create_loan(session, member.id, 1000).id)
    lending.penalise(session, loan.id, 20)
    lending.make_payment(session, loan.id, 1120)

    preview = crud.get_shareout(session, cycle.id)
    assert not preview.is_final
    assert preview.dividend_per_share == 10

    closed = crud.close_cycle(session, cycle.id)
    assert closed.total_shares == 10
    assert closed.total_savings == 1000
    assert closed.total_interest_earned == 100
    assert closed.total_fines == 20
    assert closed.total_loans_issued == 1000
    assert closed.dividend_per_share == 10
    assert closed.dividend_outcome == "computed"

    report = crud.get_shareout(session, cycle.id)
    assert report.is_final
    assert len(report.rows) == 1
    row = report.rows[0]
    assert row.dividend == 100
    assert row.payout == 1100
    assert report.total_dividends == 100


def test_distribute_dividends_once(session):
    cycle = _open_cycle(session)
    member = add_member(session, shares=10)
    add_member(session, "Ruth Zulu", national_id="567890")
    loan = lending.approve_loan(session, lending.create_loan(session, member.id, 1000).id)
    lending.make_payment(session, loan.id, 1100)
    crud.close_cycle(session, cycle.id)

    entries = crud.distribute_dividends(session, cycle.id)
    assert [(entry.member_id, entry.amount) for entry in entries] == [(member.id, 100)]
    assert entries[0].type == TransactionType.DIVIDEND
    assert crud.get_cycle(session, cycle.id).dividends_distributed

    # dividends are paid out, savings stay as they were
    assert crud.get_member(session, member.id).total_savings == 1000

    with pytest.raises(IneligibilityError):
        crud.distribute_dividends(session, cycle.id)


def test_dashboard_stats(session):
    member = add_member(session, shares=10)
    add_member(session, "Ruth Zulu", national_id="567890")
    lending.approve_loan(session, lending.create_loan(session, member.id, 600).id)
    lending.create_loan(session, member.id, 100)

    stats = crud.get_dashboard_stats(session)
    assert stats.total_members == 2
    assert stats.active_members == 2
    assert stats.total_savings == 1000
    assert stats.total_loans == 2
    assert stats.active_loans == 1
    assert stats.pending_loans == 1
    assert stats.overdue_loans == 0
    assert stats.outstanding_balance == 660
    assert stats.cash_on_hand == 400
    assert stats.monthly_growth == 1000


def _settle_one_loan(session, member, amount=1000):
    loan = lending.approve_loan(session, lending.create_loan(session, member.id, amount).id)
    lending.make_payment(session, loan.id, loan.total_repayment)
    return loan


def test_final_shareout_uses_holders_at_close(session):
    cycle = _open_cycle(session)
    member = add_member(session, shares=10)
    _settle_one_loan(session, member)
    closed = crud.close_cycle(session, cycle.id)

    # buying shares after the close earns nothing from this cycle
    late = add_member(session, "Ruth Zulu", shares=10, national_id="567890")
    crud.add_transaction(
        session, tx_type=TransactionType.SHARE_PURCHASE, amount=500, member_id=member.id
    )

    report = crud.get_shareout(session, cycle.id)
    assert [(row.member_id, row.shares, row.savings) for row in report.rows] == [(member.id, 10, 1000)]
    assert report.total_dividends == closed.total_interest_earned

    entries = crud.distribute_dividends(session, cycle.id)
    assert late.id not in {entry.member_id for entry in entries}
    assert sum(entry.amount for entry in entries) == closed.total_interest_earned
    assert run_audit(session).issue_count == 0


def test_dividend_per_share_rounds_down(session):
    cycle = _open_cycle(session)
    member = add_member(session, shares=2)
    add_member(session, "Ruth Zulu", shares=1, national_id="567890")
    _settle_one_loan(session, member, 100)

    closed = crud.close_cycle(session, cycle.id)
    assert closed.total_interest_earned == 10
    assert closed.dividend_per_share == 3.33
    entries = crud.distribute_dividends(session, cycle.id)
    assert sum(entry.amount for entry in entries) <= closed.total_interest_earned


def test_dividends_are_paid_out_of_the_loan_pot(session):
    cycle = _open_cycle(session)
    member = add_member(session, shares=10)
    _settle_one_loan(session, member)
    crud.close_cycle(session, cycle.id)
    assert crud.get_pot_summary(session).available_to_loan == 1100

    crud.distribute_dividends(session, cycle.id)
    assert crud.get_pot_summary(session).available_to_loan == 1000
    assert crud.check_fund_conservation(session).holds
    assert run_audit(session).issue_count == 0


def test_social_interest_is_paid_out_of_the_social_pot(session):
    cycle = _open_cycle(session)
    member = add_member(session, shares=10, social=200)
    _settle_one_loan(session, member)
    social = lending.approve_social_loan(session, lending.create_social_loan(session, member.id, 100).id)
    lending.make_social_payment(session, social.id, 110)

    closed = crud.close_cycle(session, cycle.id)
    assert closed.total_interest_earned == 110
    assert closed.social_interest_earned == 10
    assert crud.get_social_pot_summary(session).available_for_loans == 210

    entries = crud.distribute_dividends(session, cycle.id)
    assert sorted((entry.type.value, entry.amount) for entry in entries) == [
        ("dividend", 100),
        ("social_dividend", 10),
    ]
    social_pot = crud.get_social_pot_summary(session)
    assert social_pot.available_for_loans == 200
    assert social_pot.available_for_distribution == 0
    assert crud.get_pot_summary(session).available_to_loan == 1000
    assert run_audit(session).issue_count == 0


def test_distribution_needs_cash_in_the_pot(session):
    cycle = _open_cycle(session)
    member = add_member(session, shares=10)
    _settle_one_loan(session, member)
    crud.close_cycle(session, cycle.id)
    lending.approve_loan(session, lending.create_loan(session, member.id, 1050).id)

    with pytest.raises(IneligibilityError):
        crud.distribute_dividends(session, cycle.id)
    assert not crud.get_cycle(session, cycle.id).dividends_distributed


def test_rolled_over_interest_counts_toward_profit(session):
    cycle = _open_cycle(session)
    member = add_member(session, shares=10)
    loan = lending.approve_loan(session, lending.create_loan(session, member.id, 1000).id)
    later = ensure_local_datetime(loan.due_date) + timedelta(days=1)
    rolled = lending.rollover_loan(session, loan.id, now=later)
    assert rolled.total_repayment == 1210
    lending.make_payment(session, loan.id, 1210, now=later)

    closed = crud.close_cycle(session, cycle.id, now=later + timedelta(days=1))
    assert closed.total_interest_earned == 210
    assert closed.dividend_per_share == 21
