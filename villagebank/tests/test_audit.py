import json
from datetime import timedelta

from villagebank import backup, crud, lending
from villagebank.models import LoanStatus, Member, TransactionType
from villagebank.scripts.audit_consistency import format_issue, print_report, run_audit
from villagebank.timezone_utils import today_local

from .conftest import add_member


def _categories(report):
    return {issue.category for issue in report.issues}


def test_clean_ledger_has_no_issues(session, capsys):
    backup.seed_demo_data(session)
    report = run_audit(session)
    assert report.issue_count == 0
    assert report.stats["members"] == 5
    print_report(report)
    assert "No consistency issues detected." in capsys.readouterr().out


def test_savings_must_track_shares(session):
    member = add_member(session, shares=3)
    member.total_savings = 250.0
    session.add(member)
    session.commit()

    report = run_audit(session)
    assert _categories(report) == {"member_savings"}
    issue = report.issues[0]
    assert issue.entity_id == member.id
    assert issue.details == {"expected": 300.0, "actual": 250.0}


def test_loan_drift_breaks_conservation(session):
    member = add_member(session, shares=10)
    loan = lending.approve_loan(session, lending.create_loan(session, member.id, 500).id)
    loan.total_paid = 25.0
    session.add(loan)
    session.commit()

    report = run_audit(session)
    assert "fund_conservation" in _categories(report)


def test_paid_status_must_match_balance(session):
    member = add_member(session, shares=10)
    loan = lending.approve_loan(session, lending.create_loan(session, member.id, 500).id)
    loan.status = LoanStatus.PAID
    session.add(loan)
    session.commit()

    report = run_audit(session)
    assert "loan_status" in _categories(report)
    as_json = json.loads(json.dumps(report.as_dict()))
    assert as_json["issue_count"] == report.issue_count


def test_missing_member_code_is_reported(session):
    add_member(session)
    session.add(Member(name="Unregistered"))
    session.commit()

    report = run_audit(session)
    missing = [issue for issue in report.issues if issue.category == "member_code"]
    assert len(missing) == 1
    assert format_issue(missing[0]).startswith("[ERROR] member#")


def test_dividends_beyond_frozen_profit_are_reported(session):
    today = today_local()
    cycle = crud.create_cycle(session, "Cycle 1", today - timedelta(days=10), today + timedelta(days=300))
    member = add_member(session, shares=10)
    loan = lending.approve_loan(session, lending.create_loan(session, member.id, 1000).id)
    lending.make_payment(session, loan.id, 1100)
    crud.close_cycle(session, cycle.id)
    crud.distribute_dividends(session, cycle.id)
    assert run_audit(session).issue_count == 0

    crud.record_transaction(
        session,
        tx_type=TransactionType.DIVIDEND,
        amount=50,
        member_id=member.id,
        reference_type="cycle",
        reference_id=cycle.id,
    )
    session.commit()
    assert "cycle_dividends" in _categories(run_audit(session))
