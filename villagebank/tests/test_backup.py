import pytest

from villagebank import backup, crud, lending
from villagebank.errors import IneligibilityError
from villagebank.models import LoanStatus
from villagebank.scripts.audit_consistency import run_audit


def test_seed_builds_a_consistent_ledger(session):
    counts = backup.seed_demo_data(session)
    assert counts["members"] == 5
    assert counts["loans"] == 3
    assert counts["social_loans"] == 1
    assert crud.check_fund_conservation(session).holds
    assert run_audit(session).issue_count == 0

    statuses = sorted(loan.status.value for loan in lending.list_loans(session))
    assert statuses == ["active", "paid", "pending"]

    with pytest.raises(IneligibilityError):
        backup.seed_demo_data(session)


def test_export_clear_import_round_trip(session):
    crud.update_settings(session, {"late_penalty_rate": 7.5, "bank_name": "Chipata Savers", "loan_term_days": 45})
    backup.seed_demo_data(session)
    before_pots = crud.get_pot_summary(session)
    before_codes = sorted(member.member_code for member in crud.list_members(session))
    exported = backup.export_data(session)
    assert exported["version"] == backup.BACKUP_VERSION
    assert len(exported["members"]) == 5

    backup.clear_all_data(session)
    assert crud.list_members(session) == []
    assert crud.list_transactions(session) == []
    assert crud.get_active_cycle(session) is None

    assert backup.import_data(session, exported) is True
    assert sorted(member.member_code for member in crud.list_members(session)) == before_codes
    assert crud.get_pot_summary(session) == before_pots
    assert len(crud.list_transactions(session)) == len(exported["transactions"])
    assert crud.get_active_cycle(session) is not None
    assert crud.check_fund_conservation(session).holds

    paid = lending.list_loans(session, status=LoanStatus.PAID)
    assert len(paid) == 1
    assert paid[0].total_paid == paid[0].total_repayment

    restored = backup.export_data(session)
    for key in ("settings", "members", "transactions", "loans", "social_loans", "cycles"):
        assert restored[key] == exported[key], key
    assert restored["settings"]["bank_name"] == "Chipata Savers"


def test_invalid_backup_leaves_data_untouched(session):
    backup.seed_demo_data(session)
    exported = backup.export_data(session)
    broken = dict(exported, members=[{"name": "No id"}])
    assert backup.import_data(session, broken) is False
    assert len(crud.list_members(session)) == 5


def test_backup_with_dangling_reference_is_rejected(session):
    backup.seed_demo_data(session)
    exported = backup.export_data(session)
    orphaned = dict(exported, members=exported["members"][1:])
    assert backup.import_data(session, orphaned) is False
    assert len(crud.list_members(session)) == 5


def test_backup_from_a_newer_version_is_rejected(session):
    exported = backup.export_data(session)
    exported["version"] = backup.BACKUP_VERSION + 1
    assert backup.import_data(session, exported) is False


def test_round_trip_keeps_closed_cycle_snapshot(session):
    backup.seed_demo_data(session)
    cycle = crud.close_cycle(session, crud.get_active_cycle(session).id)
    before = crud.get_shareout(session, cycle.id)
    exported = backup.export_data(session)

    assert backup.import_data(session, exported) is True
    assert backup.export_data(session)["cycles"] == exported["cycles"]
    after = crud.get_shareout(session, cycle.id)
    assert after.rows == before.rows
    assert after.total_dividends == before.total_dividends
