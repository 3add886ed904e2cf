"""Whole-ledger export, import, wipe and demo seeding."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete
from sqlmodel import Session, select

from . import crud, lending
from .errors import IneligibilityError
from .models import Cycle, LedgerSettings, Loan, Member, SocialLoan, Transaction, TransactionType
from .schemas import (
    BackupPayload,
    CycleRecord,
    LoanRecord,
    MemberRead,
    SettingsUpdate,
    TransactionRead,
)
from .timezone_utils import now_local

logger = logging.getLogger(__name__)

BACKUP_VERSION = 1

DEMO_MEMBERS = (
    ("Grace Mwansa", "123456/10/1", "0977000001", 20),
    ("Joseph Banda", "234567/10/1", "0977000002", 15),
    ("Mary Phiri", "345678/10/1", "0977000003", 10),
    ("Peter Tembo", "456789/10/1", "0977000004", 8),
    ("Ruth Zulu", "567890/10/1", "0977000005", 5),
)


def export_data(session: Session) -> Dict[str, Any]:
    rows = crud.list_rows_for_export(session)
    payload = BackupPayload(
        version=BACKUP_VERSION,
        exported_at=now_local(),
        settings=SettingsUpdate.model_validate(crud.get_settings(session), from_attributes=True),
        members=[MemberRead.model_validate(row, from_attributes=True) for row in rows["members"]],
        transactions=[TransactionRead.model_validate(row, from_attributes=True) for row in rows["transactions"]],
        loans=[LoanRecord.model_validate(row, from_attributes=True) for row in rows["loans"]],
        social_loans=[LoanRecord.model_validate(row, from_attributes=True) for row in rows["social_loans"]],
        cycles=[CycleRecord.model_validate(row, from_attributes=True) for row in rows["cycles"]],
    )
    return payload.model_dump(mode="json")


def _dangling_reference(payload: BackupPayload) -> Optional[str]:
    member_ids = {member.id for member in payload.members}
    cycle_ids = {cycle.id for cycle in payload.cycles}
    for loan in [*payload.loans, *payload.social_loans]:
        if loan.member_id not in member_ids:
            return f"loan {loan.loan_code} references unknown member {loan.member_id}"
    for entry in payload.transactions:
        if entry.member_id is not None and entry.member_id not in member_ids:
            return f"transaction {entry.id} references unknown member {entry.member_id}"
        if entry.cycle_id is not None and entry.cycle_id not in cycle_ids:
            return f"transaction {entry.id} references unknown cycle {entry.cycle_id}"
    if sum(1 for cycle in payload.cycles if cycle.status == "active") > 1:
        return "more than one active cycle"
    return None


def clear_all_data(session: Session) -> None:
    with crud.atomic(session):
        for model in (Transaction, Loan, SocialLoan, Cycle, Member, LedgerSettings):
            session.execute(delete(model))
    session.expire_all()
    logger.info("All ledger data cleared")


def import_data(session: Session, data: Dict[str, Any]) -> bool:
    """Replace the whole ledger with a backup.

    The payload is validated in full first; a malformed or inconsistent
    backup leaves the current data untouched and returns False.
    """
    try:
        payload = BackupPayload.model_validate(data)
    except PydanticValidationError as exc:
        logger.warning("Rejected backup: %s", exc.errors()[0].get("msg"))
        return False
    if payload.version > BACKUP_VERSION:
        logger.warning("Rejected backup: unsupported version %s", payload.version)
        return False
    problem = _dangling_reference(payload)
    if problem:
        logger.warning("Rejected backup: %s", problem)
        return False

    with crud.atomic(session):
        for model in (Transaction, Loan, SocialLoan, Cycle, Member, LedgerSettings):
            session.execute(delete(model))
        session.expunge_all()
        if payload.settings is not None:
            session.add(LedgerSettings(**payload.settings.model_dump()))
        session.add_all(Member(**member.model_dump()) for member in payload.members)
        session.add_all(Cycle(**cycle.model_dump()) for cycle in payload.cycles)
        session.flush()
        session.add_all(Loan(**loan.model_dump()) for loan in payload.loans)
        session.add_all(SocialLoan(**loan.model_dump()) for loan in payload.social_loans)
        session.flush()
        session.add_all(Transaction(**entry.model_dump()) for entry in payload.transactions)
        session.flush()
    logger.info(
        "Imported backup: %d members, %d transactions, %d loans, %d social loans, %d cycles",
        len(payload.members),
        len(payload.transactions),
        len(payload.loans),
        len(payload.social_loans),
        len(payload.cycles),
    )
    return True


def seed_demo_data(session: Session) -> Dict[str, int]:
    """Populate an empty ledger with a small, internally consistent group."""
    if session.exec(select(Member.id).limit(1)).first() is not None:
        raise IneligibilityError("Demo data can only be seeded into an empty ledger")
    today = now_local()
    with crud.atomic(session):
        settings = crud.get_settings(session)
        if crud.get_active_cycle(session) is None:
            crud.create_cycle(
                session,
                f"Cycle {today.year}",
                (today - timedelta(days=60)).date(),
                (today + timedelta(days=300)).date(),
            )
        members = []
        for name, national_id, phone, shares in DEMO_MEMBERS:
            member = crud.add_member(session, Member(name=name, national_id=national_id, phone=phone))
            crud.add_transaction(
                session,
                tx_type=TransactionType.SHARE_PURCHASE,
                amount=shares * settings.share_price,
                member_id=member.id,
                description="Opening shares",
            )
            crud.add_transaction(
                session,
                tx_type=TransactionType.SOCIAL_CONTRIBUTION,
                amount=settings.social_contribution_amount,
                member_id=member.id,
                description="Monthly social contribution",
            )
            crud.add_transaction(
                session,
                tx_type=TransactionType.BIRTHDAY_CONTRIBUTION,
                amount=settings.birthday_contribution_amount,
                member_id=member.id,
                description="Birthday fund",
            )
            members.append(member)

        first_loan = lending.create_loan(session, members[0].id, 10 * settings.share_price)
        lending.approve_loan(session, first_loan.id)
        lending.make_payment(session, first_loan.id, 4 * settings.share_price)

        settled = lending.create_loan(session, members[1].id, 5 * settings.share_price)
        lending.approve_loan(session, settled.id)
        lending.make_payment(session, settled.id, settled.total_repayment)

        lending.create_loan(session, members[2].id, 3 * settings.share_price)

        social = lending.create_social_loan(session, members[3].id, settings.social_contribution_amount)
        lending.approve_social_loan(session, social.id)
    logger.info("Seeded demo data for %d members", len(members))
    return {
        "members": len(members),
        "loans": len(lending.list_loans(session)),
        "social_loans": len(lending.list_social_loans(session)),
        "transactions": len(crud.list_transactions(session)),
    }
