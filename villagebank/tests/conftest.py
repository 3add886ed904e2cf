import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LEDGER_STRICT_INVARIANTS", "true")

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from villagebank import crud
from villagebank.models import Member, TransactionType


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture
def session():
    engine = make_engine()
    with Session(engine) as session:
        yield session
    engine.dispose()


def add_member(session, name="Grace Mwansa", *, shares=0, social=0.0, national_id="123456/10/1"):
    member = crud.add_member(session, Member(name=name, national_id=national_id, phone="0977000001"))
    if shares:
        crud.add_transaction(
            session,
            tx_type=TransactionType.SHARE_PURCHASE,
            amount=shares * crud.get_settings(session).share_price,
            member_id=member.id,
        )
    if social:
        crud.add_transaction(
            session,
            tx_type=TransactionType.SOCIAL_CONTRIBUTION,
            amount=social,
            member_id=member.id,
        )
    session.refresh(member)
    return member
