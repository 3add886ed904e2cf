from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

from . import backup, crud, lending
from .database import get_session, init_db
from .errors import LedgerError
from .interest import calculate_interest, generate_loan_schedule, periods_for_days
from .lending import MAIN, SOCIAL, LoanBook
from .models import LoanStatus, Member, MemberStatus
from .schemas import (
    CycleCreate,
    CycleRead,
    DashboardRead,
    EligibilityRead,
    ImportResult,
    InterestRequest,
    InterestResponse,
    LoanCreate,
    LoanRead,
    MemberCreate,
    MemberRead,
    MemberUpdate,
    PaymentCreate,
    PaymentRead,
    PenaltyCreate,
    PotSummaryRead,
    SettingsRead,
    SettingsUpdate,
    ScheduleRowRead,
    ShareoutRead,
    SocialPotSummaryRead,
    TransactionCreate,
    TransactionRead,
    WelfareUsageCreate,
)

LOG_LEVEL = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="Village Bank Ledger", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "error": exc.kind})


@app.get("/")
def read_root() -> Dict[str, str]:
    return {"message": "Village Bank Ledger API"}


# Members


@app.get("/api/members", response_model=List[MemberRead])
def list_members_api(
    status: Optional[MemberStatus] = None,
    code: Optional[str] = None,
    session: Session = Depends(get_session),
):
    if code is not None:
        return [crud.get_member_by_code(session, code)]
    return crud.list_members(session, status)


@app.post("/api/members", response_model=MemberRead, status_code=201)
def create_member_api(payload: MemberCreate, session: Session = Depends(get_session)):
    member = Member(**payload.model_dump(exclude_none=True))
    return crud.add_member(session, member)


@app.get("/api/members/{member_id}", response_model=MemberRead)
def get_member_api(member_id: int, session: Session = Depends(get_session)):
    return crud.get_member(session, member_id)


@app.put("/api/members/{member_id}", response_model=MemberRead)
def update_member_api(member_id: int, payload: MemberUpdate, session: Session = Depends(get_session)):
    updates = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    return crud.update_member(session, member_id, updates)


@app.delete("/api/members/{member_id}", status_code=204)
def delete_member_api(member_id: int, session: Session = Depends(get_session)):
    crud.delete_member(session, member_id)


@app.get("/api/members/{member_id}/eligibility", response_model=EligibilityRead)
def eligibility_api(member_id: int, amount: Optional[float] = None, session: Session = Depends(get_session)):
    crud.get_member(session, member_id)
    return lending.check_eligibility(session, member_id, amount)


@app.get("/api/members/{member_id}/social-eligibility", response_model=EligibilityRead)
def social_eligibility_api(member_id: int, amount: Optional[float] = None, session: Session = Depends(get_session)):
    crud.get_member(session, member_id)
    return lending.check_social_eligibility(session, member_id, amount)


# Transactions


@app.get("/api/transactions", response_model=List[TransactionRead])
def list_transactions_api(member_id: Optional[int] = None, session: Session = Depends(get_session)):
    return crud.list_transactions(session, member_id)


@app.post("/api/transactions", response_model=TransactionRead, status_code=201)
def create_transaction_api(payload: TransactionCreate, session: Session = Depends(get_session)):
    return crud.add_transaction(
        session,
        tx_type=payload.type,
        amount=payload.amount,
        member_id=payload.member_id,
        description=payload.description,
        when=payload.date,
    )


@app.post("/api/welfare", response_model=TransactionRead, status_code=201)
def welfare_usage_api(payload: WelfareUsageCreate, session: Session = Depends(get_session)):
    return crud.record_welfare_usage(session, payload.amount, payload.description, payload.member_id)


# Loans, both books share one set of handlers


def _register_loan_routes(prefix: str, book: LoanBook) -> None:
    def list_api(
        status: Optional[LoanStatus] = None,
        member_id: Optional[int] = None,
        session: Session = Depends(get_session),
    ):
        loans = lending.list_loans(session, book=book, status=status, member_id=member_id)
        return [lending.to_loan_read(session, loan) for loan in loans]

    def overdue_api(session: Session = Depends(get_session)):
        return [lending.to_loan_read(session, loan) for loan in lending.list_overdue_loans(session, book=book)]

    def get_api(loan_id: int, session: Session = Depends(get_session)):
        return lending.to_loan_read(session, lending.get_loan(session, loan_id, book=book))

    def create_api(payload: LoanCreate, session: Session = Depends(get_session)):
        loan = lending.create_loan(
            session,
            payload.member_id,
            payload.amount,
            payload.period_days,
            payload.interest_rate,
            payload.interest_type,
            book=book,
        )
        return lending.to_loan_read(session, loan)

    def approve_api(loan_id: int, session: Session = Depends(get_session)):
        return lending.to_loan_read(session, lending.approve_loan(session, loan_id, book=book))

    def payment_api(loan_id: int, payload: PaymentCreate, session: Session = Depends(get_session)):
        outcome = lending.make_payment(session, loan_id, payload.amount, book=book)
        return PaymentRead(
            loan=lending.to_loan_read(session, outcome.loan),
            applied_amount=outcome.applied_amount,
            excess_amount=outcome.excess_amount,
        )

    def penalty_api(loan_id: int, payload: PenaltyCreate, session: Session = Depends(get_session)):
        return lending.to_loan_read(session, lending.penalise(session, loan_id, payload.amount, book=book))

    def rollover_api(loan_id: int, session: Session = Depends(get_session)):
        return lending.to_loan_read(session, lending.rollover_loan(session, loan_id, book=book))

    def default_api(loan_id: int, session: Session = Depends(get_session)):
        return lending.to_loan_read(session, lending.default_loan(session, loan_id, book=book))

    name = book.reference_type
    app.add_api_route(f"/api/{prefix}", list_api, methods=["GET"], response_model=List[LoanRead], name=f"list_{name}s")
    app.add_api_route(
        f"/api/{prefix}/overdue", overdue_api, methods=["GET"], response_model=List[LoanRead], name=f"overdue_{name}s"
    )
    app.add_api_route(
        f"/api/{prefix}", create_api, methods=["POST"], response_model=LoanRead, status_code=201, name=f"create_{name}"
    )
    app.add_api_route(f"/api/{prefix}/{{loan_id}}", get_api, methods=["GET"], response_model=LoanRead, name=f"get_{name}")
    app.add_api_route(
        f"/api/{prefix}/{{loan_id}}/approve", approve_api, methods=["POST"], response_model=LoanRead, name=f"approve_{name}"
    )
    app.add_api_route(
        f"/api/{prefix}/{{loan_id}}/payments", payment_api, methods=["POST"], response_model=PaymentRead, name=f"pay_{name}"
    )
    app.add_api_route(
        f"/api/{prefix}/{{loan_id}}/penalties", penalty_api, methods=["POST"], response_model=LoanRead, name=f"penalise_{name}"
    )
    app.add_api_route(
        f"/api/{prefix}/{{loan_id}}/rollover", rollover_api, methods=["POST"], response_model=LoanRead, name=f"rollover_{name}"
    )
    app.add_api_route(
        f"/api/{prefix}/{{loan_id}}/default", default_api, methods=["POST"], response_model=LoanRead, name=f"default_{name}"
    )


_register_loan_routes("loans", MAIN)
_register_loan_routes("social-loans", SOCIAL)


@app.post("/api/interest/calculate", response_model=InterestResponse)
def calculate_interest_api(payload: InterestRequest):
    if payload.periods is not None:
        periods = payload.periods
    elif payload.period_days is not None:
        periods = periods_for_days(payload.period_days)
    else:
        periods = 1
    calc = calculate_interest(payload.principal, payload.rate, payload.interest_type, periods)
    schedule = generate_loan_schedule(payload.principal, payload.rate, payload.interest_type, periods, payload.start_date)
    return InterestResponse(
        principal=calc.principal,
        rate=calc.rate,
        type=calc.type,
        periods=calc.periods,
        interest=calc.interest,
        total=calc.total,
        schedule=[ScheduleRowRead.model_validate(row, from_attributes=True) for row in schedule],
    )


# Cycles


@app.get("/api/cycles", response_model=List[CycleRead])
def list_cycles_api(session: Session = Depends(get_session)):
    return crud.list_cycles(session)


@app.get("/api/cycles/active", response_model=Optional[CycleRead])
def active_cycle_api(session: Session = Depends(get_session)):
    return crud.get_active_cycle(session)


@app.post("/api/cycles", response_model=CycleRead, status_code=201)
def create_cycle_api(payload: CycleCreate, session: Session = Depends(get_session)):
    return crud.create_cycle(session, payload.name, payload.start_date, payload.end_date)


@app.post("/api/cycles/{cycle_id}/close", response_model=CycleRead)
def close_cycle_api(cycle_id: int, session: Session = Depends(get_session)):
    return crud.close_cycle(session, cycle_id)


@app.get("/api/cycles/{cycle_id}/shareout", response_model=ShareoutRead)
def shareout_api(cycle_id: int, session: Session = Depends(get_session)):
    report = crud.get_shareout(session, cycle_id)
    return ShareoutRead.model_validate(report, from_attributes=True)


@app.post("/api/cycles/{cycle_id}/distribute", response_model=List[TransactionRead])
def distribute_api(cycle_id: int, session: Session = Depends(get_session)):
    entries = crud.distribute_dividends(session, cycle_id)
    return [TransactionRead.model_validate(entry, from_attributes=True) for entry in entries]


# Settings and reports


@app.get("/api/settings", response_model=SettingsRead)
def get_settings_api(session: Session = Depends(get_session)):
    return SettingsRead.model_validate(crud.get_settings(session), from_attributes=True)


@app.put("/api/settings", response_model=SettingsRead)
def update_settings_api(payload: SettingsUpdate, session: Session = Depends(get_session)):
    settings = crud.update_settings(session, payload.model_dump(exclude_unset=True))
    return SettingsRead.model_validate(settings, from_attributes=True)


@app.get("/api/dashboard", response_model=DashboardRead)
def dashboard_api(session: Session = Depends(get_session)):
    return crud.get_dashboard_stats(session)


@app.get("/api/pots", response_model=PotSummaryRead)
def pots_api(session: Session = Depends(get_session)):
    return crud.get_pot_summary(session)


@app.get("/api/social-pot", response_model=SocialPotSummaryRead)
def social_pot_api(session: Session = Depends(get_session)):
    return crud.get_social_pot_summary(session)


# Backup


@app.get("/api/backup/export")
def export_api(session: Session = Depends(get_session)) -> Dict[str, Any]:
    return backup.export_data(session)


@app.post("/api/backup/import", response_model=ImportResult)
def import_api(payload: Dict[str, Any], session: Session = Depends(get_session)):
    if backup.import_data(session, payload):
        return ImportResult(imported=True)
    return JSONResponse(
        status_code=400,
        content={"imported": False, "detail": "Backup rejected; existing data kept"},
    )


@app.post("/api/backup/clear", status_code=204)
def clear_api(session: Session = Depends(get_session)):
    backup.clear_all_data(session)


@app.post("/api/backup/seed", status_code=201)
def seed_api(session: Session = Depends(get_session)) -> Dict[str, int]:
    return backup.seed_demo_data(session)
