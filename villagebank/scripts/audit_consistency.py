from __future__ import annotations

import argparse
import json
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlmodel import Session, select

from .. import crud, pots
from ..database import engine, init_db
from ..errors import ConsistencyError
from ..models import Cycle, CycleStatus, LoanBase, LoanStatus, Transaction, TransactionType


@dataclass
class AuditIssue:
    severity: str
    category: str
    entity: str
    entity_id: Optional[int]
    message: str
    details: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "severity": self.severity,
            "category": self.category,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


@dataclass
class AuditReport:
    stats: Dict[str, int]
    issues: List[AuditIssue]

    @property
    def issue_count(self) -> int:
        return len(self.issues)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stats": self.stats,
            "issue_count": self.issue_count,
            "issues": [issue.as_dict() for issue in self.issues],
        }


def _audit_loan_book(
    entity: str,
    loans: Sequence[LoanBase],
    member_ids: set,
    tolerance: float,
) -> List[AuditIssue]:
    issues: List[AuditIssue] = []
    codes = Counter((loan.loan_code or "").strip().upper() for loan in loans)
    for loan in loans:
        code = (loan.loan_code or "").strip().upper()
        if not code:
            issues.append(AuditIssue("error", "loan_code", entity, loan.id, "loan_code is missing"))
        elif codes[code] > 1:
            issues.append(
                AuditIssue("error", "loan_code", entity, loan.id, "loan_code is duplicated", {"loan_code": code})
            )
        if loan.member_id not in member_ids:
            issues.append(
                AuditIssue(
                    "error",
                    "loan_reference",
                    entity,
                    loan.id,
                    "member_id does not point to an existing member",
                    {"member_id": loan.member_id},
                )
            )
        if loan.amount_paid - loan.total_repayment > tolerance:
            issues.append(
                AuditIssue(
                    "error",
                    "loan_balance",
                    entity,
                    loan.id,
                    "amount_paid exceeds total_repayment",
                    {"amount_paid": loan.amount_paid, "total_repayment": loan.total_repayment},
                )
            )
        settled = loan.amount_paid >= loan.total_repayment - tolerance
        if loan.status == LoanStatus.PAID and not settled:
            issues.append(
                AuditIssue(
                    "error",
                    "loan_status",
                    entity,
                    loan.id,
                    "loan is marked paid but has an outstanding balance",
                    {"outstanding": round(loan.total_repayment - loan.amount_paid, 2)},
                )
            )
        elif loan.status == LoanStatus.ACTIVE and settled:
            issues.append(
                AuditIssue("error", "loan_status", entity, loan.id, "loan is fully repaid but still active")
            )
        if loan.total_paid + tolerance < loan.amount_paid:
            issues.append(
                AuditIssue(
                    "warning",
                    "loan_balance",
                    entity,
                    loan.id,
                    "lifetime total_paid is below amount_paid for the current term",
                    {"total_paid": loan.total_paid, "amount_paid": loan.amount_paid},
                )
            )
    return issues


def _audit_cycles(cycles: Sequence[Cycle], transactions: Sequence[Transaction], tolerance: float) -> List[AuditIssue]:
    issues: List[AuditIssue] = []
    for cycle in cycles:
        if cycle.status == CycleStatus.CLOSED and cycle.total_shares > 0:
            try:
                snapshot = crud.load_share_snapshot(cycle)
            except ConsistencyError as exc:
                issues.append(AuditIssue("error", "cycle_snapshot", "cycle", cycle.id, str(exc.detail)))
                snapshot = None
            if snapshot is not None:
                frozen = sum(int(row.get("shares", 0)) for row in snapshot)
                if frozen != cycle.total_shares:
                    issues.append(
                        AuditIssue(
                            "error",
                            "cycle_snapshot",
                            "cycle",
                            cycle.id,
                            "share snapshot does not match total_shares",
                            {"snapshot_shares": frozen, "total_shares": cycle.total_shares},
                        )
                    )

        paid = [
            entry
            for entry in transactions
            if entry.reference_type == "cycle"
            and entry.reference_id == cycle.id
            and entry.type in (TransactionType.DIVIDEND, TransactionType.SOCIAL_DIVIDEND)
        ]
        paid_total = round(sum(entry.amount for entry in paid), 2)
        paid_social = round(sum(entry.amount for entry in paid if entry.type == TransactionType.SOCIAL_DIVIDEND), 2)
        if paid_total - cycle.total_interest_earned > tolerance or paid_social - cycle.social_interest_earned > tolerance:
            issues.append(
                AuditIssue(
                    "error",
                    "cycle_dividends",
                    "cycle",
                    cycle.id,
                    "dividends paid exceed the profit frozen at close",
                    {
                        "paid": paid_total,
                        "paid_social": paid_social,
                        "total_interest_earned": cycle.total_interest_earned,
                        "social_interest_earned": cycle.social_interest_earned,
                    },
                )
            )
        if paid and not cycle.dividends_distributed:
            issues.append(
                AuditIssue("error", "cycle_dividends", "cycle", cycle.id, "dividends were posted but the cycle is not marked paid")
            )
    return issues


def run_audit(session: Session, *, tolerance: float = 0.01) -> AuditReport:
    tolerance = max(tolerance, 0.0)
    rows = crud.load_ledger_rows(session)
    cycles = session.exec(select(Cycle)).all()
    share_price = crud.get_settings(session).share_price

    stats = {
        "members": len(rows.members),
        "transactions": len(rows.transactions),
        "loans": len(rows.loans),
        "social_loans": len(rows.social_loans),
        "cycles": len(cycles),
    }

    issues: List[AuditIssue] = []
    member_codes = Counter((member.member_code or "").strip().upper() for member in rows.members)
    for member in rows.members:
        code = (member.member_code or "").strip().upper()
        if not code:
            issues.append(AuditIssue("error", "member_code", "member", member.id, "member_code is missing"))
        elif member_codes[code] > 1:
            issues.append(
                AuditIssue("error", "member_code", "member", member.id, "member_code is duplicated", {"member_code": code})
            )
        if member.total_shares < 0 or member.total_savings < -tolerance:
            issues.append(
                AuditIssue(
                    "error",
                    "member_savings",
                    "member",
                    member.id,
                    "shares or savings are negative",
                    {"total_shares": member.total_shares, "total_savings": member.total_savings},
                )
            )
        expected = round(member.total_shares * share_price, 2)
        if abs(member.total_savings - expected) > tolerance:
            issues.append(
                AuditIssue(
                    "error",
                    "member_savings",
                    "member",
                    member.id,
                    "total_savings is not total_shares x share_price",
                    {"expected": expected, "actual": member.total_savings},
                )
            )

    member_ids = {member.id for member in rows.members}
    issues.extend(_audit_loan_book("loan", rows.loans, member_ids, tolerance))
    issues.extend(_audit_loan_book("social_loan", rows.social_loans, member_ids, tolerance))

    loan_ids = {
        "loan": {loan.id for loan in rows.loans},
        "social_loan": {loan.id for loan in rows.social_loans},
    }
    for entry in rows.transactions:
        if entry.amount <= 0:
            issues.append(
                AuditIssue(
                    "error", "transaction_amount", "transaction", entry.id, "amount must be positive", {"amount": entry.amount}
                )
            )
        if entry.member_id is None and entry.type != TransactionType.WELFARE_USAGE:
            issues.append(
                AuditIssue("error", "transaction_reference", "transaction", entry.id, "member_id is missing")
            )
        elif entry.member_id is not None and entry.member_id not in member_ids:
            issues.append(
                AuditIssue(
                    "error",
                    "transaction_reference",
                    "transaction",
                    entry.id,
                    "member_id does not point to an existing member",
                    {"member_id": entry.member_id},
                )
            )
        known_loans = loan_ids.get(entry.reference_type or "")
        if known_loans is not None and entry.reference_id not in known_loans:
            issues.append(
                AuditIssue(
                    "error",
                    "transaction_reference",
                    "transaction",
                    entry.id,
                    "reference_id does not point to an existing loan",
                    {"reference_type": entry.reference_type, "reference_id": entry.reference_id},
                )
            )

    issues.extend(_audit_cycles(cycles, rows.transactions, tolerance))
    active_cycles = [cycle for cycle in cycles if cycle.status == CycleStatus.ACTIVE]
    if len(active_cycles) > 1:
        issues.append(
            AuditIssue(
                "error",
                "cycle",
                "cycle",
                None,
                "more than one cycle is active",
                {"cycle_ids": [cycle.id for cycle in active_cycles]},
            )
        )

    check = pots.fund_conservation(rows.members, rows.transactions, rows.loans)
    if abs(check.difference) > tolerance:
        issues.append(
            AuditIssue(
                "error",
                "fund_conservation",
                "ledger",
                None,
                "loan pot does not reconcile with the loan book",
                {"cash_side": check.cash_side, "book_side": check.book_side},
            )
        )
    raw_available = pots.raw_available_to_loan(rows.members, rows.transactions)
    if raw_available < -tolerance:
        issues.append(
            AuditIssue(
                "warning",
                "loan_pot",
                "ledger",
                None,
                "loan pot is overdrawn",
                {"overdrawn": round(-raw_available, 2)},
            )
        )
    social_cash = pots.social_cash_pot(rows.members, rows.transactions)
    if social_cash < -tolerance:
        issues.append(
            AuditIssue(
                "warning",
                "social_pot",
                "ledger",
                None,
                "social pot is overdrawn",
                {"overdrawn": round(-social_cash, 2)},
            )
        )

    return AuditReport(stats=stats, issues=issues)


def format_issue(issue: AuditIssue) -> str:
    prefix = f"[{issue.severity.upper()}] {issue.entity}#{issue.entity_id or '-'} {issue.category}"
    if issue.details:
        return f"{prefix}: {issue.message} | {json.dumps(issue.details, ensure_ascii=False)}"
    return f"{prefix}: {issue.message}"


def print_report(report: AuditReport) -> None:
    print(
        "Audited members={members}, transactions={transactions}, loans={loans}, "
        "social_loans={social_loans}, cycles={cycles}".format(**report.stats)
    )
    if not report.issues:
        print("No consistency issues detected.")
        return
    print(f"Found {report.issue_count} issues:")
    for idx, issue in enumerate(report.issues, start=1):
        print(f"{idx:02d}. {format_issue(issue)}")


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Audit the village bank ledger for consistency")
    parser.add_argument(
        "--tolerance",
        type=float,
        default=0.01,
        help="Allowed rounding difference when comparing amounts (default: 0.01)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the audit report as JSON",
    )
    return parser.parse_args(list(argv) if argv is not None else None)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    init_db()
    with Session(engine) as session:
        report = run_audit(session, tolerance=args.tolerance)
    if args.json:
        print(json.dumps(report.as_dict(), ensure_ascii=False, indent=2))
    else:
        print_report(report)
    return 1 if report.issue_count else 0


if __name__ == "__main__":
    raise SystemExit(main())
