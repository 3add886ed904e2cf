from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Iterator, Optional, Union

from .errors import ValidationError
from .timezone_utils import now_local

DAYS_PER_PERIOD = 30


class InterestKind(str, Enum):
    FLAT = "custom_simple"
    LINEAR = "normal_simple"
    COMPOUND = "compound"

    @classmethod
    def parse(cls, value: Union[str, "InterestKind", None]) -> "InterestKind":
        if isinstance(value, cls):
            return value
        normalized = (value or "").strip().lower()
        aliases = {
            "custom_simple": cls.FLAT,
            "flat": cls.FLAT,
            "normal_simple": cls.LINEAR,
            "simple": cls.LINEAR,
            "linear": cls.LINEAR,
            "compound": cls.COMPOUND,
        }
        kind = aliases.get(normalized)
        if kind is None:
            raise ValidationError(f"Unknown interest type: {value!r}")
        return kind


@dataclass(frozen=True)
class InterestCalculation:
    principal: float
    rate: float
    type: InterestKind
    periods: int
    interest: float
    total: float


@dataclass(frozen=True)
class ScheduleRow:
    period: int
    date: date
    principal: float
    interest: float
    payment: float
    balance: float


def periods_for_days(days: int) -> int:
    """Whole months covered by a term expressed in days."""
    return max(int(days), 0) // DAYS_PER_PERIOD


def _validate_terms(principal: float, rate: float, periods: int) -> None:
    if principal < 0:
        raise ValidationError("principal must be non-negative")
    if rate < 0:
        raise ValidationError("interest rate must be non-negative")
    if periods < 0:
        raise ValidationError("periods must be non-negative")


def _raw_interest(principal: float, rate: float, kind: InterestKind, periods: int) -> float:
    ratio = rate / 100
    if kind is InterestKind.FLAT:
        return principal * ratio
    if kind is InterestKind.LINEAR:
        return principal * ratio * periods
    return principal * (1 + ratio) ** periods - principal


def calculate_interest(
    principal: float,
    rate: float,
    kind: Union[str, InterestKind],
    periods: int = 1,
) -> InterestCalculation:
    interest_kind = InterestKind.parse(kind)
    _validate_terms(principal, rate, periods)
    interest = _raw_interest(principal, rate, interest_kind, periods)
    return InterestCalculation(
        principal=round(principal, 2),
        rate=rate,
        type=interest_kind,
        periods=periods,
        interest=round(interest, 2),
        total=round(principal + interest, 2),
    )


def _add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class LoanSchedule:
    """Per-period repayment rows, produced on demand.

    Principal is split evenly across periods; interest is not re-amortised.
    Iterating again starts over from the first period.
    """

    def __init__(
        self,
        principal: float,
        rate: float,
        kind: InterestKind,
        periods: int,
        start: date,
    ) -> None:
        self.principal = principal
        self.rate = rate
        self.kind = kind
        self.periods = periods
        self.start = start

    def __len__(self) -> int:
        return self.periods if self.periods > 1 else 0

    def __iter__(self) -> Iterator[ScheduleRow]:
        if self.periods <= 1:
            return
        ratio = self.rate / 100
        share = self.principal / self.periods
        balance = self.principal
        for period in range(1, self.periods + 1):
            if self.kind is InterestKind.LINEAR:
                interest = self.principal * ratio
            else:
                interest = balance * ratio
            payment = share + interest
            balance = max(0.0, balance - share)
            yield ScheduleRow(
                period=period,
                date=_add_months(self.start, period),
                principal=round(share, 2),
                interest=round(interest, 2),
                payment=round(payment, 2),
                balance=round(balance, 2),
            )

    def total_interest(self) -> float:
        return round(sum(row.interest for row in self), 2)


def generate_loan_schedule(
    principal: float,
    rate: float,
    kind: Union[str, InterestKind],
    periods: int,
    start: Optional[Union[date, datetime]] = None,
) -> LoanSchedule:
    interest_kind = InterestKind.parse(kind)
    _validate_terms(principal, rate, periods)
    if start is None:
        start = now_local().date()
    elif isinstance(start, datetime):
        start = start.date()
    return LoanSchedule(principal, rate, interest_kind, periods, start)
