from datetime import date

import pytest

from villagebank.errors import ValidationError
from villagebank.interest import (
    InterestKind,
    calculate_interest,
    generate_loan_schedule,
    periods_for_days,
)


def test_flat_interest_ignores_periods():
    calc = calculate_interest(1000, 10, InterestKind.FLAT, periods=3)
    assert calc.interest == pytest.approx(100)
    assert calc.total == pytest.approx(1100)
    assert calc.type is InterestKind.FLAT


def test_linear_interest_scales_with_periods():
    calc = calculate_interest(1000, 10, "normal_simple", periods=3)
    assert calc.interest == pytest.approx(300)
    assert calc.total == pytest.approx(1300)


def test_compound_interest():
    calc = calculate_interest(1000, 10, InterestKind.COMPOUND, periods=2)
    assert calc.interest == pytest.approx(210)
    assert calc.total == pytest.approx(1210)


def test_interest_is_rounded_to_cents():
    calc = calculate_interest(100, 3.333, InterestKind.LINEAR, periods=1)
    assert calc.interest == 3.33
    assert calc.total == 103.33


def test_negative_inputs_are_rejected():
    with pytest.raises(ValidationError):
        calculate_interest(-1, 10, InterestKind.FLAT)
    with pytest.raises(ValidationError):
        calculate_interest(100, -1, InterestKind.FLAT)
    with pytest.raises(ValidationError):
        calculate_interest(100, 10, InterestKind.LINEAR, periods=-1)


def test_kind_aliases():
    assert InterestKind.parse("simple") is InterestKind.LINEAR
    assert InterestKind.parse("Flat") is InterestKind.FLAT
    assert InterestKind.parse("custom_simple") is InterestKind.FLAT
    with pytest.raises(ValidationError):
        InterestKind.parse("daily")


def test_periods_for_days():
    assert periods_for_days(29) == 0
    assert periods_for_days(30) == 1
    assert periods_for_days(59) == 1
    assert periods_for_days(60) == 2


def test_single_period_has_no_schedule():
    schedule = generate_loan_schedule(1000, 10, InterestKind.LINEAR, 1)
    assert len(schedule) == 0
    assert list(schedule) == []


def test_linear_schedule_keeps_interest_constant():
    schedule = generate_loan_schedule(1200, 10, InterestKind.LINEAR, 3, start=date(2024, 1, 15))
    rows = list(schedule)
    assert [row.principal for row in rows] == [400, 400, 400]
    assert [row.interest for row in rows] == [120, 120, 120]
    assert [row.balance for row in rows] == [800, 400, 0]
    assert rows[0].payment == 520
    assert schedule.total_interest() == 360


def test_flat_schedule_charges_running_balance():
    rows = list(generate_loan_schedule(1200, 10, InterestKind.FLAT, 3, start=date(2024, 1, 15)))
    assert [row.interest for row in rows] == [120, 80, 40]
    assert rows[-1].balance == 0


def test_schedule_is_restartable():
    schedule = generate_loan_schedule(900, 5, InterestKind.COMPOUND, 3, start=date(2024, 1, 15))
    assert list(schedule) == list(schedule)


def test_schedule_dates_clamp_to_month_end():
    rows = list(generate_loan_schedule(300, 10, InterestKind.LINEAR, 3, start=date(2024, 1, 31)))
    assert [row.date for row in rows] == [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]
