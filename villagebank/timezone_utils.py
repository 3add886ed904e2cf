from __future__ import annotations

import os
from datetime import date, datetime, time
from typing import Optional, Union

from zoneinfo import ZoneInfo

LEDGER_TZ = ZoneInfo(os.getenv("LEDGER_TIMEZONE", "Africa/Lusaka"))


DatetimeLike = Optional[Union[datetime, date]]


def now_local() -> datetime:
    return datetime.now(tz=LEDGER_TZ)


def today_local() -> date:
    return now_local().date()


def ensure_local_datetime(value: DatetimeLike) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=LEDGER_TZ)
    if value.tzinfo is None:
        # SQLite hands back naive values; they were written as ledger-local time
        return value.replace(tzinfo=LEDGER_TZ)
    return value.astimezone(LEDGER_TZ)
