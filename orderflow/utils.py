# orderflow/utils.py
import secrets
from datetime import date, datetime, timezone
from typing import Callable, Iterable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ymd(day: date) -> str:
    return day.strftime("%Y%m%d")


def next_sequence(existing_ids: Iterable[str], prefix: str) -> int:
    """Highest numeric suffix among ids starting with prefix, plus one."""
    highest = 0
    for doc_id in existing_ids:
        if not doc_id.startswith(prefix):
            continue
        tail = doc_id[len(prefix):]
        if tail.isdigit():
            highest = max(highest, int(tail))
    return highest + 1


def order_id_prefix(branch_id: str, day: date) -> str:
    return f"ORD-{branch_id}-{ymd(day)}-"


def batch_id_prefix(satellite_branch_id: str, day: date) -> str:
    return f"TRF-{satellite_branch_id}-{ymd(day)}-"


def garment_id(order_id: str, index: int) -> str:
    return f"{order_id}-G{index + 1:02d}"


def transaction_id(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"TXN-{int(now.timestamp() * 1000)}-{secrets.token_hex(4).upper()}"


def minutes_between(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() // 60)


def as_utc(value: datetime) -> datetime:
    """Timestamps without a zone are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
